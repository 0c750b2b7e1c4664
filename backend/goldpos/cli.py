# Overview: Flask CLI commands for ownership consolidation, alerts and ledger checks.

# backend/goldpos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Ownership:
# - python -m flask ownership opportunities --branch-id 1
#   List product/supplier groups with two or more active lots.
# - python -m flask ownership consolidate --branch-id 1 --supplier-id 4 [--product-id 7]
#   Consolidate one product group, or every product group of the supplier.
# - python -m flask ownership alerts [--branch-id 1]
#   Show low-ownership and outstanding-payment alerts.
# - python -m flask ownership verify [--branch-id 1]
#   Replay every record's movements and report drift from stored values.

import click
from flask.cli import with_appcontext

from .services import consolidation_service, ownership_service
from .services.ownership_errors import OwnershipError


@click.group('ownership')
def ownership_group():
    """Ownership tracking commands."""


@ownership_group.command('opportunities')
@click.option('--branch-id', type=int, required=True)
@with_appcontext
def opportunities_cli(branch_id):
    """List consolidation opportunities at a branch."""
    opportunities = ownership_service.consolidation_opportunities(branch_id)
    if not opportunities:
        click.echo("No consolidation opportunities.")
        return
    for o in opportunities:
        click.echo(
            f"product={o['product_id']} supplier={o['supplier_id']} records={o['record_ids']} "
            f"qty={o['total_quantity']} cost={o['total_cost']} unit_cost={o['weighted_unit_cost']}"
        )


@ownership_group.command('consolidate')
@click.option('--branch-id', type=int, required=True)
@click.option('--supplier-id', type=int, required=True)
@click.option('--product-id', type=int, default=None, help='Limit to one product.')
@with_appcontext
def consolidate_cli(branch_id, supplier_id, product_id):
    """Consolidate active lots from one supplier."""
    try:
        if product_id is not None:
            result = consolidation_service.consolidate_group(product_id, branch_id, supplier_id)
            results = [result] if result is not None else []
        else:
            results = ownership_service.consolidate_supplier_ownership(supplier_id, branch_id)
    except OwnershipError as e:
        raise click.ClickException(str(e))

    if not results:
        click.echo("Nothing to consolidate.")
        return
    for r in results:
        click.echo(
            f"Consolidated records {r.absorbed_record_ids} into record {r.record.id} "
            f"(qty {r.record.total_quantity}, cost {r.record.total_cost}, unit cost {r.weighted_unit_cost})"
        )


@ownership_group.command('alerts')
@click.option('--branch-id', type=int, default=None)
@with_appcontext
def alerts_cli(branch_id):
    """Show ownership alerts."""
    alerts = ownership_service.ownership_alerts(branch_id=branch_id)
    if not alerts:
        click.echo("No ownership alerts.")
        return
    for a in alerts:
        click.echo(f"[{a['severity'].upper()}] {a['type']} record={a['record_id']} {a['message']}")


@ownership_group.command('verify')
@click.option('--branch-id', type=int, default=None)
@with_appcontext
def verify_cli(branch_id):
    """Replay movements for every record and report drift."""
    reports = ownership_service.verify_all_ledgers(branch_id=branch_id)
    drifted = [r for r in reports if not r["consistent"]]
    for r in drifted:
        click.echo(f"record {r['record_id']}: {r['drift']}")
    click.echo(f"Verified {len(reports)} records, {len(drifted)} with drift.")
    if drifted:
        raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(ownership_group)
