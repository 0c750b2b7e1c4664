# Overview: Consolidation engine; folds lots of one (product, branch, supplier) into a weighted-average lot.

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import OwnershipRecord
from ..models.ownership import (
    SOURCE_SUPPLIER,
    STATUS_CREATED,
    MOVEMENT_ADJUSTMENT,
    TERMINAL_STATUSES,
)
from ..decimal_utils import ZERO, qty, money
from .concurrency import lock_for_update, check_version, run_atomic
from .movement_service import MovementDraft, LotTotals, record_movement
from .ownership_errors import ConsolidationMismatchError, TerminalRecordError, RecordNotFoundError
"""
Consolidation rules:
- Only non-terminal records sharing product, branch and (non-null) supplier merge.
- The merged lot's totals, owned and consumed amounts and amount paid are
  straight sums; ownership is never re-derived from a blended percentage.
- Unit cost of the merged lot = sum(total_cost) / sum(total_quantity).
- Source records are kept: totals and owned amounts move to zero through a
  terminal ADJUSTMENT movement pointing at the merged record, status becomes
  CONSOLIDATED and consolidated_into_id is set.
- All participants and the new record are one unit of work; a version
  conflict on any participant aborts everything.
"""


@dataclass
class ConsolidationResult:
    record: OwnershipRecord
    absorbed_record_ids: list[int] = field(default_factory=list)
    weighted_unit_cost: Decimal = ZERO
    weighted_cost_per_gram: Decimal = ZERO

    def to_dict(self) -> dict:
        return {
            "record": self.record.to_dict(),
            "absorbed_record_ids": list(self.absorbed_record_ids),
            "consolidated_records": len(self.absorbed_record_ids),
            "weighted_unit_cost": str(self.weighted_unit_cost),
            "weighted_cost_per_gram": str(self.weighted_cost_per_gram),
        }


def _load_participants(record_ids: list[int]) -> list[OwnershipRecord]:
    unique_ids = sorted(set(record_ids))
    if len(unique_ids) < 2:
        raise ConsolidationMismatchError(
            "Consolidation needs at least two distinct ownership records",
            invariant="at_least_two_records",
        )
    rows = (
        lock_for_update(db.session.query(OwnershipRecord).filter(OwnershipRecord.id.in_(unique_ids)))
        .order_by(OwnershipRecord.id.asc())
        .all()
    )
    found = {r.id for r in rows}
    missing = [rid for rid in unique_ids if rid not in found]
    if missing:
        raise RecordNotFoundError(f"Ownership records not found: {missing}")
    return rows


def _check_compatible(records: list[OwnershipRecord]) -> None:
    for r in records:
        if r.status in TERMINAL_STATUSES:
            raise TerminalRecordError(f"Ownership record {r.id} is {r.status} and cannot be consolidated")

    products = {r.product_id for r in records}
    branches = {r.branch_id for r in records}
    suppliers = {r.supplier_id for r in records}
    if len(products) > 1:
        raise ConsolidationMismatchError(f"Records span different products: {sorted(products)}")
    if len(branches) > 1:
        raise ConsolidationMismatchError(f"Records span different branches: {sorted(branches)}")
    if len(suppliers) > 1 or None in suppliers:
        raise ConsolidationMismatchError(
            f"Records must share one supplier: {sorted(s for s in suppliers if s is not None)}"
            + (" (some records have no supplier)" if None in suppliers else "")
        )


def weighted_average_cost(records: list[OwnershipRecord]) -> dict:
    """Blend of lot costs by quantity and by weight."""
    total_quantity = sum((qty(r.total_quantity) for r in records), ZERO)
    total_weight = sum((qty(r.total_weight) for r in records), ZERO)
    total_cost = sum((money(r.total_cost) for r in records), ZERO)
    return {
        "record_count": len(records),
        "total_quantity": total_quantity,
        "total_weight": total_weight,
        "total_cost": total_cost,
        "unit_cost": money(total_cost / total_quantity) if total_quantity else ZERO,
        "cost_per_gram": money(total_cost / total_weight) if total_weight else ZERO,
        "breakdown": [
            {
                "record_id": r.id,
                "purchase_order_id": r.purchase_order_id,
                "quantity": qty(r.total_quantity),
                "weight": qty(r.total_weight),
                "cost": money(r.total_cost),
                "unit_cost": money(r.total_cost / r.total_quantity) if r.total_quantity else ZERO,
                "cost_per_gram": money(r.total_cost / r.total_weight) if r.total_weight else ZERO,
            }
            for r in records
        ],
    }


def consolidate_records(
    record_ids: list[int],
    *,
    expected_versions: dict[int, int] | None = None,
    actor_user_id: int | None = None,
    commit: bool = True,
) -> ConsolidationResult:
    """
    Merge ownership records into one weighted-average-cost record.

    Raises:
        ConsolidationMismatchError: fewer than two records, or different product/branch/supplier
        TerminalRecordError: a participant is already CONSOLIDATED or EXHAUSTED
        ConcurrencyConflictError: a participant changed since it was read
    """
    def _op():
        records = _load_participants(record_ids)
        for r in records:
            check_version(r, (expected_versions or {}).get(r.id))
        _check_compatible(records)

        blend = weighted_average_cost(records)
        owned_quantity = sum((qty(r.owned_quantity) for r in records), ZERO)
        owned_weight = sum((qty(r.owned_weight) for r in records), ZERO)
        amount_paid = sum((money(r.amount_paid) for r in records), ZERO)
        consumed_quantity = sum((qty(r.consumed_quantity) for r in records), ZERO)
        consumed_weight = sum((qty(r.consumed_weight) for r in records), ZERO)
        first = records[0]
        source_ids = [r.id for r in records]

        merged = OwnershipRecord(
            product_id=first.product_id,
            branch_id=first.branch_id,
            source_type=SOURCE_SUPPLIER,
            supplier_id=first.supplier_id,
            purchase_order_id=None,  # merged lot no longer maps to a single PO
            total_quantity=blend["total_quantity"],
            total_weight=blend["total_weight"],
            total_cost=blend["total_cost"],
            owned_quantity=ZERO,
            owned_weight=ZERO,
            consumed_quantity=ZERO,
            consumed_weight=ZERO,
            amount_paid=ZERO,
            outstanding_amount=blend["total_cost"],
            ownership_percentage=ZERO,
            status=STATUS_CREATED,
            notes=f"Consolidated from {len(records)} ownership records: {source_ids}",
            received_at=min(r.received_at for r in records),
        )
        db.session.add(merged)
        db.session.flush()

        record_movement(
            merged,
            MovementDraft(
                movement_type=MOVEMENT_ADJUSTMENT,
                quantity_change=owned_quantity,
                weight_change=owned_weight,
                amount_change=amount_paid,
                consumed_quantity_change=consumed_quantity,
                consumed_weight_change=consumed_weight,
                note=f"Consolidated from records {source_ids}"[:255],
                actor_user_id=actor_user_id,
            ),
        )

        for r in records:
            absorbed_note = (
                f"Absorbed into record {merged.id} "
                f"(qty {qty(r.total_quantity)}, weight {qty(r.total_weight)}g, cost {money(r.total_cost)})"
            )
            record_movement(
                r,
                MovementDraft(
                    movement_type=MOVEMENT_ADJUSTMENT,
                    quantity_change=-qty(r.owned_quantity),
                    weight_change=-qty(r.owned_weight),
                    amount_change=-money(r.amount_paid),
                    note=absorbed_note,
                    related_record_id=merged.id,
                    actor_user_id=actor_user_id,
                    new_totals=LotTotals(quantity=ZERO, weight=ZERO, cost=ZERO),
                    absorbed=True,
                ),
            )
            r.consolidated_into_id = merged.id
            r.notes = f"{r.notes} [{absorbed_note}]" if r.notes else f"[{absorbed_note}]"

        db.session.flush()
        current_app.logger.info(
            "Consolidated ownership records %s into %s (product %s, branch %s, supplier %s)",
            source_ids,
            merged.id,
            merged.product_id,
            merged.branch_id,
            merged.supplier_id,
        )
        return ConsolidationResult(
            record=merged,
            absorbed_record_ids=source_ids,
            weighted_unit_cost=blend["unit_cost"],
            weighted_cost_per_gram=blend["cost_per_gram"],
        )

    return run_atomic(_op, commit=commit)


def _active_records_query(branch_id: int):
    return db.session.query(OwnershipRecord).filter(
        OwnershipRecord.branch_id == branch_id,
        OwnershipRecord.status.notin_(TERMINAL_STATUSES),
    )


def consolidate_group(
    product_id: int,
    branch_id: int,
    supplier_id: int,
    *,
    actor_user_id: int | None = None,
) -> ConsolidationResult | None:
    """Consolidate every active lot of one product from one supplier. None if fewer than two exist."""
    ids = [
        r.id
        for r in _active_records_query(branch_id)
        .filter(OwnershipRecord.product_id == product_id, OwnershipRecord.supplier_id == supplier_id)
        .all()
    ]
    if len(ids) < 2:
        return None
    return consolidate_records(ids, actor_user_id=actor_user_id)


def consolidate_supplier(
    supplier_id: int,
    branch_id: int,
    *,
    actor_user_id: int | None = None,
) -> list[ConsolidationResult]:
    """Consolidate each product group of a supplier at a branch; each group commits on its own."""
    product_ids = [
        row.product_id
        for row in db.session.query(OwnershipRecord.product_id)
        .filter(
            OwnershipRecord.branch_id == branch_id,
            OwnershipRecord.supplier_id == supplier_id,
            OwnershipRecord.status.notin_(TERMINAL_STATUSES),
        )
        .group_by(OwnershipRecord.product_id)
        .having(func.count(OwnershipRecord.id) > 1)
        .order_by(OwnershipRecord.product_id.asc())
        .all()
    ]
    results = []
    for product_id in product_ids:
        result = consolidate_group(product_id, branch_id, supplier_id, actor_user_id=actor_user_id)
        if result is not None:
            results.append(result)
    return results


def find_consolidation_opportunities(branch_id: int) -> list[dict]:
    """Groups of two or more active lots sharing product and supplier, largest groups first."""
    rows = (
        _active_records_query(branch_id)
        .filter(OwnershipRecord.supplier_id.isnot(None))
        .order_by(OwnershipRecord.product_id.asc(), OwnershipRecord.supplier_id.asc(), OwnershipRecord.id.asc())
        .all()
    )
    groups: dict[tuple[int, int], list[OwnershipRecord]] = {}
    for r in rows:
        groups.setdefault((r.product_id, r.supplier_id), []).append(r)

    opportunities = []
    for (product_id, supplier_id), members in groups.items():
        if len(members) < 2:
            continue
        blend = weighted_average_cost(members)
        opportunities.append({
            "product_id": product_id,
            "supplier_id": supplier_id,
            "branch_id": branch_id,
            "record_ids": [m.id for m in members],
            "record_count": len(members),
            "total_quantity": str(blend["total_quantity"]),
            "total_weight": str(blend["total_weight"]),
            "total_cost": str(blend["total_cost"]),
            "outstanding_amount": str(sum((money(m.outstanding_amount) for m in members), ZERO)),
            "weighted_unit_cost": str(blend["unit_cost"]),
        })
    opportunities.sort(key=lambda o: (-o["record_count"], o["product_id"], o["supplier_id"]))
    return opportunities
