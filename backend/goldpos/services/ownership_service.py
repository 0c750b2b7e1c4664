# Overview: Ownership service; public entry point for payments, sales, conversion, consolidation and queries.

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import OwnershipRecord, OwnershipMovement
from ..models.ownership import (
    MOVEMENT_SALE,
    MOVEMENT_CONVERSION,
    TERMINAL_STATUSES,
)
from ..decimal_utils import ZERO, qty, money, to_decimal, as_str
from ..time_utils import to_utc_z
from . import consolidation_service, costing_service, movement_service, ownership_store
from .concurrency import lock_for_update, check_version, commit_or_conflict, run_with_retry
from .costing_service import CostPlan, METHOD_FIFO
from .ownership_errors import (
    OwnershipError,
    RecordNotFoundError,
    InsufficientOwnershipError,
    ExcessOwnershipError,
    PaymentConfirmationRequiredError,
    SaleBlockedError,
)
from .ownership_policy import OwnershipPolicy, get_policy, normalize_threshold
from .ownership_validator import (
    OwnershipPosition,
    ValidationResult,
    validate_for_sale,
    validate_for_inventory_adjustment,
)
"""
Orchestration rules:
- Every mutation here is one unit of work committed once at the end; nested
  store calls run with commit=False.
- Version conflicts are retried by run_with_retry with fresh reads. A caller
  that pins expected_version gets exactly one attempt, since a stale version
  cannot become current by retrying.
- The validator is consulted before any consumption; the store still enforces
  the hard invariants on every debit.
"""


def _mutate(func, *, expected_version: int | None = None):
    def _unit():
        result = func()
        commit_or_conflict()
        return result

    attempts = 1 if expected_version is not None else None
    return run_with_retry(_unit, attempts=attempts)


def _active_records(product_id: int, branch_id: int) -> list[OwnershipRecord]:
    return (
        db.session.query(OwnershipRecord)
        .filter(
            OwnershipRecord.product_id == product_id,
            OwnershipRecord.branch_id == branch_id,
            OwnershipRecord.status.notin_(TERMINAL_STATUSES),
        )
        .order_by(OwnershipRecord.received_at.asc(), OwnershipRecord.id.asc())
        .all()
    )


def get_ownership(record_id: int) -> OwnershipRecord:
    return ownership_store.get_record(record_id)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_ownership(
    product_id: int,
    branch_id: int,
    quantity,
    *,
    policy: OwnershipPolicy | None = None,
) -> ValidationResult:
    """Aggregate sale check across every active lot of a product at a branch."""
    policy = policy or get_policy()
    records = _active_records(product_id, branch_id)
    if not records:
        return ValidationResult(
            allowed=False,
            current_percentage=ZERO,
            reason="No active ownership records found for this product and branch",
            severity=policy.severity(ZERO),
            requested_quantity=qty(to_decimal(quantity, field="quantity")),
            warnings=["Product may not be available for sale"],
        )
    result = validate_for_sale(OwnershipPosition.aggregate(records), quantity, policy)
    current_app.logger.info(
        "Ownership validation for product %s at branch %s: allowed=%s, ownership %s",
        product_id,
        branch_id,
        result.allowed,
        result.current_percentage,
    )
    return result


def _require_sale_allowed(result: ValidationResult, policy: OwnershipPolicy) -> None:
    if result.allowed:
        return
    if policy.blocks_sale(result.current_percentage):
        raise SaleBlockedError(result.reason)
    raise InsufficientOwnershipError(result.reason)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

def update_ownership_after_payment(
    record_id: int,
    amount,
    *,
    confirmed: bool = False,
    reference: str | None = None,
    note: str | None = None,
    actor_user_id: int | None = None,
    expected_version: int | None = None,
    policy: OwnershipPolicy | None = None,
) -> OwnershipRecord:
    """
    Apply a supplier/customer payment to a lot.

    Raises:
        PaymentConfirmationRequiredError: the policy requires confirmation and confirmed is False
        OverpaymentError, TerminalRecordError, ConcurrencyConflictError
    """
    policy = policy or get_policy()
    if policy.requires_payment_confirmation() and not confirmed:
        raise PaymentConfirmationRequiredError(
            f"Payment on ownership record {record_id} must be confirmed before it is applied"
        )

    return _mutate(
        lambda: ownership_store.apply_payment(
            record_id,
            amount,
            reference=reference,
            note=note,
            actor_user_id=actor_user_id,
            expected_version=expected_version,
            commit=False,
        ),
        expected_version=expected_version,
    )


def update_ownership_after_sale(
    record_id: int,
    quantity,
    *,
    reference: str | None = None,
    actor_user_id: int | None = None,
    expected_version: int | None = None,
    policy: OwnershipPolicy | None = None,
) -> OwnershipRecord:
    """
    Debit a sold quantity from one lot.

    Raises:
        SaleBlockedError: ownership below the low threshold with sale blocking enabled
        InsufficientOwnershipError: quantity > owned_quantity
    """
    policy = policy or get_policy()

    def _op():
        record = ownership_store.get_record(record_id, lock=True)
        ownership_store.ensure_mutable(record)
        check_version(record, expected_version)
        _require_sale_allowed(validate_for_sale(record, quantity, policy), policy)
        return ownership_store.consume(
            record_id,
            quantity,
            movement_type=MOVEMENT_SALE,
            reference=reference,
            actor_user_id=actor_user_id,
            expected_version=expected_version,
            commit=False,
        )

    return _mutate(_op, expected_version=expected_version)


def adjust_ownership(
    record_id: int,
    quantity_delta,
    weight_delta=None,
    *,
    reason: str,
    reference: str | None = None,
    actor_user_id: int | None = None,
    expected_version: int | None = None,
    policy: OwnershipPolicy | None = None,
) -> OwnershipRecord:
    """Manual correction gated by the inventory-validation rule; store bounds still apply."""
    policy = policy or get_policy()

    def _op():
        record = ownership_store.get_record(record_id, lock=True)
        ownership_store.ensure_mutable(record)
        check_version(record, expected_version)
        check = validate_for_inventory_adjustment(record, quantity_delta, policy)
        if not check.allowed:
            if check.requested_quantity < 0:
                raise InsufficientOwnershipError(check.reason)
            raise ExcessOwnershipError(check.reason)
        return ownership_store.adjust(
            record_id,
            quantity_delta,
            weight_delta,
            reason=reason,
            reference=reference,
            actor_user_id=actor_user_id,
            expected_version=expected_version,
            commit=False,
        )

    return _mutate(_op, expected_version=expected_version)


@dataclass
class SaleResult:
    plan: CostPlan
    records: list[OwnershipRecord]
    validation: ValidationResult

    def to_dict(self) -> dict:
        return {
            "plan": self.plan.to_dict(),
            "records": [r.to_dict() for r in self.records],
            "validation": self.validation.to_dict(),
        }


def record_sale(
    product_id: int,
    branch_id: int,
    quantity,
    method: str = METHOD_FIFO,
    *,
    reference: str | None = None,
    actor_user_id: int | None = None,
    policy: OwnershipPolicy | None = None,
) -> SaleResult:
    """
    Validate, plan and execute a sale across the product's lots in one unit of work.

    The cost plan decides which lots are debited; weighted-average plans debit
    oldest lots first while pricing at the blended rate.
    """
    policy = policy or get_policy()

    def _op():
        validation = validate_ownership(product_id, branch_id, quantity, policy=policy)
        if not validation.allowed and policy.blocks_sale(validation.current_percentage):
            raise SaleBlockedError(validation.reason)

        sources = [
            costing_service.LayerSource.from_record(r)
            for r in costing_service.eligible_records(product_id, branch_id, lock=True)
        ]
        plan = costing_service.select_layers(sources, quantity, method)

        records = []
        for allocation in plan.allocations:
            records.append(
                ownership_store.consume(
                    allocation.record_id,
                    allocation.quantity,
                    movement_type=MOVEMENT_SALE,
                    reference=reference,
                    note=f"{plan.method} sale",
                    actor_user_id=actor_user_id,
                    commit=False,
                )
            )
        current_app.logger.info(
            "Recorded %s sale of %s for product %s at branch %s across records %s (cost %s)",
            plan.method,
            plan.requested_quantity,
            product_id,
            branch_id,
            [a.record_id for a in plan.allocations],
            plan.total_cost,
        )
        return SaleResult(plan=plan, records=records, validation=validation)

    return _mutate(_op)


@dataclass(frozen=True)
class _ConversionDraw:
    record: OwnershipRecord
    quantity: Decimal
    weight: Decimal
    cost: Decimal


def _draw_weight(sources: list[OwnershipRecord], weight: Decimal) -> list[_ConversionDraw]:
    remaining = weight
    draws = []
    for source in sources:
        if remaining <= 0:
            break
        owned_weight = qty(source.owned_weight)
        if owned_weight <= 0:
            continue
        take_weight = min(remaining, owned_weight)
        if take_weight == owned_weight:
            take_quantity = qty(source.owned_quantity)
        else:
            take_quantity = qty(qty(source.owned_quantity) * take_weight / owned_weight)
        if source.total_weight:
            cost = money(take_weight * Decimal(source.total_cost) / Decimal(source.total_weight))
        else:
            cost = ZERO
        draws.append(_ConversionDraw(record=source, quantity=take_quantity, weight=take_weight, cost=cost))
        remaining -= take_weight
    if remaining > 0:
        available = sum((qty(s.owned_weight) for s in sources), ZERO)
        raise InsufficientOwnershipError(
            f"Insufficient owned raw gold weight. Available: {available}g, Requested: {weight}g"
        )
    return draws


def convert_raw_gold_to_products(
    source_record_ids: list[int],
    target_product_id: int,
    quantity,
    weight,
    *,
    reference: str | None = None,
    actor_user_id: int | None = None,
    policy: OwnershipPolicy | None = None,
) -> OwnershipRecord:
    """
    Melt owned raw gold from one or more lots into a new, fully owned product lot.

    Weight is drawn oldest lot first; each source gives up quantity in
    proportion to the weight taken and carries its cost per gram into the new
    lot. All sources must be at one branch.

    Raises:
        InsufficientOwnershipError: sources own less weight than requested
        OwnershipError: sources span branches or no source was given
    """
    policy = policy or get_policy()
    if not source_record_ids:
        raise OwnershipError("At least one source ownership record is required", invariant="conversion_sources")

    def _op():
        out_quantity = qty(to_decimal(quantity, field="quantity"))
        out_weight = qty(to_decimal(weight, field="weight"))
        if out_quantity <= 0 or out_weight <= 0:
            raise OwnershipError("Conversion quantity and weight must be positive", invariant="quantity > 0")

        unique_ids = sorted(set(source_record_ids))
        sources = (
            lock_for_update(db.session.query(OwnershipRecord).filter(OwnershipRecord.id.in_(unique_ids)))
            .order_by(OwnershipRecord.received_at.asc(), OwnershipRecord.id.asc())
            .all()
        )
        missing = sorted(set(unique_ids) - {s.id for s in sources})
        if missing:
            raise RecordNotFoundError(f"Ownership records not found: {missing}")
        for source in sources:
            ownership_store.ensure_mutable(source)
        branches = {s.branch_id for s in sources}
        if len(branches) > 1:
            raise OwnershipError(
                f"Conversion sources span different branches: {sorted(branches)}",
                invariant="same_branch",
            )

        draws = _draw_weight(sources, out_weight)
        for draw in draws:
            check = validate_for_inventory_adjustment(draw.record, -draw.quantity, policy)
            if not check.allowed:
                raise InsufficientOwnershipError(check.reason)

        carried_cost = money(sum((d.cost for d in draws), ZERO))
        source_ids = [d.record.id for d in draws]
        target = ownership_store.open_record(
            product_id=target_product_id,
            branch_id=branches.pop(),
            total_quantity=out_quantity,
            total_weight=out_weight,
            total_cost=carried_cost,
            initial_payment=carried_cost,
            notes=f"Converted from raw gold records {source_ids}",
            reference=reference,
            actor_user_id=actor_user_id,
            movement_type=MOVEMENT_CONVERSION,
            related_record_id=source_ids[0],
        )

        for draw in draws:
            ownership_store.consume(
                draw.record.id,
                draw.quantity,
                draw.weight,
                movement_type=MOVEMENT_CONVERSION,
                reference=reference,
                note=f"Converted into record {target.id} (product {target_product_id})",
                related_record_id=target.id,
                actor_user_id=actor_user_id,
                commit=False,
            )

        current_app.logger.info(
            "Converted %sg from records %s into record %s (product %s, qty %s, cost %s)",
            out_weight,
            source_ids,
            target.id,
            target_product_id,
            out_quantity,
            carried_cost,
        )
        return target

    return _mutate(_op)


def consolidate_ownership(record_ids: list[int], *, actor_user_id: int | None = None):
    return run_with_retry(
        lambda: consolidation_service.consolidate_records(record_ids, actor_user_id=actor_user_id)
    )


def consolidate_supplier_ownership(supplier_id: int, branch_id: int, *, actor_user_id: int | None = None):
    return consolidation_service.consolidate_supplier(supplier_id, branch_id, actor_user_id=actor_user_id)


def consolidation_opportunities(branch_id: int) -> list[dict]:
    return consolidation_service.find_consolidation_opportunities(branch_id)


# ---------------------------------------------------------------------------
# Query surface (read-only)
# ---------------------------------------------------------------------------

def ownership_summary(product_id: int, branch_id: int | None = None) -> dict:
    query = db.session.query(OwnershipRecord).filter(OwnershipRecord.product_id == product_id)
    if branch_id is not None:
        query = query.filter(OwnershipRecord.branch_id == branch_id)
    records = query.order_by(OwnershipRecord.received_at.asc(), OwnershipRecord.id.asc()).all()
    active = [r for r in records if not r.is_terminal]
    position = OwnershipPosition.aggregate(active)
    return {
        "product_id": product_id,
        "branch_id": branch_id,
        "active_records": len(active),
        "total_quantity": as_str(position.total_quantity),
        "owned_quantity": as_str(position.owned_quantity),
        "total_weight": as_str(position.total_weight),
        "owned_weight": as_str(position.owned_weight),
        "amount_paid": as_str(position.amount_paid),
        "outstanding_amount": as_str(position.outstanding_amount),
        "ownership_percentage": as_str(position.ownership_percentage),
        "records": [r.to_dict() for r in records],
    }


def low_ownership_records(
    *,
    threshold=None,
    branch_id: int | None = None,
    policy: OwnershipPolicy | None = None,
) -> list[OwnershipRecord]:
    if threshold is None:
        threshold = (policy or get_policy()).low_threshold
    else:
        threshold = normalize_threshold(threshold, field="threshold")
    query = db.session.query(OwnershipRecord).filter(
        OwnershipRecord.status.notin_(TERMINAL_STATUSES),
        OwnershipRecord.ownership_percentage < Decimal(threshold),
    )
    if branch_id is not None:
        query = query.filter(OwnershipRecord.branch_id == branch_id)
    return query.order_by(OwnershipRecord.ownership_percentage.asc(), OwnershipRecord.id.asc()).all()


def outstanding_records(*, branch_id: int | None = None, supplier_id: int | None = None) -> list[OwnershipRecord]:
    query = db.session.query(OwnershipRecord).filter(
        OwnershipRecord.status.notin_(TERMINAL_STATUSES),
        OwnershipRecord.outstanding_amount > 0,
    )
    if branch_id is not None:
        query = query.filter(OwnershipRecord.branch_id == branch_id)
    if supplier_id is not None:
        query = query.filter(OwnershipRecord.supplier_id == supplier_id)
    return query.order_by(OwnershipRecord.outstanding_amount.desc(), OwnershipRecord.id.asc()).all()


def movement_history(record_id: int, *, newest_first: bool = False) -> list[OwnershipMovement]:
    ownership_store.get_record(record_id)
    return movement_service.list_movements(record_id, newest_first=newest_first)


def _alert(kind: str, severity: str, message: str, record: OwnershipRecord) -> dict:
    return {
        "type": kind,
        "severity": severity,
        "message": message,
        "record_id": record.id,
        "product_id": record.product_id,
        "branch_id": record.branch_id,
        "supplier_id": record.supplier_id,
        "ownership_percentage": as_str(record.ownership_percentage),
        "outstanding_amount": as_str(record.outstanding_amount),
        "created_at": to_utc_z(record.created_at),
    }


def ownership_alerts(*, branch_id: int | None = None, policy: OwnershipPolicy | None = None) -> list[dict]:
    """Low-ownership and outstanding-payment alerts, newest records first."""
    policy = policy or get_policy()
    keyed = []

    for record in low_ownership_records(branch_id=branch_id, policy=policy):
        pct = money(Decimal(record.ownership_percentage) * 100)
        alert = _alert(
            "LOW_OWNERSHIP",
            policy.severity(record.ownership_percentage),
            f"Low ownership percentage: {pct}%",
            record,
        )
        keyed.append(((record.created_at, record.id), alert))

    for record in outstanding_records(branch_id=branch_id):
        alert = _alert(
            "OUTSTANDING_PAYMENT",
            policy.outstanding_severity(record.outstanding_amount),
            f"Outstanding payment: {money(record.outstanding_amount)}",
            record,
        )
        keyed.append(((record.created_at, record.id), alert))

    keyed.sort(key=lambda pair: pair[0], reverse=True)
    return [alert for _, alert in keyed]


def cost_analysis(product_id: int, branch_id: int) -> dict:
    return costing_service.cost_analysis(product_id, branch_id)


def plan_cost(product_id: int, branch_id: int, quantity, method: str = METHOD_FIFO) -> CostPlan:
    return costing_service.plan_cost(product_id, branch_id, quantity, method)


def verify_ledger(record_id: int) -> dict:
    return movement_service.verify_ledger(ownership_store.get_record(record_id))


def verify_all_ledgers(*, branch_id: int | None = None) -> list[dict]:
    query = db.session.query(OwnershipRecord)
    if branch_id is not None:
        query = query.filter(OwnershipRecord.branch_id == branch_id)
    return [movement_service.verify_ledger(r) for r in query.order_by(OwnershipRecord.id.asc()).all()]
