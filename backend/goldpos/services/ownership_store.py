# Overview: Ownership record store; lot creation, payments, consumption and manual adjustments.

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from ..extensions import db
from ..models import OwnershipRecord
from ..models.ownership import (
    SOURCE_SUPPLIER,
    SOURCE_CUSTOMER,
    SOURCE_MERCHANT,
    STATUS_CREATED,
    MOVEMENT_PURCHASE,
    MOVEMENT_PAYMENT,
    MOVEMENT_SALE,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_CONVERSION,
    CONSUMPTION_MOVEMENT_TYPES,
)
from ..decimal_utils import ZERO, qty, money, to_decimal
from ..time_utils import as_utc_naive, utcnow
from .concurrency import lock_for_update, check_version, run_atomic
from .movement_service import MovementDraft, record_movement
from .ownership_errors import (
    OwnershipError,
    RecordNotFoundError,
    InvalidLotError,
    OverpaymentError,
    InsufficientOwnershipError,
    TerminalRecordError,
)
"""
Ownership semantics:
- Ownership is quantity-based: ownership_percentage = owned_quantity / total_quantity.
- Owned weight is kept proportionally in sync with owned quantity, but the two
  are not assumed numerically identical (items in a lot may differ in weight).
- Payments buy the unpaid remainder of a lot (total - consumed - owned) in
  proportion to payment / outstanding. The payment that settles the lot takes
  the whole remainder, so ownership lands exactly on what is left (no rounding
  drift, also after consolidation or partial sales).
- Consumed stock (sold, converted or written off) is never bought again.
- A lot with total_cost = 0 has nothing to pay for and is fully owned on receipt.
- Consumption is capped by what is owned, not by what is physically on hand.
"""


def get_record(record_id: int, *, lock: bool = False) -> OwnershipRecord:
    query = db.session.query(OwnershipRecord).filter_by(id=record_id)
    if lock:
        query = lock_for_update(query)
    record = query.first()
    if record is None:
        raise RecordNotFoundError(f"Ownership record {record_id} not found")
    return record


def ensure_mutable(record: OwnershipRecord) -> None:
    if record.is_terminal:
        raise TerminalRecordError(
            f"Ownership record {record.id} is {record.status} and cannot change"
        )


def owned_share(total: Decimal, amount_paid: Decimal, total_cost: Decimal) -> Decimal:
    """Portion of `total` owned when `amount_paid` of `total_cost` has been paid."""
    if total_cost == 0:
        return qty(total)
    return qty(Decimal(total) * Decimal(amount_paid) / Decimal(total_cost))


def unpaid_share(remainder: Decimal, payment: Decimal, outstanding: Decimal) -> Decimal:
    """Portion of the unpaid `remainder` that `payment` buys while `outstanding` is still owed."""
    if payment >= outstanding:
        return qty(remainder)
    return qty(Decimal(remainder) * Decimal(payment) / Decimal(outstanding))


def _resolve_source(
    supplier_id: int | None,
    purchase_order_id: int | None,
    customer_purchase_id: int | None,
) -> str:
    if customer_purchase_id is not None:
        if supplier_id is not None or purchase_order_id is not None:
            raise InvalidLotError(
                "A lot has exactly one source: supplier purchase or customer purchase, not both"
            )
        return SOURCE_CUSTOMER
    if purchase_order_id is not None and supplier_id is None:
        raise InvalidLotError("purchase_order_id requires supplier_id")
    if supplier_id is not None:
        return SOURCE_SUPPLIER
    return SOURCE_MERCHANT


def open_record(
    *,
    product_id: int,
    branch_id: int,
    total_quantity,
    total_weight,
    total_cost,
    initial_payment=0,
    supplier_id: int | None = None,
    purchase_order_id: int | None = None,
    customer_purchase_id: int | None = None,
    received_at: datetime | None = None,
    notes: str | None = None,
    reference: str | None = None,
    actor_user_id: int | None = None,
    movement_type: str = MOVEMENT_PURCHASE,
    related_record_id: int | None = None,
) -> OwnershipRecord:
    """Core CREATE logic without commit. Used by create_record and raw gold conversion."""
    try:
        total_quantity = to_decimal(total_quantity, field="total_quantity")
        total_weight = to_decimal(total_weight, field="total_weight")
        total_cost = to_decimal(total_cost, field="total_cost")
        initial_payment = to_decimal(initial_payment or 0, field="initial_payment")
    except ValueError as exc:
        raise InvalidLotError(str(exc))

    if product_id is None or branch_id is None:
        raise InvalidLotError("product_id and branch_id are required")
    if qty(total_quantity) <= 0:
        raise InvalidLotError(f"total_quantity must be positive (got {total_quantity})")
    if total_weight < 0:
        raise InvalidLotError(f"total_weight cannot be negative (got {total_weight})")
    if total_cost < 0:
        raise InvalidLotError(f"total_cost cannot be negative (got {total_cost})")
    if initial_payment < 0:
        raise InvalidLotError(f"initial_payment cannot be negative (got {initial_payment})")
    if money(initial_payment) > money(total_cost):
        raise OverpaymentError(
            f"Initial payment {money(initial_payment)} exceeds total cost {money(total_cost)}"
        )

    source_type = _resolve_source(supplier_id, purchase_order_id, customer_purchase_id)

    total_quantity = qty(total_quantity)
    total_weight = qty(total_weight)
    total_cost = money(total_cost)
    initial_payment = money(initial_payment)

    record = OwnershipRecord(
        product_id=product_id,
        branch_id=branch_id,
        source_type=source_type,
        supplier_id=supplier_id,
        purchase_order_id=purchase_order_id,
        customer_purchase_id=customer_purchase_id,
        total_quantity=total_quantity,
        total_weight=total_weight,
        total_cost=total_cost,
        owned_quantity=ZERO,
        owned_weight=ZERO,
        consumed_quantity=ZERO,
        consumed_weight=ZERO,
        amount_paid=ZERO,
        outstanding_amount=total_cost,
        ownership_percentage=ZERO,
        status=STATUS_CREATED,
        notes=notes,
        received_at=as_utc_naive(received_at) if received_at else utcnow(),
    )
    db.session.add(record)
    db.session.flush()

    record_movement(
        record,
        MovementDraft(
            movement_type=movement_type,
            quantity_change=owned_share(total_quantity, initial_payment, total_cost),
            weight_change=owned_share(total_weight, initial_payment, total_cost),
            amount_change=initial_payment,
            reference=reference,
            note=notes or None,
            related_record_id=related_record_id,
            actor_user_id=actor_user_id,
        ),
    )
    return record


def create_record(
    *,
    product_id: int,
    branch_id: int,
    total_quantity,
    total_weight,
    total_cost,
    initial_payment=0,
    supplier_id: int | None = None,
    purchase_order_id: int | None = None,
    customer_purchase_id: int | None = None,
    received_at: datetime | None = None,
    notes: str | None = None,
    reference: str | None = None,
    actor_user_id: int | None = None,
    commit: bool = True,
) -> OwnershipRecord:
    """
    Create an ownership record when stock is received.

    Called by purchasing (supplier_id [+ purchase_order_id]), customer
    purchases (customer_purchase_id) or with no source for merchant stock.
    Initial ownership is proportional to initial_payment / total_cost.

    Raises:
        InvalidLotError: non-positive quantity, negative cost/weight/payment, ambiguous source
        OverpaymentError: initial_payment > total_cost
    """
    def _op():
        return open_record(
            product_id=product_id,
            branch_id=branch_id,
            total_quantity=total_quantity,
            total_weight=total_weight,
            total_cost=total_cost,
            initial_payment=initial_payment,
            supplier_id=supplier_id,
            purchase_order_id=purchase_order_id,
            customer_purchase_id=customer_purchase_id,
            received_at=received_at,
            notes=notes,
            reference=reference,
            actor_user_id=actor_user_id,
        )

    return run_atomic(_op, commit=commit)


def apply_payment(
    record_id: int,
    amount,
    *,
    reference: str | None = None,
    note: str | None = None,
    actor_user_id: int | None = None,
    expected_version: int | None = None,
    commit: bool = True,
) -> OwnershipRecord:
    """
    Record a payment against a lot and grow ownership proportionally.

    Raises:
        OverpaymentError: amount_paid + amount > total_cost
        TerminalRecordError: record is CONSOLIDATED or EXHAUSTED
        ConcurrencyConflictError: expected_version is stale
    """
    def _op():
        payment = money(to_decimal(amount, field="amount"))
        if payment <= 0:
            raise OwnershipError("Payment amount must be positive", invariant="amount > 0")

        record = get_record(record_id, lock=True)
        ensure_mutable(record)
        check_version(record, expected_version)

        paid_before = money(record.amount_paid)
        paid_after = paid_before + payment
        if paid_after > money(record.total_cost):
            raise OverpaymentError(
                f"Payment of {payment} exceeds outstanding amount "
                f"{money(record.outstanding_amount)} on record {record.id}"
            )

        outstanding_before = money(record.total_cost) - paid_before
        unpaid_quantity = max(
            ZERO,
            qty(record.total_quantity) - qty(record.consumed_quantity) - qty(record.owned_quantity),
        )
        unpaid_weight = max(
            ZERO,
            qty(record.total_weight) - qty(record.consumed_weight) - qty(record.owned_weight),
        )
        quantity_change = unpaid_share(unpaid_quantity, payment, outstanding_before)
        weight_change = unpaid_share(unpaid_weight, payment, outstanding_before)

        record_movement(
            record,
            MovementDraft(
                movement_type=MOVEMENT_PAYMENT,
                quantity_change=quantity_change,
                weight_change=weight_change,
                amount_change=payment,
                reference=reference,
                note=note,
                actor_user_id=actor_user_id,
            ),
        )
        return record

    return run_atomic(_op, commit=commit)


def consume(
    record_id: int,
    quantity,
    weight=None,
    *,
    movement_type: str = MOVEMENT_SALE,
    reference: str | None = None,
    note: str | None = None,
    related_record_id: int | None = None,
    actor_user_id: int | None = None,
    expected_version: int | None = None,
    commit: bool = True,
) -> OwnershipRecord:
    """
    Debit owned stock from a lot for a sale or a manufacturing conversion.

    weight defaults to the owned weight proportional to quantity.

    Raises:
        InsufficientOwnershipError: quantity > owned_quantity (or weight > owned_weight)
    """
    if movement_type not in CONSUMPTION_MOVEMENT_TYPES:
        raise OwnershipError(
            f"Consumption must be {MOVEMENT_SALE} or {MOVEMENT_CONVERSION}, got {movement_type}",
            invariant="movement_type",
        )

    def _op():
        take_quantity = qty(to_decimal(quantity, field="quantity"))
        take_weight = None if weight is None else qty(to_decimal(weight, field="weight"))
        if take_quantity < 0 or (take_weight is not None and take_weight < 0):
            raise OwnershipError("Consumption cannot be negative", invariant="quantity >= 0")
        if take_quantity == 0 and not take_weight:
            raise OwnershipError("Consumption must take quantity or weight", invariant="quantity > 0")

        record = get_record(record_id, lock=True)
        ensure_mutable(record)
        check_version(record, expected_version)

        owned_quantity = qty(record.owned_quantity)
        if take_quantity > owned_quantity:
            raise InsufficientOwnershipError(
                f"Insufficient owned quantity on record {record.id}. "
                f"Available: {owned_quantity}, Requested: {take_quantity}"
            )

        if take_weight is None:
            if take_quantity == owned_quantity:
                take_weight = qty(record.owned_weight)
            else:
                take_weight = qty(qty(record.owned_weight) * take_quantity / owned_quantity)

        record_movement(
            record,
            MovementDraft(
                movement_type=movement_type,
                quantity_change=-take_quantity,
                weight_change=-take_weight,
                consumed_quantity_change=take_quantity,
                consumed_weight_change=take_weight,
                reference=reference,
                note=note,
                related_record_id=related_record_id,
                actor_user_id=actor_user_id,
            ),
        )
        return record

    return run_atomic(_op, commit=commit)


def _written_off(delta: Decimal, consumed: Decimal) -> Decimal:
    if delta < 0:
        return -delta
    return -min(delta, consumed)


def adjust(
    record_id: int,
    quantity_delta,
    weight_delta=None,
    *,
    reason: str,
    reference: str | None = None,
    actor_user_id: int | None = None,
    expected_version: int | None = None,
    commit: bool = True,
) -> OwnershipRecord:
    """
    Manual correction of owned quantity/weight.

    Still bound by 0 <= owned + consumed <= total; weight_delta defaults to the lot's
    average unit weight times quantity_delta.
    """
    if not reason or not str(reason).strip():
        raise OwnershipError("Adjustment reason is required", invariant="adjustment_reason")

    def _op():
        delta_quantity = qty(to_decimal(quantity_delta, field="quantity_delta"))
        record = get_record(record_id, lock=True)
        ensure_mutable(record)
        check_version(record, expected_version)

        if weight_delta is None:
            if record.total_quantity:
                delta_weight = qty(Decimal(record.total_weight) / Decimal(record.total_quantity) * delta_quantity)
            else:
                delta_weight = ZERO
        else:
            delta_weight = qty(to_decimal(weight_delta, field="weight_delta"))

        if delta_quantity == 0 and delta_weight == 0:
            raise OwnershipError("Adjustment must change quantity or weight", invariant="non_zero_adjustment")

        # Write-offs leave the lot like a sale; increases reclaim written-off stock first
        consumed_quantity_change = _written_off(delta_quantity, qty(record.consumed_quantity))
        consumed_weight_change = _written_off(delta_weight, qty(record.consumed_weight))

        record_movement(
            record,
            MovementDraft(
                movement_type=MOVEMENT_ADJUSTMENT,
                quantity_change=delta_quantity,
                weight_change=delta_weight,
                consumed_quantity_change=consumed_quantity_change,
                consumed_weight_change=consumed_weight_change,
                reference=reference,
                note=str(reason).strip(),
                actor_user_id=actor_user_id,
            ),
        )
        return record

    return run_atomic(_op, commit=commit)
