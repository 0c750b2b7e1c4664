# Overview: Movement recorder; validates a proposed delta, snapshots it and appends the movement.

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import OwnershipRecord, OwnershipMovement
from ..models.ownership import (
    STATUS_CREATED,
    STATUS_PARTIALLY_OWNED,
    STATUS_FULLY_OWNED,
    STATUS_CONSOLIDATED,
    STATUS_EXHAUSTED,
    VALID_MOVEMENT_TYPES,
    REFERENCE_MAX_LENGTH,
    NOTE_MAX_LENGTH,
)
from ..decimal_utils import ZERO, qty, money, ratio
from ..time_utils import utcnow
from .concurrency import flush_or_conflict
from .ownership_errors import (
    OwnershipError,
    InsufficientOwnershipError,
    ExcessOwnershipError,
    OverpaymentError,
    TerminalRecordError,
)
"""
Ownership Ledger Invariants (authoritative)

- Every state change of an OwnershipRecord is written together with exactly one
  OwnershipMovement, inside the caller's DB transaction.
- A delta that would break 0 <= owned <= owned + consumed <= total (quantity and
  weight) or 0 <= amount_paid <= total_cost is rejected before anything is written.
- Movements are append-only; *_after columns make each one self-describing.
- Replaying the deltas of a record in (occurred_at, id) order reproduces its
  owned_quantity, owned_weight and amount_paid exactly (values are quantized
  before they are stored, so sums are exact decimals).
"""


@dataclass(frozen=True)
class LotTotals:
    quantity: Decimal
    weight: Decimal
    cost: Decimal


@dataclass(frozen=True)
class MovementDraft:
    """A proposed change to one record. Deltas are signed."""
    movement_type: str
    quantity_change: Decimal = ZERO
    weight_change: Decimal = ZERO
    amount_change: Decimal = ZERO
    reference: str | None = None
    note: str | None = None
    related_record_id: int | None = None
    actor_user_id: int | None = None
    # Owned stock that leaves the lot (sold, melted, written off) or is reclaimed
    consumed_quantity_change: Decimal = ZERO
    consumed_weight_change: Decimal = ZERO
    # Only consolidation replaces the lot totals (absorption zeroes them)
    new_totals: LotTotals | None = None
    absorbed: bool = False


@dataclass(frozen=True)
class Snapshot:
    total_quantity: Decimal
    total_weight: Decimal
    total_cost: Decimal
    owned_quantity: Decimal
    owned_weight: Decimal
    consumed_quantity: Decimal
    consumed_weight: Decimal
    amount_paid: Decimal
    outstanding_amount: Decimal
    ownership_percentage: Decimal
    status: str


def next_status(
    current: str,
    *,
    owned_quantity: Decimal,
    outstanding_amount: Decimal,
    total_quantity: Decimal,
    absorbed: bool = False,
) -> str:
    """
    Lifecycle transition for a record after a movement.

    CREATED -> PARTIALLY_OWNED <-> FULLY_OWNED (payments)
    any non-terminal -> CONSOLIDATED (absorbed by consolidation)
    any non-terminal -> EXHAUSTED (nothing owned and nothing left to pay for)
    Nothing re-enters CREATED.
    """
    if absorbed:
        return STATUS_CONSOLIDATED
    if owned_quantity == 0 and outstanding_amount == 0 and total_quantity > 0:
        return STATUS_EXHAUSTED
    if owned_quantity == 0 and current == STATUS_CREATED:
        return STATUS_CREATED
    if outstanding_amount == 0:
        return STATUS_FULLY_OWNED
    return STATUS_PARTIALLY_OWNED


def compute_snapshot(record: OwnershipRecord, draft: MovementDraft) -> Snapshot:
    """
    Apply a draft to a record's current state without mutating it.

    Raises the specific invariant violation instead of clamping.
    """
    if draft.movement_type not in VALID_MOVEMENT_TYPES:
        raise OwnershipError(f"Invalid movement type: {draft.movement_type}", invariant="movement_type")

    if record.status in (STATUS_CONSOLIDATED, STATUS_EXHAUSTED):
        raise TerminalRecordError(
            f"Ownership record {record.id} is {record.status} and cannot change"
        )

    if draft.new_totals is not None:
        total_quantity = qty(draft.new_totals.quantity)
        total_weight = qty(draft.new_totals.weight)
        total_cost = money(draft.new_totals.cost)
    else:
        total_quantity = qty(record.total_quantity)
        total_weight = qty(record.total_weight)
        total_cost = money(record.total_cost)

    owned_quantity = qty(record.owned_quantity) + qty(draft.quantity_change)
    owned_weight = qty(record.owned_weight) + qty(draft.weight_change)
    amount_paid = money(record.amount_paid) + money(draft.amount_change)

    if draft.reference is not None and len(draft.reference) > REFERENCE_MAX_LENGTH:
        raise OwnershipError(
            f"Movement reference is limited to {REFERENCE_MAX_LENGTH} characters (got {len(draft.reference)})",
            invariant="reference_length",
        )

    # Absorbed records keep nothing, consumed history included
    if draft.new_totals is not None:
        consumed_quantity = ZERO
        consumed_weight = ZERO
    else:
        consumed_quantity = qty(record.consumed_quantity or ZERO) + qty(draft.consumed_quantity_change)
        consumed_weight = qty(record.consumed_weight or ZERO) + qty(draft.consumed_weight_change)
    if consumed_quantity < 0 or consumed_weight < 0:
        raise OwnershipError(
            f"Consumed stock cannot go negative on record {record.id}",
            invariant="consumed >= 0",
        )

    if owned_quantity < 0:
        raise InsufficientOwnershipError(
            f"Insufficient owned quantity on record {record.id}. "
            f"Available: {record.owned_quantity}, Requested: {-qty(draft.quantity_change)}"
        )
    if owned_weight < 0:
        raise InsufficientOwnershipError(
            f"Insufficient owned weight on record {record.id}. "
            f"Available: {record.owned_weight}g, Requested: {-qty(draft.weight_change)}g"
        )
    if owned_quantity > total_quantity:
        raise ExcessOwnershipError(
            f"Owned quantity {owned_quantity} would exceed lot quantity {total_quantity} on record {record.id}"
        )
    if owned_weight > total_weight:
        raise ExcessOwnershipError(
            f"Owned weight {owned_weight}g would exceed lot weight {total_weight}g on record {record.id}"
        )
    if owned_quantity + consumed_quantity > total_quantity:
        raise ExcessOwnershipError(
            f"Owned quantity {owned_quantity} plus consumed {consumed_quantity} would exceed "
            f"lot quantity {total_quantity} on record {record.id}"
        )
    if owned_weight + consumed_weight > total_weight:
        raise ExcessOwnershipError(
            f"Owned weight {owned_weight}g plus consumed {consumed_weight}g would exceed "
            f"lot weight {total_weight}g on record {record.id}"
        )
    if amount_paid < 0:
        raise OwnershipError(
            f"Amount paid cannot go negative on record {record.id}",
            invariant="amount_paid >= 0",
        )
    if amount_paid > total_cost:
        raise OverpaymentError(
            f"Payment would exceed total cost on record {record.id}. "
            f"Outstanding: {money(total_cost - money(record.amount_paid))}, "
            f"Requested: {money(draft.amount_change)}"
        )

    outstanding_amount = money(total_cost - amount_paid)
    ownership_percentage = ratio(owned_quantity, total_quantity)

    status = next_status(
        record.status,
        owned_quantity=owned_quantity,
        outstanding_amount=outstanding_amount,
        total_quantity=total_quantity,
        absorbed=draft.absorbed,
    )

    return Snapshot(
        total_quantity=total_quantity,
        total_weight=total_weight,
        total_cost=total_cost,
        owned_quantity=owned_quantity,
        owned_weight=owned_weight,
        consumed_quantity=consumed_quantity,
        consumed_weight=consumed_weight,
        amount_paid=amount_paid,
        outstanding_amount=outstanding_amount,
        ownership_percentage=ownership_percentage,
        status=status,
    )


def record_movement(record: OwnershipRecord, draft: MovementDraft) -> OwnershipMovement:
    """
    Validate, apply and append one movement.

    The record and its movement are flushed together; committing is the
    caller's job so multi-record operations stay a single unit of work.
    """
    snapshot = compute_snapshot(record, draft)

    record.total_quantity = snapshot.total_quantity
    record.total_weight = snapshot.total_weight
    record.total_cost = snapshot.total_cost
    record.owned_quantity = snapshot.owned_quantity
    record.owned_weight = snapshot.owned_weight
    record.consumed_quantity = snapshot.consumed_quantity
    record.consumed_weight = snapshot.consumed_weight
    record.amount_paid = snapshot.amount_paid
    record.outstanding_amount = snapshot.outstanding_amount
    record.ownership_percentage = snapshot.ownership_percentage
    record.status = snapshot.status

    movement = OwnershipMovement(
        record_id=record.id,
        movement_type=draft.movement_type,
        quantity_change=qty(draft.quantity_change),
        weight_change=qty(draft.weight_change),
        amount_change=money(draft.amount_change),
        owned_quantity_after=snapshot.owned_quantity,
        owned_weight_after=snapshot.owned_weight,
        amount_paid_after=snapshot.amount_paid,
        ownership_percentage_after=snapshot.ownership_percentage,
        related_record_id=draft.related_record_id,
        reference=draft.reference,
        note=draft.note[:NOTE_MAX_LENGTH] if draft.note else draft.note,
        actor_user_id=draft.actor_user_id,
        occurred_at=utcnow(),
    )
    db.session.add(movement)
    flush_or_conflict()

    current_app.logger.info(
        "Ownership movement %s on record %s: qty %s, weight %s, amount %s -> status %s",
        draft.movement_type,
        record.id,
        movement.quantity_change,
        movement.weight_change,
        movement.amount_change,
        record.status,
    )
    return movement


def list_movements(record_id: int, *, newest_first: bool = False) -> list[OwnershipMovement]:
    q = db.session.query(OwnershipMovement).filter_by(record_id=record_id)
    if newest_first:
        q = q.order_by(OwnershipMovement.occurred_at.desc(), OwnershipMovement.id.desc())
    else:
        q = q.order_by(OwnershipMovement.occurred_at.asc(), OwnershipMovement.id.asc())
    return q.all()


@dataclass(frozen=True)
class LedgerReplay:
    owned_quantity: Decimal
    owned_weight: Decimal
    amount_paid: Decimal
    movement_count: int


def replay_movements(record_id: int) -> LedgerReplay:
    """Sum every delta of a record from zero, in ledger order."""
    owned_quantity = ZERO
    owned_weight = ZERO
    amount_paid = ZERO
    movements = list_movements(record_id)
    for movement in movements:
        owned_quantity += movement.quantity_change
        owned_weight += movement.weight_change
        amount_paid += movement.amount_change
    return LedgerReplay(
        owned_quantity=qty(owned_quantity),
        owned_weight=qty(owned_weight),
        amount_paid=money(amount_paid),
        movement_count=len(movements),
    )


def verify_ledger(record: OwnershipRecord) -> dict:
    """Compare a record's stored fields to the replay of its movements."""
    replay = replay_movements(record.id)
    drift = {}
    for field, replayed, stored in (
        ("owned_quantity", replay.owned_quantity, qty(record.owned_quantity)),
        ("owned_weight", replay.owned_weight, qty(record.owned_weight)),
        ("amount_paid", replay.amount_paid, money(record.amount_paid)),
    ):
        if replayed != stored:
            drift[field] = {"stored": str(stored), "replayed": str(replayed)}
    return {
        "record_id": record.id,
        "movement_count": replay.movement_count,
        "consistent": not drift,
        "drift": drift,
    }
