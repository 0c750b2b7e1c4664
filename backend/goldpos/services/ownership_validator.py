# Overview: Ownership validator; read-only sale/transfer/adjustment checks against the injected policy.

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from ..models import OwnershipRecord
from ..decimal_utils import ZERO, qty, money, ratio, to_decimal, as_str
from .ownership_policy import OwnershipPolicy, get_policy


@dataclass(frozen=True)
class OwnershipPosition:
    """Owned/total figures for one record or for all active records of a product."""
    owned_quantity: Decimal
    total_quantity: Decimal
    owned_weight: Decimal
    total_weight: Decimal
    amount_paid: Decimal
    outstanding_amount: Decimal
    ownership_percentage: Decimal
    record_ids: tuple[int, ...] = ()
    terminal: bool = False

    @classmethod
    def from_record(cls, record: OwnershipRecord) -> "OwnershipPosition":
        return cls(
            owned_quantity=qty(record.owned_quantity),
            total_quantity=qty(record.total_quantity),
            owned_weight=qty(record.owned_weight),
            total_weight=qty(record.total_weight),
            amount_paid=money(record.amount_paid),
            outstanding_amount=money(record.outstanding_amount),
            ownership_percentage=ratio(qty(record.owned_quantity), qty(record.total_quantity)),
            record_ids=(record.id,),
            terminal=record.is_terminal,
        )

    @classmethod
    def aggregate(cls, records: list[OwnershipRecord]) -> "OwnershipPosition":
        owned_quantity = sum((qty(r.owned_quantity) for r in records), ZERO)
        total_quantity = sum((qty(r.total_quantity) for r in records), ZERO)
        return cls(
            owned_quantity=owned_quantity,
            total_quantity=total_quantity,
            owned_weight=sum((qty(r.owned_weight) for r in records), ZERO),
            total_weight=sum((qty(r.total_weight) for r in records), ZERO),
            amount_paid=sum((money(r.amount_paid) for r in records), ZERO),
            outstanding_amount=sum((money(r.outstanding_amount) for r in records), ZERO),
            ownership_percentage=ratio(owned_quantity, total_quantity),
            record_ids=tuple(r.id for r in records),
        )


@dataclass
class ValidationResult:
    allowed: bool
    current_percentage: Decimal
    reason: str
    severity: str
    owned_quantity: Decimal = ZERO
    requested_quantity: Decimal = ZERO
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "current_percentage": as_str(self.current_percentage),
            "reason": self.reason,
            "severity": self.severity,
            "owned_quantity": as_str(self.owned_quantity),
            "requested_quantity": as_str(self.requested_quantity),
            "warnings": list(self.warnings),
        }


def percent_label(fraction: Decimal) -> str:
    """0.42 -> '42%', 0.4250 -> '42.5%'."""
    value = (Decimal(fraction) * 100).quantize(Decimal("0.01")).normalize()
    return f"{value:f}%"


def _position(subject) -> OwnershipPosition:
    if isinstance(subject, OwnershipPosition):
        return subject
    return OwnershipPosition.from_record(subject)


def _requested(quantity) -> Decimal:
    return qty(to_decimal(quantity, field="quantity"))


def _payment_warnings(position: OwnershipPosition, policy: OwnershipPolicy) -> list[str]:
    warnings = []
    if position.ownership_percentage < policy.low_threshold:
        warnings.append(f"Low ownership percentage: {percent_label(position.ownership_percentage)}")
    if position.outstanding_amount > 0:
        if position.amount_paid == 0:
            warnings.append(f"Stock is completely unpaid (outstanding: {position.outstanding_amount})")
        else:
            warnings.append(
                f"Stock is partially paid (outstanding: {position.outstanding_amount}, paid: {position.amount_paid})"
            )
    return warnings


def _capacity_check(position: OwnershipPosition, requested: Decimal, policy: OwnershipPolicy, action: str):
    pct = position.ownership_percentage
    severity = policy.severity(pct)
    if position.terminal:
        return ValidationResult(
            allowed=False,
            current_percentage=pct,
            reason=f"cannot complete {action}: ownership record is closed",
            severity=severity,
            owned_quantity=position.owned_quantity,
            requested_quantity=requested,
        )
    if requested > position.owned_quantity:
        return ValidationResult(
            allowed=False,
            current_percentage=pct,
            reason=(
                f"cannot complete {action}: insufficient owned quantity. "
                f"Available: {position.owned_quantity}, Requested: {requested}"
            ),
            severity=severity,
            owned_quantity=position.owned_quantity,
            requested_quantity=requested,
        )
    return None


def validate_for_sale(subject, requested_quantity, policy: OwnershipPolicy | None = None) -> ValidationResult:
    """
    Can `requested_quantity` be sold from this record (or aggregate position)?

    Blocked when the policy forbids sales below the low threshold, otherwise
    decided only by owned capacity. Allowed results still carry payment warnings.
    """
    policy = policy or get_policy()
    position = _position(subject)
    requested = _requested(requested_quantity)
    pct = position.ownership_percentage

    if policy.blocks_sale(pct):
        return ValidationResult(
            allowed=False,
            current_percentage=pct,
            reason=(
                f"cannot complete sale: product ownership is {percent_label(pct)}, "
                f"below the {percent_label(policy.low_threshold)} threshold"
            ),
            severity=policy.severity(pct),
            owned_quantity=position.owned_quantity,
            requested_quantity=requested,
            warnings=_payment_warnings(position, policy),
        )

    rejected = _capacity_check(position, requested, policy, "sale")
    if rejected is not None:
        rejected.warnings = _payment_warnings(position, policy)
        return rejected

    warnings = _payment_warnings(position, policy)
    return ValidationResult(
        allowed=True,
        current_percentage=pct,
        reason="Sale allowed with payment warnings" if warnings else "Sale validated successfully",
        severity=policy.severity(pct),
        owned_quantity=position.owned_quantity,
        requested_quantity=requested,
        warnings=warnings,
    )


def validate_for_transfer(subject, quantity, policy: OwnershipPolicy | None = None) -> ValidationResult:
    policy = policy or get_policy()
    position = _position(subject)
    requested = _requested(quantity)
    pct = position.ownership_percentage

    if not policy.validates_transfers():
        return ValidationResult(
            allowed=True,
            current_percentage=pct,
            reason="Transfer validation disabled",
            severity=policy.severity(pct),
            owned_quantity=position.owned_quantity,
            requested_quantity=requested,
        )

    rejected = _capacity_check(position, requested, policy, "transfer")
    if rejected is not None:
        return rejected
    return ValidationResult(
        allowed=True,
        current_percentage=pct,
        reason="Transfer validated successfully",
        severity=policy.severity(pct),
        owned_quantity=position.owned_quantity,
        requested_quantity=requested,
        warnings=_payment_warnings(position, policy),
    )


def validate_for_inventory_adjustment(
    subject,
    quantity_delta,
    policy: OwnershipPolicy | None = None,
) -> ValidationResult:
    """
    Negative deltas (removals, conversions) must be covered by owned quantity;
    positive deltas may not push owned above the lot total.
    """
    policy = policy or get_policy()
    position = _position(subject)
    delta = _requested(quantity_delta)
    pct = position.ownership_percentage

    if not policy.validates_inventory():
        return ValidationResult(
            allowed=True,
            current_percentage=pct,
            reason="Inventory validation disabled",
            severity=policy.severity(pct),
            owned_quantity=position.owned_quantity,
            requested_quantity=delta,
        )

    if delta < 0:
        rejected = _capacity_check(position, -delta, policy, "inventory adjustment")
        if rejected is not None:
            rejected.requested_quantity = delta
            return rejected
    elif position.owned_quantity + delta > position.total_quantity:
        return ValidationResult(
            allowed=False,
            current_percentage=pct,
            reason=(
                "cannot complete inventory adjustment: owned quantity would exceed lot total. "
                f"Owned: {position.owned_quantity}, Total: {position.total_quantity}, Delta: {delta}"
            ),
            severity=policy.severity(pct),
            owned_quantity=position.owned_quantity,
            requested_quantity=delta,
        )

    return ValidationResult(
        allowed=True,
        current_percentage=pct,
        reason="Inventory adjustment validated successfully",
        severity=policy.severity(pct),
        owned_quantity=position.owned_quantity,
        requested_quantity=delta,
    )

