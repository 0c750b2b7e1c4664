# Overview: Ownership policy; thresholds and rule switches injected into the validator.

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Protocol

from flask import current_app

from ..decimal_utils import ONE, ZERO, money, percent, to_decimal
from .ownership_errors import OwnershipPolicyError


SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"


class OwnershipPolicy(Protocol):
    """One method per business rule; the validator only talks to this."""

    @property
    def low_threshold(self) -> Decimal: ...

    def blocks_sale(self, ownership_percentage: Decimal) -> bool: ...

    def requires_payment_confirmation(self) -> bool: ...

    def validates_transfers(self) -> bool: ...

    def validates_inventory(self) -> bool: ...

    def severity(self, ownership_percentage: Decimal) -> str: ...

    def outstanding_severity(self, outstanding_amount: Decimal) -> str: ...


def normalize_threshold(value: Any, *, field: str) -> Decimal:
    """Accept 0.5 or 50 for fifty percent."""
    try:
        result = to_decimal(value, field=field)
    except ValueError as exc:
        raise OwnershipPolicyError(str(exc))
    if result > ONE:
        result = result / Decimal("100")
    if result < ZERO or result > ONE:
        raise OwnershipPolicyError(f"{field} must be between 0 and 100 percent (got {value})")
    return percent(result)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass(frozen=True)
class OwnershipSettings:
    low_threshold: Decimal = Decimal("0.5000")
    high_threshold: Decimal = Decimal("0.8000")
    critical_threshold: Decimal = Decimal("0.2500")
    prevent_sale_below_threshold: bool = False
    require_payment_confirmation: bool = False
    enable_transfer_validation: bool = True
    enable_inventory_validation: bool = True
    outstanding_alert_amount: Decimal = Decimal("10000.00")

    def __post_init__(self):
        if not (self.critical_threshold <= self.low_threshold <= self.high_threshold):
            raise OwnershipPolicyError(
                "Ownership thresholds must satisfy critical <= low <= high "
                f"(got critical={self.critical_threshold}, low={self.low_threshold}, high={self.high_threshold})"
            )

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "OwnershipSettings":
        defaults = cls()

        def _get(key, default):
            value = config.get(key)
            return default if value is None else value

        try:
            alert_amount = money(_get("OWNERSHIP_OUTSTANDING_ALERT_AMOUNT", defaults.outstanding_alert_amount))
        except ValueError as exc:
            raise OwnershipPolicyError(str(exc))

        return cls(
            low_threshold=normalize_threshold(
                _get("OWNERSHIP_LOW_THRESHOLD", defaults.low_threshold), field="OWNERSHIP_LOW_THRESHOLD"
            ),
            high_threshold=normalize_threshold(
                _get("OWNERSHIP_HIGH_THRESHOLD", defaults.high_threshold), field="OWNERSHIP_HIGH_THRESHOLD"
            ),
            critical_threshold=normalize_threshold(
                _get("OWNERSHIP_CRITICAL_THRESHOLD", defaults.critical_threshold),
                field="OWNERSHIP_CRITICAL_THRESHOLD",
            ),
            prevent_sale_below_threshold=_as_bool(
                _get("OWNERSHIP_PREVENT_SALE_BELOW_THRESHOLD", defaults.prevent_sale_below_threshold)
            ),
            require_payment_confirmation=_as_bool(
                _get("OWNERSHIP_REQUIRE_PAYMENT_CONFIRMATION", defaults.require_payment_confirmation)
            ),
            enable_transfer_validation=_as_bool(
                _get("OWNERSHIP_ENABLE_TRANSFER_VALIDATION", defaults.enable_transfer_validation)
            ),
            enable_inventory_validation=_as_bool(
                _get("OWNERSHIP_ENABLE_INVENTORY_VALIDATION", defaults.enable_inventory_validation)
            ),
            outstanding_alert_amount=alert_amount,
        )

    def to_dict(self) -> dict:
        return {
            "low_threshold": str(self.low_threshold),
            "high_threshold": str(self.high_threshold),
            "critical_threshold": str(self.critical_threshold),
            "prevent_sale_below_threshold": self.prevent_sale_below_threshold,
            "require_payment_confirmation": self.require_payment_confirmation,
            "enable_transfer_validation": self.enable_transfer_validation,
            "enable_inventory_validation": self.enable_inventory_validation,
            "outstanding_alert_amount": str(self.outstanding_alert_amount),
        }


class ConfiguredOwnershipPolicy:
    """Policy backed by OwnershipSettings (app config in production)."""

    def __init__(self, settings: OwnershipSettings | None = None):
        self.settings = settings or OwnershipSettings()

    @property
    def low_threshold(self) -> Decimal:
        return self.settings.low_threshold

    def blocks_sale(self, ownership_percentage: Decimal) -> bool:
        return self.settings.prevent_sale_below_threshold and Decimal(ownership_percentage) < self.settings.low_threshold

    def requires_payment_confirmation(self) -> bool:
        return self.settings.require_payment_confirmation

    def validates_transfers(self) -> bool:
        return self.settings.enable_transfer_validation

    def validates_inventory(self) -> bool:
        return self.settings.enable_inventory_validation

    def severity(self, ownership_percentage: Decimal) -> str:
        """Alerting classification only; never a blocking decision by itself."""
        pct = Decimal(ownership_percentage)
        if pct < self.settings.critical_threshold:
            return SEVERITY_CRITICAL
        if pct < self.settings.low_threshold:
            return SEVERITY_HIGH
        if pct < self.settings.high_threshold:
            return SEVERITY_MEDIUM
        return SEVERITY_LOW

    def outstanding_severity(self, outstanding_amount: Decimal) -> str:
        if Decimal(outstanding_amount) > self.settings.outstanding_alert_amount:
            return SEVERITY_HIGH
        return SEVERITY_MEDIUM


def get_policy() -> ConfiguredOwnershipPolicy:
    return ConfiguredOwnershipPolicy(OwnershipSettings.from_mapping(current_app.config))
