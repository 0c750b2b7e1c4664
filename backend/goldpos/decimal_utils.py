from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

"""
Canonical numeric handling for ownership values:
- Quantities and weights (grams) carry 3 decimal places.
- Money carries 2 decimal places.
- Percentages are fractions in [0, 1] with 4 decimal places.
All rounding is half-up. Floats are converted through str() so 0.1 stays 0.1.
"""

QUANTITY_PLACES = Decimal("0.001")
MONEY_PLACES = Decimal("0.01")
PERCENT_PLACES = Decimal("0.0001")

ZERO = Decimal("0")
ONE = Decimal("1")


def to_decimal(value: Any, *, field: str = "value") -> Decimal:
    if value is None:
        raise ValueError(f"{field} is required")
    if isinstance(value, bool):
        raise ValueError(f"{field} must be numeric")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValueError(f"{field} must be numeric")
    if not result.is_finite():
        raise ValueError(f"{field} must be finite")
    return result


def qty(value: Any) -> Decimal:
    return to_decimal(value, field="quantity").quantize(QUANTITY_PLACES, rounding=ROUND_HALF_UP)


def money(value: Any) -> Decimal:
    return to_decimal(value, field="amount").quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def percent(value: Any) -> Decimal:
    return to_decimal(value, field="percentage").quantize(PERCENT_PLACES, rounding=ROUND_HALF_UP)


def ratio(numerator: Decimal, denominator: Decimal) -> Decimal:
    """numerator / denominator as a percentage fraction; 0 when denominator is 0."""
    if denominator == 0:
        return ZERO.quantize(PERCENT_PLACES)
    return percent(numerator / denominator)


def as_str(value: Decimal | None) -> str | None:
    """JSON-safe rendering (Decimal is not JSON serializable)."""
    if value is None:
        return None
    return format(value, "f")
