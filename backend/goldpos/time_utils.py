from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

from .services.ownership_errors import InvalidLotError

"""
All ownership timestamps are stored UTC-naive. Receipt dates order cost
layers, so every entry point normalizes them the same way.
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_received_at(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Receipt date of a lot from an API payload.

    Accepts a datetime or an ISO-8601 string ("...Z" and offsets included).
    Empty values mean "now" and are returned as None. Anything else raises
    InvalidLotError.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc_naive(value)
    s = str(value).strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return as_utc_naive(datetime.fromisoformat(s))
    except ValueError:
        raise InvalidLotError(f"received_at must be an ISO-8601 datetime (got {value!r})")


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 with trailing 'Z'; naive values are UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
