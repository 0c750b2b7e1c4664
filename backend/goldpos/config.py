# backend/goldpos/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/goldpos.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///goldpos.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Ownership policy (supplied by the settings screens in production).
    # Thresholds may be fractions (0.5) or percentages (50).
    OWNERSHIP_LOW_THRESHOLD = os.environ.get("OWNERSHIP_LOW_THRESHOLD", "0.50")
    OWNERSHIP_HIGH_THRESHOLD = os.environ.get("OWNERSHIP_HIGH_THRESHOLD", "0.80")
    OWNERSHIP_CRITICAL_THRESHOLD = os.environ.get("OWNERSHIP_CRITICAL_THRESHOLD", "0.25")

    OWNERSHIP_PREVENT_SALE_BELOW_THRESHOLD = _env_bool("OWNERSHIP_PREVENT_SALE_BELOW_THRESHOLD", False)
    OWNERSHIP_REQUIRE_PAYMENT_CONFIRMATION = _env_bool("OWNERSHIP_REQUIRE_PAYMENT_CONFIRMATION", False)
    OWNERSHIP_ENABLE_TRANSFER_VALIDATION = _env_bool("OWNERSHIP_ENABLE_TRANSFER_VALIDATION", True)
    OWNERSHIP_ENABLE_INVENTORY_VALIDATION = _env_bool("OWNERSHIP_ENABLE_INVENTORY_VALIDATION", True)

    OWNERSHIP_OUTSTANDING_ALERT_AMOUNT = os.environ.get("OWNERSHIP_OUTSTANDING_ALERT_AMOUNT", "10000.00")

    # Bounded retry for version-stamp conflicts
    OWNERSHIP_RETRY_ATTEMPTS = int(os.environ.get("OWNERSHIP_RETRY_ATTEMPTS", "3"))
