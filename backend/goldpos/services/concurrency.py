# Overview: Transaction helpers for ownership mutations; locking, commit and bounded retry.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .ownership_errors import ConcurrencyConflictError


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The version stamp on OwnershipRecord still catches concurrent writers there.
    """
    return query.with_for_update()


def check_version(record, expected_version: int | None) -> None:
    """Reject a mutation planned against an older read of the record."""
    if expected_version is None:
        return
    if record.version_id != expected_version:
        raise ConcurrencyConflictError(
            f"Ownership record {record.id} changed "
            f"(expected version {expected_version}, found {record.version_id})"
        )


def commit_or_conflict() -> None:
    """
    Commit the current unit of work.

    StaleDataError (version stamp mismatch at flush) and lock errors are
    surfaced as ConcurrencyConflictError after rolling back.
    """
    try:
        db.session.commit()
    except (StaleDataError, OperationalError) as exc:
        db.session.rollback()
        raise ConcurrencyConflictError(f"Concurrent update detected: {exc}") from exc


def flush_or_conflict() -> None:
    try:
        db.session.flush()
    except (StaleDataError, OperationalError) as exc:
        db.session.rollback()
        raise ConcurrencyConflictError(f"Concurrent update detected: {exc}") from exc


def run_atomic(func, *, commit: bool = True):
    """
    Run one mutation as a single unit of work without retrying.

    commit=False leaves the flushed changes in the caller's transaction
    (used when an orchestrating operation spans several records).
    """
    if not commit:
        return func()

    def _unit():
        result = func()
        commit_or_conflict()
        return result

    return run_with_retry(_unit, attempts=1)


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.05):
    """
    Execute one atomic ownership operation, retrying on version conflicts.

    - Any exception rolls the session back, so a rejected mutation never
      leaves partial writes behind.
    - Only ConcurrencyConflictError (and raw StaleDataError) is retried; every
      other error propagates on the first attempt.
    - After the last attempt the conflict is surfaced to the caller.
    """
    if attempts is None:
        attempts = int(current_app.config.get("OWNERSHIP_RETRY_ATTEMPTS", 3))
    attempts = max(1, attempts)

    for attempt in range(attempts):
        try:
            return func()
        except (ConcurrencyConflictError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                if isinstance(exc, ConcurrencyConflictError):
                    raise
                raise ConcurrencyConflictError(f"Concurrent update detected: {exc}") from exc
            current_app.logger.warning(
                "Ownership update conflict (attempt %s/%s), retrying: %s",
                attempt + 1,
                attempts,
                exc,
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
