# Overview: Error taxonomy for the ownership engine.

"""
Every engine failure is a local validation failure surfaced synchronously.

- `invariant` names the rule that was violated so callers (and the HTTP layer)
  can report it without parsing messages.
- Only ConcurrencyConflictError is retried (see concurrency.run_with_retry).
- A raised error always means the record and its movement log are unchanged.
"""


class OwnershipError(ValueError):
    """Base class for ownership engine failures."""
    invariant = "ownership"

    def __init__(self, message: str, *, invariant: str | None = None):
        super().__init__(message)
        if invariant is not None:
            self.invariant = invariant


class RecordNotFoundError(OwnershipError):
    invariant = "record_exists"


class InvalidLotError(OwnershipError):
    """Malformed receipt: non-positive quantity, negative cost, ambiguous source."""
    invariant = "valid_lot"


class OverpaymentError(OwnershipError):
    """amount_paid would exceed total_cost (outstanding may never go negative)."""
    invariant = "amount_paid <= total_cost"


class InsufficientOwnershipError(OwnershipError):
    """Consumption or adjustment would take owned quantity/weight below zero."""
    invariant = "owned >= 0"


class ExcessOwnershipError(OwnershipError):
    """Owned quantity/weight would exceed the lot total."""
    invariant = "owned <= total"


class InsufficientStockError(OwnershipError):
    """A costing plan cannot be satisfied from the owned layers."""
    invariant = "plan_satisfiable"


class ConsolidationMismatchError(OwnershipError):
    """Records to merge span different products, branches or suppliers."""
    invariant = "same_product_branch_supplier"


class TerminalRecordError(OwnershipError):
    """Record is CONSOLIDATED or EXHAUSTED and cannot take this mutation."""
    invariant = "record_not_terminal"


class PaymentConfirmationRequiredError(OwnershipError):
    invariant = "payment_confirmed"


class OwnershipPolicyError(OwnershipError):
    """Ownership settings are malformed (e.g. thresholds out of order)."""
    invariant = "valid_policy"


class ConcurrencyConflictError(OwnershipError):
    """The record changed since it was read (version stamp mismatch)."""
    invariant = "version_stamp"


class SaleBlockedError(OwnershipError):
    """Sale refused by the ownership policy (ownership below the low threshold)."""
    invariant = "ownership >= low_threshold"
