"""Error taxonomy for the scheduling and budget core.

Four kinds are distinguished so callers can act on them without string
matching:

* ``ValidationError`` - the caller sent something malformed; never retried.
* ``StateError`` - the operation is not valid for the entity's current state.
* ``InvariantViolationError`` - a consistency guarantee would break; always
  surfaced, never silently corrected.
* ``TransientError`` - storage timeouts and optimistic-concurrency conflicts;
  retried by the storage-access layer before being surfaced.
"""

from __future__ import annotations

from typing import Any


class CarePlanError(Exception):
    """Base class for every error raised by the core."""

    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if not self.details:
            return self.message
        extras = ", ".join(f"{key}={value!r}" for key, value in sorted(self.details.items()))
        return f"{self.message} ({extras})"


# Validation ------------------------------------------------------------------


class ValidationError(CarePlanError, ValueError):
    """Caller mistake; not retryable."""


class InvalidRecurrenceRuleError(ValidationError):
    pass


class IncompleteRuleError(ValidationError):
    """Rule has neither a completion history nor a start date to anchor on."""


class InvalidStatusError(ValidationError):
    pass


class InvalidMoneyError(ValidationError):
    pass


class NegativeAllocationError(ValidationError):
    pass


class UnknownCategoryError(ValidationError):
    pass


class UnknownCareItemError(ValidationError):
    pass


class OccurrenceNotFoundError(ValidationError):
    pass


class BudgetYearNotFoundError(ValidationError):
    pass


class ConflictingCompletionError(ValidationError):
    """Re-completion attempted with a different cost than the recorded one."""


class TransactionNotFoundError(ValidationError):
    pass


class RefundExceedsPurchaseError(ValidationError):
    """Refund is larger than what remains refundable on the purchase line."""


# State -----------------------------------------------------------------------


class StateError(CarePlanError):
    """Operation is not valid for the current state; not retryable."""


class AlreadyCompletedError(StateError):
    pass


class InvalidTransitionError(StateError):
    pass


class YearNotClosedError(StateError):
    pass


class RefundYearMismatchError(StateError):
    """Refunds must fall in the same budget year as the purchase they refund."""


# Invariants ------------------------------------------------------------------


class InvariantViolationError(CarePlanError):
    """A consistency invariant would be (or has been) broken."""


class NegativeSpendViolationError(InvariantViolationError):
    pass


class DuplicateOccurrenceError(InvariantViolationError):
    pass


class TotalsDriftError(InvariantViolationError):
    pass


# Transient -------------------------------------------------------------------


class TransientError(CarePlanError):
    """Retryable storage condition."""

    retryable = True


class StorageUnavailableError(TransientError):
    pass


class ConcurrencyConflictError(TransientError):
    pass


__all__ = [
    "AlreadyCompletedError",
    "BudgetYearNotFoundError",
    "CarePlanError",
    "ConcurrencyConflictError",
    "ConflictingCompletionError",
    "DuplicateOccurrenceError",
    "IncompleteRuleError",
    "InvalidMoneyError",
    "InvalidRecurrenceRuleError",
    "InvalidStatusError",
    "InvalidTransitionError",
    "InvariantViolationError",
    "NegativeAllocationError",
    "NegativeSpendViolationError",
    "OccurrenceNotFoundError",
    "RefundExceedsPurchaseError",
    "RefundYearMismatchError",
    "StateError",
    "StorageUnavailableError",
    "TotalsDriftError",
    "TransactionNotFoundError",
    "TransientError",
    "UnknownCareItemError",
    "UnknownCategoryError",
    "ValidationError",
    "YearNotClosedError",
]
