"""
Execution errors.

The engine itself reports failures through ExecutionResult. These exceptions
exist for callers that prefer raising (ExecutionResult.raise_for_failure)
and for the service layer, which raises them on invalid input.
"""

from decimal import Decimal
from typing import Sequence


class RecurringError(Exception):
    """Base exception for recurring engine errors."""
    pass


class RecurringValidationError(RecurringError):
    """A candidate recurring record failed validation."""

    def __init__(self, issues: Sequence):
        self.issues = list(issues)
        messages = "; ".join(getattr(issue, "message", str(issue)) for issue in self.issues)
        super().__init__(messages or "Validation failed")


class PreconditionError(RecurringError):
    """Execution was refused before any money moved."""

    def __init__(self, reasons: Sequence[str]):
        self.reasons = list(reasons)
        super().__init__("; ".join(self.reasons) or "Execution precondition not met")


class InsufficientFundsError(RecurringError):
    """The source account cannot cover the resolved amount."""

    def __init__(self, required: Decimal, available: Decimal):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient funds: required {required}, available {available}"
        )


class PostingError(RecurringError):
    """Writing entries or balances to the ledger failed."""

    def __init__(self, message: str, compensated: bool = True):
        self.compensated = compensated
        super().__init__(message)
