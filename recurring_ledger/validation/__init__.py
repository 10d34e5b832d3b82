"""Validation package."""

from recurring_ledger.validation.validator import (
    RecurringValidator,
    validate_account_balance,
    validate_execution_context,
    validate_recurring,
)

__all__ = [
    "RecurringValidator",
    "validate_account_balance",
    "validate_execution_context",
    "validate_recurring",
]
