"""Execution of recurring obligations against the ledger."""

from recurring_ledger.execution.errors import (
    InsufficientFundsError,
    PostingError,
    PreconditionError,
    RecurringError,
    RecurringValidationError,
)
from recurring_ledger.execution.failure import FailureHandler
from recurring_ledger.execution.statement import StatementBalanceResolver
from recurring_ledger.execution.engine import ExecutionEngine

__all__ = [
    "ExecutionEngine",
    "FailureHandler",
    "StatementBalanceResolver",
    # Errors
    "InsufficientFundsError",
    "PostingError",
    "PreconditionError",
    "RecurringError",
    "RecurringValidationError",
]
