"""
Data Models Package

This package contains all Pydantic models used by the recurring engine.
All data flowing through the engine must conform to these schemas.
"""

from recurring_ledger.models.recurring import (
    AMOUNT_MIN,
    FAILED_ATTEMPTS_DEFAULT,
    FAILED_ATTEMPTS_MAX,
    FAILED_ATTEMPTS_MIN,
    INTERVAL_MONTHS_DEFAULT,
    INTERVAL_MONTHS_MAX,
    INTERVAL_MONTHS_MIN,
    RECURRING_TYPE_LABELS,
    Account,
    AccountType,
    AutoApplyStatus,
    AutoApplySummary,
    CreditCardPaymentRecurring,
    ExecutionOptions,
    ExecutionOutcome,
    ExecutionPreview,
    ExecutionResult,
    ExecutionState,
    FailureKind,
    LedgerEntry,
    Recurring,
    RecurringAdapter,
    RecurringBase,
    RecurringDraft,
    RecurringType,
    StandardRecurring,
    TransactionKind,
    TransferRecurring,
    ValidationIssue,
    ValidationResult,
    parse_recurring,
)
from recurring_ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Constants
    "AMOUNT_MIN",
    "FAILED_ATTEMPTS_DEFAULT",
    "FAILED_ATTEMPTS_MAX",
    "FAILED_ATTEMPTS_MIN",
    "INTERVAL_MONTHS_DEFAULT",
    "INTERVAL_MONTHS_MAX",
    "INTERVAL_MONTHS_MIN",
    "RECURRING_TYPE_LABELS",
    # Recurring models
    "Account",
    "AccountType",
    "AutoApplyStatus",
    "AutoApplySummary",
    "CreditCardPaymentRecurring",
    "ExecutionOptions",
    "ExecutionOutcome",
    "ExecutionPreview",
    "ExecutionResult",
    "ExecutionState",
    "FailureKind",
    "LedgerEntry",
    "Recurring",
    "RecurringAdapter",
    "RecurringBase",
    "RecurringDraft",
    "RecurringType",
    "StandardRecurring",
    "TransactionKind",
    "TransferRecurring",
    "ValidationIssue",
    "ValidationResult",
    "parse_recurring",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
