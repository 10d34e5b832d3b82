"""
Core Data Models for the Recurring Transaction Engine

These models define the schemas for everything flowing through the engine:
recurring obligations, the accounts and ledger entries they touch, and the
results the engine hands back to its caller.

DESIGN DECISION: A recurring obligation is a tagged union, not one wide record.
Standard, Transfer and CreditCardPayment each carry exactly the fields they
need, so a Standard record with a transfer account cannot be constructed.

The loose RecurringDraft is the PROPOSED form of a record (what a form or an
import produced). It goes through the validator before it is turned into one
of the typed variants.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)


# =============================================================================
# CONSTANTS - fixed invariants, not tunables
# =============================================================================

INTERVAL_MONTHS_MIN = 1
INTERVAL_MONTHS_MAX = 24
INTERVAL_MONTHS_DEFAULT = 1

FAILED_ATTEMPTS_MIN = 1
FAILED_ATTEMPTS_MAX = 10
FAILED_ATTEMPTS_DEFAULT = 3

AMOUNT_MIN = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class RecurringType(str, Enum):
    """The three kinds of recurring obligation."""
    STANDARD = "Standard"
    TRANSFER = "Transfer"
    CREDIT_CARD_PAYMENT = "CreditCardPayment"


class TransactionKind(str, Enum):
    """Kind applied to the ledger entries a recurring obligation generates."""
    EXPENSE = "Expense"
    INCOME = "Income"
    TRANSFER = "Transfer"
    ADJUSTMENT = "Adjustment"
    INITIAL = "Initial"
    REFUND = "Refund"


# Kinds that take money out of the source account
DEBIT_KINDS = frozenset({TransactionKind.EXPENSE, TransactionKind.TRANSFER})


class AccountType(str, Enum):
    """
    Account category type.

    Balances are plainly signed: a card owing 500 has a balance of -500.
    """
    ASSET = "Asset"
    LIABILITY = "Liability"


class ExecutionOutcome(str, Enum):
    """
    Terminal outcome of one execution attempt.

    POSTED and SKIPPED are successes. SKIP_AND_RESCHEDULE,
    PARTIAL_PAYMENT_AVAILABLE and NO_FUNDS_AVAILABLE are the advisory
    outcomes of the failure handler. REJECTED and FAILED carry a failure kind.
    """
    POSTED = "Posted"
    SKIPPED = "Skipped"
    REJECTED = "Rejected"
    SKIP_AND_RESCHEDULE = "SkipAndReschedule"
    PARTIAL_PAYMENT_AVAILABLE = "PartialPaymentAvailable"
    NO_FUNDS_AVAILABLE = "NoFundsAvailable"
    FAILED = "Failed"


class ExecutionState(str, Enum):
    """States an execution attempt moves through."""
    PENDING = "Pending"
    VALIDATED = "Validated"
    AMOUNT_RESOLVED = "AmountResolved"
    FUNDS_CHECKED = "FundsChecked"
    POSTED = "Posted"
    RESCHEDULED = "Rescheduled"
    SKIPPED = "Skipped"
    REJECTED = "Rejected"


class FailureKind(str, Enum):
    VALIDATION = "validation"
    PRECONDITION = "precondition"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    POSTING = "posting"


RECURRING_TYPE_LABELS: dict[RecurringType, str] = {
    RecurringType.STANDARD: "Standard Transaction",
    RecurringType.TRANSFER: "Account Transfer",
    RecurringType.CREDIT_CARD_PAYMENT: "Credit Card Payment",
}


# =============================================================================
# RECURRING OBLIGATION - tagged union
# =============================================================================

class RecurringBase(BaseModel):
    """
    Fields shared by every recurring obligation.

    Not instantiated directly - use one of the three variants below.
    """
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    # Identity
    id: str = Field(
        default_factory=new_id,
        description="Opaque unique identifier"
    )
    tenant_id: str = Field(
        ...,
        min_length=1,
        description="Opaque scope key"
    )
    source_account_id: str = Field(
        ...,
        min_length=1,
        description="Account debited/credited first"
    )

    # Descriptive
    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
    )
    description: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=1000)
    payee_name: Optional[str] = Field(default=None, max_length=200)
    currency_code: str = Field(default="USD", min_length=3, max_length=3)
    category_id: Optional[str] = None
    transaction_kind: TransactionKind = TransactionKind.EXPENSE

    # Scheduling
    interval_months: int = Field(
        default=INTERVAL_MONTHS_DEFAULT,
        ge=INTERVAL_MONTHS_MIN,
        le=INTERVAL_MONTHS_MAX,
    )
    next_occurrence_date: Optional[date] = None
    anchor_day: Optional[int] = Field(
        default=None,
        ge=1,
        le=31,
        description="Original day of month; month-end clamping is measured against it"
    )
    end_date: Optional[date] = None
    last_executed_at: Optional[date] = None
    last_auto_applied_at: Optional[datetime] = None
    is_active: bool = True
    is_date_flexible: bool = False

    # Amount
    amount: Optional[Decimal] = Field(
        default=None,
        gt=0,
        decimal_places=2,
    )
    is_amount_flexible: bool = False

    # Auto-apply
    auto_apply_enabled: bool = False
    failed_attempts: int = Field(default=0, ge=0)
    max_failed_attempts: int = Field(
        default=FAILED_ATTEMPTS_DEFAULT,
        ge=FAILED_ATTEMPTS_MIN,
        le=FAILED_ATTEMPTS_MAX,
    )

    # Soft delete, concurrency and audit
    is_deleted: bool = False
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    created_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    @model_validator(mode="after")
    def validate_schedule_and_amount(self) -> "RecurringBase":
        """Enforce the record-level amount and date invariants."""
        if not self.is_amount_flexible and self.amount is None:
            raise ValueError("Amount is required when amount is not flexible")
        if not self.is_date_flexible and self.next_occurrence_date is None:
            raise ValueError("Next occurrence date is required when date is not flexible")
        if self.anchor_day is None and self.next_occurrence_date is not None:
            self.anchor_day = self.next_occurrence_date.day
        return self

    @property
    def is_exhausted(self) -> bool:
        """True once unattended execution is blocked by repeated failures."""
        return self.failed_attempts >= self.max_failed_attempts

    @property
    def counterparty_account_id(self) -> Optional[str]:
        return None


class StandardRecurring(RecurringBase):
    """A plain recurring income or expense against one account."""
    recurring_type: Literal[RecurringType.STANDARD] = RecurringType.STANDARD


class TransferRecurring(RecurringBase):
    """A recurring move of money between two of the tenant's accounts."""
    recurring_type: Literal[RecurringType.TRANSFER] = RecurringType.TRANSFER
    transaction_kind: TransactionKind = TransactionKind.TRANSFER
    transfer_account_id: str = Field(
        ...,
        min_length=1,
        description="Destination account"
    )

    @model_validator(mode="after")
    def validate_accounts_differ(self) -> "TransferRecurring":
        if self.transfer_account_id == self.source_account_id:
            raise ValueError("Transfer account must be different from source account")
        return self

    @property
    def counterparty_account_id(self) -> Optional[str]:
        return self.transfer_account_id


class CreditCardPaymentRecurring(RecurringBase):
    """
    A recurring payment of a credit card statement.

    The amount is never stored: it is resolved from the card's statement
    balance at execution time.
    """
    recurring_type: Literal[RecurringType.CREDIT_CARD_PAYMENT] = RecurringType.CREDIT_CARD_PAYMENT
    transaction_kind: TransactionKind = TransactionKind.TRANSFER
    transfer_account_id: str = Field(
        ...,
        min_length=1,
        description="The card (liability) account being paid"
    )
    category_id: str = Field(
        ...,
        min_length=1,
        description="Category identifying the liability being paid"
    )
    is_amount_flexible: Literal[True] = True
    amount: None = None

    @model_validator(mode="before")
    @classmethod
    def apply_type_defaults(cls, data: Any) -> Any:
        """Card payments are always amount-flexible with no stored amount."""
        if isinstance(data, dict):
            data = {**data, "is_amount_flexible": True, "amount": None}
        return data

    @model_validator(mode="after")
    def validate_accounts_differ(self) -> "CreditCardPaymentRecurring":
        if self.transfer_account_id == self.source_account_id:
            raise ValueError("Source account and credit card account must be different")
        return self

    @property
    def counterparty_account_id(self) -> Optional[str]:
        return self.transfer_account_id


Recurring = Annotated[
    Union[StandardRecurring, TransferRecurring, CreditCardPaymentRecurring],
    Field(discriminator="recurring_type"),
]

RecurringAdapter: TypeAdapter = TypeAdapter(Recurring)


def parse_recurring(data: dict) -> Union[StandardRecurring, TransferRecurring, CreditCardPaymentRecurring]:
    """Build the right variant from a plain mapping (e.g. a stored row)."""
    return RecurringAdapter.validate_python(data)


class RecurringDraft(BaseModel):
    """
    A candidate recurring obligation, before validation.

    CRITICAL: This is PROPOSED data. Every field is optional and the type
    tag is a raw string so the validator can report everything that is wrong
    with it, instead of failing on the first problem.
    """
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    id: Optional[str] = None
    tenant_id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    payee_name: Optional[str] = None
    currency_code: Optional[str] = None

    recurring_type: Optional[str] = None
    transaction_kind: Optional[TransactionKind] = None

    source_account_id: Optional[str] = None
    transfer_account_id: Optional[str] = None
    category_id: Optional[str] = None

    interval_months: Optional[int] = None
    next_occurrence_date: Optional[date] = None
    anchor_day: Optional[int] = None
    end_date: Optional[date] = None
    is_active: bool = True
    is_date_flexible: bool = False

    amount: Optional[Decimal] = None
    is_amount_flexible: bool = False

    auto_apply_enabled: bool = False
    failed_attempts: Optional[int] = None
    max_failed_attempts: Optional[int] = None

    created_by: Optional[str] = None

    @field_validator("recurring_type", mode="before")
    @classmethod
    def unwrap_type_enum(cls, v: Any) -> Any:
        return v.value if isinstance(v, RecurringType) else v

    @classmethod
    def from_recurring(cls, recurring: RecurringBase) -> "RecurringDraft":
        """Turn a stored record back into a draft, e.g. to re-validate an update."""
        data = recurring.model_dump()
        data["recurring_type"] = recurring.recurring_type.value
        return cls.model_validate(data)

    def to_recurring(self, **overrides: Any) -> Union[StandardRecurring, TransferRecurring, CreditCardPaymentRecurring]:
        """
        Build the typed variant.

        Call this only after validation passed; pydantic still enforces the
        variant's own constraints and raises if the draft does not fit.
        """
        data = self.model_dump(exclude_none=True)
        data.update({k: v for k, v in overrides.items() if v is not None})
        data.setdefault("recurring_type", RecurringType.STANDARD.value)
        return parse_recurring(data)


# =============================================================================
# LEDGER COLLABORATOR MODELS
# =============================================================================

class Account(BaseModel):
    """An account as seen by the engine. Owned by the ledger store."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str = ""
    balance: Decimal = Decimal("0")
    account_type: AccountType = AccountType.ASSET
    statement_day: Optional[int] = Field(
        default=None,
        ge=1,
        le=31,
        description="Billing-cycle anchor day for card accounts"
    )
    is_deleted: bool = False

    @property
    def is_liability(self) -> bool:
        return self.account_type == AccountType.LIABILITY


class LedgerEntry(BaseModel):
    """
    One money movement. Negative amounts are debits.

    Transfer pairs link to each other through transfer_id and always sum
    to zero.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    account_id: str
    amount: Decimal
    transaction_kind: TransactionKind
    date: date
    created_at: datetime = Field(default_factory=utcnow)
    category_id: Optional[str] = None
    transfer_account_id: Optional[str] = None
    transfer_id: Optional[str] = None

    name: str = ""
    description: Optional[str] = None
    payee: Optional[str] = None
    notes: Optional[str] = None

    # Provenance
    recurring_id: Optional[str] = None
    created_by: Optional[str] = None


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single rule violation found on a candidate."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    rule: str = Field(
        ...,
        description="Rule that failed (e.g. 'required', 'range', 'different')"
    )
    value: Any = None
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        default="error",
        pattern="^(error|warning)$",
    )


class ValidationResult(BaseModel):
    """Result of validating one candidate. All violations are collected."""

    validated_at: datetime = Field(default_factory=utcnow)
    is_valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(issue.severity == "error" for issue in self.errors)

    @property
    def error_count(self) -> int:
        return sum(1 for issue in self.errors if issue.severity == "error")

    def fields(self) -> set[str]:
        return {issue.field for issue in self.errors}

    def messages(self) -> list[str]:
        return [issue.message for issue in self.errors]

    def raise_for_errors(self) -> None:
        """Raise RecurringValidationError if any rule failed."""
        from recurring_ledger.execution.errors import RecurringValidationError

        if self.has_errors:
            raise RecurringValidationError(self.errors)


# =============================================================================
# EXECUTION MODELS
# =============================================================================

class ExecutionOptions(BaseModel):
    """Caller-supplied knobs for one execution."""

    override_amount: Optional[Decimal] = Field(default=None, gt=0)
    occurrence_date: Optional[date] = Field(
        default=None,
        description="Date to post on when the record's date is flexible"
    )
    description: Optional[str] = None
    notes: Optional[str] = None
    as_of: Optional[date] = None
    unattended: Optional[bool] = Field(
        default=None,
        description="Defaults to the record's auto_apply_enabled"
    )
    allow_overdraft: bool = False
    acknowledge_failures: bool = Field(
        default=False,
        description="Human override for a record that exhausted its failed attempts"
    )
    executed_by: Optional[str] = None


class ExecutionResult(BaseModel):
    """
    Discriminated result of one execution attempt.

    The `recurring` field holds the record as it should be persisted by the
    caller; `requires_save` tells whether anything changed.
    """

    recurring_id: str
    outcome: ExecutionOutcome
    state: ExecutionState
    recurring: Recurring
    requires_save: bool = False
    occurrence_date: Optional[date] = None
    entries: list[LedgerEntry] = Field(default_factory=list)
    amount_applied: Decimal = Decimal("0")
    required_amount: Optional[Decimal] = None
    available_amount: Optional[Decimal] = None
    failure_kind: Optional[FailureKind] = None
    compensation_failed: bool = False
    reasons: list[str] = Field(default_factory=list)
    issues: list[ValidationIssue] = Field(default_factory=list)
    executed_at: datetime = Field(default_factory=utcnow)

    @property
    def succeeded(self) -> bool:
        return self.outcome in (ExecutionOutcome.POSTED, ExecutionOutcome.SKIPPED)

    @property
    def message(self) -> str:
        return "; ".join(self.reasons)

    def raise_for_failure(self) -> None:
        """Convert a failed result into the matching exception."""
        from recurring_ledger.execution.errors import (
            InsufficientFundsError,
            PostingError,
            PreconditionError,
            RecurringError,
            RecurringValidationError,
        )

        if self.succeeded:
            return
        if self.failure_kind == FailureKind.VALIDATION:
            raise RecurringValidationError(self.issues)
        if self.failure_kind == FailureKind.PRECONDITION:
            raise PreconditionError(self.reasons)
        if self.failure_kind == FailureKind.INSUFFICIENT_FUNDS:
            raise InsufficientFundsError(
                required=self.required_amount or Decimal("0"),
                available=self.available_amount or Decimal("0"),
            )
        if self.failure_kind == FailureKind.POSTING:
            raise PostingError(self.message, compensated=not self.compensation_failed)
        raise RecurringError(self.message or self.outcome.value)


class ExecutionPreview(BaseModel):
    """What an execution would do, without doing it."""

    recurring_id: str
    recurring_type: RecurringType
    estimated_amount: Decimal = Decimal("0")
    estimated_date: Optional[date] = None
    source_account: Optional[Account] = None
    destination_account: Optional[Account] = None
    upcoming_dates: list[date] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class AutoApplySummary(BaseModel):
    """Result of one unattended batch run for a tenant."""

    correlation_id: str
    tenant_id: str
    as_of: date
    applied_count: int = 0
    skipped_count: int = 0
    rejected_count: int = 0
    failed_count: int = 0
    pending_count: int = 0
    results: list[ExecutionResult] = Field(default_factory=list)
    pending_recurring_ids: list[str] = Field(default_factory=list)


class AutoApplyStatus(BaseModel):
    """Counts shown on the auto-apply overview."""

    total_recurring: int = 0
    auto_apply_enabled: int = 0
    due_count: int = 0
    failed_count: int = 0
