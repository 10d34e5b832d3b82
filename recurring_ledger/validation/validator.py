"""
Recurring Validation Rules

DESIGN DECISION: Validation is a small, stateless rule engine.

Every rule runs independently and ALL violations are collected - a candidate
with a bad interval AND a missing transfer account gets two errors, not one.
Each violation carries {field, rule, value, message} so a form can point at
the exact field.

Two kinds of checks live here:
1. Static rules on a candidate record (validate / validate_transfer /
   validate_credit_card_payment). No I/O.
2. Runtime execution checks (validate_execution_context,
   validate_account_balance) used by the execution engine right before
   money moves.

IMPORTANT: Validation NEVER silently fixes issues. "Flexible" flags exempt
the matching required-field rule; nothing is defaulted to a placeholder.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Optional, Union

from recurring_ledger.config import get_settings
from recurring_ledger.models.recurring import (
    FAILED_ATTEMPTS_MAX,
    FAILED_ATTEMPTS_MIN,
    INTERVAL_MONTHS_MAX,
    INTERVAL_MONTHS_MIN,
    AccountType,
    RecurringBase,
    RecurringDraft,
    RecurringType,
    ValidationIssue,
    ValidationResult,
)


Candidate = Union[RecurringDraft, RecurringBase, dict]


class RecurringValidator:
    """
    Validates candidate recurring records.

    Stateless apart from the configured minimum amount; safe to share.
    """

    def __init__(self, min_amount: Optional[Decimal] = None):
        """
        Args:
            min_amount: Smallest allowed fixed amount.
                        Defaults to RECURRING_MIN_AMOUNT from settings.
        """
        self._min_amount = (
            min_amount if min_amount is not None else get_settings().engine.min_amount
        )

    @staticmethod
    def _as_draft(candidate: Candidate) -> RecurringDraft:
        if isinstance(candidate, RecurringDraft):
            return candidate
        if isinstance(candidate, RecurringBase):
            return RecurringDraft.from_recurring(candidate)
        return RecurringDraft.model_validate(candidate)

    @staticmethod
    def _issue(field: str, rule: str, value: Any, message: str) -> ValidationIssue:
        return ValidationIssue(field=field, rule=rule, value=value, message=message)

    # ------------------------------------------------------------------
    # Rule groups
    # ------------------------------------------------------------------

    def _check_ranges(self, draft: RecurringDraft) -> list[ValidationIssue]:
        issues = []

        if draft.interval_months is not None and not (
            INTERVAL_MONTHS_MIN <= draft.interval_months <= INTERVAL_MONTHS_MAX
        ):
            issues.append(self._issue(
                "interval_months",
                "range",
                draft.interval_months,
                f"Interval months must be between {INTERVAL_MONTHS_MIN} and {INTERVAL_MONTHS_MAX}",
            ))

        if draft.max_failed_attempts is not None and not (
            FAILED_ATTEMPTS_MIN <= draft.max_failed_attempts <= FAILED_ATTEMPTS_MAX
        ):
            issues.append(self._issue(
                "max_failed_attempts",
                "range",
                draft.max_failed_attempts,
                f"Max failed attempts must be between {FAILED_ATTEMPTS_MIN} and {FAILED_ATTEMPTS_MAX}",
            ))

        return issues

    def _check_type(self, draft: RecurringDraft) -> list[ValidationIssue]:
        if draft.recurring_type is None:
            return []
        if draft.recurring_type not in {t.value for t in RecurringType}:
            return [self._issue(
                "recurring_type",
                "enum",
                draft.recurring_type,
                "Invalid recurring transaction type",
            )]
        return []

    def _check_accounts(self, draft: RecurringDraft) -> list[ValidationIssue]:
        issues = []
        recurring_type = draft.recurring_type

        if not draft.source_account_id:
            message = (
                "Source account is required for credit card payments"
                if recurring_type == RecurringType.CREDIT_CARD_PAYMENT.value
                else "Source account is required"
            )
            issues.append(self._issue("source_account_id", "required", draft.source_account_id, message))

        if recurring_type == RecurringType.TRANSFER.value:
            if not draft.transfer_account_id:
                issues.append(self._issue(
                    "transfer_account_id",
                    "required",
                    draft.transfer_account_id,
                    "Transfer account is required for transfer transactions",
                ))
            elif draft.transfer_account_id == draft.source_account_id:
                issues.append(self._issue(
                    "transfer_account_id",
                    "different",
                    draft.transfer_account_id,
                    "Transfer account must be different from source account",
                ))

        elif recurring_type == RecurringType.CREDIT_CARD_PAYMENT.value:
            if not draft.category_id:
                issues.append(self._issue(
                    "category_id",
                    "required",
                    draft.category_id,
                    "Category is required for credit card payments",
                ))
            if not draft.transfer_account_id:
                issues.append(self._issue(
                    "transfer_account_id",
                    "required",
                    draft.transfer_account_id,
                    "Credit card account is required for credit card payments",
                ))
            elif draft.transfer_account_id == draft.source_account_id:
                issues.append(self._issue(
                    "transfer_account_id",
                    "different",
                    draft.transfer_account_id,
                    "Source account and credit card account must be different",
                ))

        return issues

    def _check_amount(self, draft: RecurringDraft) -> list[ValidationIssue]:
        issues = []
        # Card payments are always amount-flexible
        exempt = (
            draft.is_amount_flexible
            or draft.recurring_type == RecurringType.CREDIT_CARD_PAYMENT.value
        )

        if draft.amount is None:
            if not exempt:
                issues.append(self._issue(
                    "amount",
                    "required",
                    None,
                    "Amount is required when amount is not flexible",
                ))
        elif draft.amount < self._min_amount:
            issues.append(self._issue(
                "amount",
                "min",
                draft.amount,
                f"Amount must be at least {self._min_amount}",
            ))

        return issues

    def _check_date(self, draft: RecurringDraft) -> list[ValidationIssue]:
        if draft.next_occurrence_date is None and not draft.is_date_flexible:
            return [self._issue(
                "next_occurrence_date",
                "required",
                None,
                "Next occurrence date is required when date is not flexible",
            )]
        return []

    def _check_name(self, draft: RecurringDraft) -> list[ValidationIssue]:
        if not draft.name:
            return [self._issue("name", "required", draft.name, "Name is required")]
        return []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def validate(self, candidate: Candidate) -> ValidationResult:
        """
        Run every rule against a candidate.

        Args:
            candidate: A draft, a typed record or a plain mapping

        Returns:
            ValidationResult with all violations found
        """
        draft = self._as_draft(candidate)

        errors = []
        errors.extend(self._check_name(draft))
        errors.extend(self._check_ranges(draft))
        errors.extend(self._check_type(draft))
        errors.extend(self._check_accounts(draft))
        errors.extend(self._check_amount(draft))
        errors.extend(self._check_date(draft))

        return ValidationResult(is_valid=not errors, errors=errors)

    def _validate_as(self, candidate: Candidate, recurring_type: RecurringType) -> ValidationResult:
        draft = self._as_draft(candidate)
        errors = []

        if draft.recurring_type not in (None, recurring_type.value):
            errors.append(self._issue(
                "recurring_type",
                "enum",
                draft.recurring_type,
                f"Expected a {recurring_type.value} recurring transaction",
            ))

        forced = draft.model_copy(update={"recurring_type": recurring_type.value})
        seen = {(e.field, e.rule) for e in errors}
        for issue in self.validate(forced).errors:
            if (issue.field, issue.rule) not in seen:
                seen.add((issue.field, issue.rule))
                errors.append(issue)

        return ValidationResult(is_valid=not errors, errors=errors)

    def validate_transfer(self, candidate: Candidate) -> ValidationResult:
        """Validate a candidate that is created as a Transfer."""
        return self._validate_as(candidate, RecurringType.TRANSFER)

    def validate_credit_card_payment(self, candidate: Candidate) -> ValidationResult:
        """Validate a candidate that is created as a CreditCardPayment."""
        return self._validate_as(candidate, RecurringType.CREDIT_CARD_PAYMENT)


def validate_execution_context(
    record: RecurringBase,
    override_amount: Optional[Decimal] = None,
    as_of: Optional[date] = None,
    acknowledge_failures: bool = False,
) -> list[str]:
    """
    Runtime preconditions for executing a record.

    Returns the list of reasons execution must be refused (empty if none).
    `acknowledge_failures` is the human override for an exhausted record.
    """
    today = as_of or date.today()
    reasons = []

    if not record.is_active:
        reasons.append("Recurring transaction is not active")

    if record.is_deleted:
        reasons.append("Recurring transaction has been deleted")

    if record.is_exhausted and not acknowledge_failures:
        reasons.append(
            "Recurring transaction has exceeded maximum failed attempts "
            f"({record.failed_attempts}/{record.max_failed_attempts})"
        )

    if record.end_date is not None and record.end_date < today:
        reasons.append("Recurring transaction end date has passed")

    if (
        record.recurring_type != RecurringType.CREDIT_CARD_PAYMENT
        and record.amount is None
        and override_amount is None
    ):
        reasons.append("Amount is required for execution")

    return reasons


def validate_account_balance(
    balance: Decimal,
    amount: Decimal,
    account_type: AccountType,
    allow_overdraft: bool = False,
) -> tuple[bool, Optional[str]]:
    """
    Can an account cover `amount`?

    Liability accounts (and explicit overdraft permission) always can.
    """
    if account_type == AccountType.LIABILITY or allow_overdraft:
        return True, None
    if balance < amount:
        return False, f"Insufficient funds: {balance} < {amount}"
    return True, None


def validate_recurring(candidate: Candidate) -> ValidationResult:
    """Module-level shortcut using default settings."""
    return RecurringValidator().validate(candidate)
