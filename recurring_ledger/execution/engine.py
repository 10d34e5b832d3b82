"""
Execution Engine

Runs ONE occurrence of a recurring obligation:

    Validated -> AmountResolved -> FundsChecked -> Posted -> Rescheduled

with Rejected and Skipped as the early exits.

DESIGN DECISIONS:
1. execute() never raises for domain failures. Every path returns an
   ExecutionResult the caller can branch on, so a batch runner can process
   many records without exception-based control flow. Callers that prefer
   exceptions use result.raise_for_failure().
2. The engine does not persist the recurring record. The updated record is
   returned in result.recurring and the caller saves it (with the version
   it read, for optimistic concurrency).
3. Posting is all-or-nothing from the caller's view. Entries go in first,
   then one balance delta per account. If anything fails, every applied
   delta is reversed and the entries are removed before the failure is
   returned. The schedule is left untouched so the occurrence is retried.
4. The engine holds no locks. Callers serialize per record id (see
   RecordLockRegistry in services.locks).
"""

import asyncio
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

import structlog

from recurring_ledger.config import EngineSettings, get_settings
from recurring_ledger.execution.failure import FailureHandler
from recurring_ledger.execution.statement import StatementBalanceResolver
from recurring_ledger.models.recurring import (
    DEBIT_KINDS,
    Account,
    AccountType,
    CreditCardPaymentRecurring,
    ExecutionOptions,
    ExecutionOutcome,
    ExecutionPreview,
    ExecutionResult,
    ExecutionState,
    FailureKind,
    LedgerEntry,
    Recurring,
    RecurringType,
    StandardRecurring,
    utcnow,
)
from recurring_ledger.scheduling.interval import future_occurrences, next_occurrence
from recurring_ledger.services.storage.interface import (
    LedgerStoreInterface,
    StorageError,
)
from recurring_ledger.validation.validator import (
    RecurringValidator,
    validate_account_balance,
    validate_execution_context,
)


logger = structlog.get_logger(__name__)


class ExecutionEngine:
    """
    Executes due recurring obligations against a ledger store.

    All collaborators are injected; nothing here is global.
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        validator: Optional[RecurringValidator] = None,
        resolver: Optional[StatementBalanceResolver] = None,
        failure_handler: Optional[FailureHandler] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self._store = store
        self._settings = settings or get_settings().engine
        self._validator = validator or RecurringValidator(self._settings.min_amount)
        self._resolver = resolver or StatementBalanceResolver(store)
        self._failures = failure_handler or FailureHandler()

    # ------------------------------------------------------------------
    # Result helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _rejected(
        record: Recurring,
        kind: FailureKind,
        reasons: list[str],
        **extra,
    ) -> ExecutionResult:
        logger.info(
            "execution_rejected",
            recurring_id=record.id,
            failure_kind=kind.value,
            reasons=reasons,
        )
        return ExecutionResult(
            recurring_id=record.id,
            outcome=ExecutionOutcome.REJECTED,
            state=ExecutionState.REJECTED,
            recurring=record,
            failure_kind=kind,
            reasons=reasons,
            **extra,
        )

    @staticmethod
    def _occurrence_date(record: Recurring, options: ExecutionOptions, as_of: date) -> date:
        if record.is_date_flexible or record.next_occurrence_date is None:
            return options.occurrence_date or as_of
        return record.next_occurrence_date

    async def _find_counterparty(self, record: Recurring) -> Optional[Account]:
        """
        Destination account of a transfer, or the card being paid.

        A card payment names its card by transfer_account_id. When that
        account is missing, the ledger store keys card-payment categories by
        the id of the card account they settle, so category_id is looked up
        as an account id and accepted only if it is a liability.
        """
        if isinstance(record, StandardRecurring):
            return None
        account = await self._store.find_account(record.tenant_id, record.transfer_account_id)
        if account is None and isinstance(record, CreditCardPaymentRecurring):
            card = await self._store.find_account(record.tenant_id, record.category_id)
            if card is not None and card.is_liability:
                account = card
        return account

    # ------------------------------------------------------------------
    # Entry building
    # ------------------------------------------------------------------

    def _build_entries(
        self,
        record: Recurring,
        amount: Decimal,
        occurrence_date: date,
        options: ExecutionOptions,
        source: Account,
        counterparty: Optional[Account],
    ) -> list[LedgerEntry]:
        """One entry for Standard, a linked zero-sum pair otherwise."""
        common = {
            "tenant_id": record.tenant_id,
            "transaction_kind": record.transaction_kind,
            "date": occurrence_date,
            "category_id": record.category_id,
            "name": record.name,
            "description": options.description or record.description,
            "payee": record.payee_name,
            "notes": options.notes or record.notes,
            "recurring_id": record.id,
            "created_by": options.executed_by,
        }
        created_at = utcnow()

        if counterparty is None:
            signed = -amount if record.transaction_kind in DEBIT_KINDS else amount
            return [LedgerEntry(account_id=source.id, amount=signed, created_at=created_at, **common)]

        debit = LedgerEntry(
            account_id=source.id,
            amount=-abs(amount),
            transfer_account_id=counterparty.id,
            created_at=created_at,
            **common,
        )
        credit = LedgerEntry(
            account_id=counterparty.id,
            amount=abs(amount),
            transfer_account_id=source.id,
            created_at=created_at + timedelta(seconds=self._settings.transfer_entry_offset_seconds),
            **common,
        )
        debit.transfer_id = credit.id
        credit.transfer_id = debit.id
        return [debit, credit]

    # ------------------------------------------------------------------
    # Posting with compensation
    # ------------------------------------------------------------------

    async def _compensate(
        self,
        record: Recurring,
        posted_entries: list[LedgerEntry],
        applied: list[tuple[str, Decimal]],
    ) -> list[str]:
        """Undo whatever part of a posting got applied. Returns what could not be undone."""
        problems = []

        for account_id, delta in reversed(applied):
            try:
                await self._store.adjust_balance(record.tenant_id, account_id, -delta)
            except StorageError as e:
                problems.append(f"Could not reverse balance change on {account_id}: {e}")

        if posted_entries:
            try:
                await self._store.remove_entries(
                    record.tenant_id, [entry.id for entry in posted_entries]
                )
            except StorageError as e:
                problems.append(f"Could not remove posted entries: {e}")

        if problems:
            logger.critical(
                "compensation_failed",
                recurring_id=record.id,
                problems=problems,
            )
        return problems

    async def _post(
        self,
        record: Recurring,
        entries: list[LedgerEntry],
    ) -> tuple[Optional[StorageError], list[str]]:
        """
        Post entries and balances as one unit.

        Returns (error, compensation_problems); error is None on success.
        """
        posted: list[LedgerEntry] = []
        applied: list[tuple[str, Decimal]] = []
        try:
            await self._store.post_entries(entries)
            posted = entries
            for entry in entries:
                await self._store.adjust_balance(record.tenant_id, entry.account_id, entry.amount)
                applied.append((entry.account_id, entry.amount))
        except StorageError as e:
            return e, await self._compensate(record, posted, applied)
        return None, []

    # ------------------------------------------------------------------
    # Rescheduling
    # ------------------------------------------------------------------

    @staticmethod
    def _reschedule(
        record: Recurring,
        occurrence_date: date,
        unattended: bool,
        executed_by: Optional[str],
    ) -> Recurring:
        """Advance the schedule after a successful (or skipped) occurrence."""
        update = {
            "last_executed_at": occurrence_date,
            "failed_attempts": 0,
            "updated_at": utcnow(),
            "updated_by": executed_by,
        }
        if not record.is_date_flexible and record.next_occurrence_date is not None:
            following = next_occurrence(
                record.next_occurrence_date,
                record.interval_months,
                record.anchor_day,
            )
            update["next_occurrence_date"] = following
            if record.end_date is not None and following > record.end_date:
                update["is_active"] = False
        if unattended:
            update["last_auto_applied_at"] = utcnow()
        return record.model_copy(update=update)

    def _skip_card_payment(
        self,
        record: Recurring,
        occurrence_date: date,
        unattended: bool,
        options: ExecutionOptions,
        reason: str,
    ) -> ExecutionResult:
        updated = self._reschedule(record, occurrence_date, unattended, options.executed_by)
        logger.info("credit_card_payment_skipped", recurring_id=record.id, reason=reason)
        return ExecutionResult(
            recurring_id=record.id,
            outcome=ExecutionOutcome.SKIPPED,
            state=ExecutionState.SKIPPED,
            recurring=updated,
            requires_save=True,
            occurrence_date=occurrence_date,
            reasons=[reason],
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(
        self,
        record: Recurring,
        options: Optional[ExecutionOptions] = None,
    ) -> ExecutionResult:
        """
        Execute one occurrence of `record`.

        Args:
            record: The recurring record, as read from the store
            options: Override amount, occurrence date, as-of date etc.

        Returns:
            ExecutionResult; result.recurring is the record to persist
            when result.requires_save is True
        """
        options = options or ExecutionOptions()
        as_of = options.as_of or date.today()
        unattended = (
            options.unattended if options.unattended is not None else record.auto_apply_enabled
        )

        # Validated
        validation = self._validator.validate(record)
        if not validation.is_valid:
            return self._rejected(
                record,
                FailureKind.VALIDATION,
                validation.messages(),
                issues=validation.errors,
            )

        reasons = validate_execution_context(
            record,
            override_amount=options.override_amount,
            as_of=as_of,
            acknowledge_failures=options.acknowledge_failures and not unattended,
        )
        if reasons:
            return self._rejected(record, FailureKind.PRECONDITION, reasons)

        occurrence_date = self._occurrence_date(record, options, as_of)

        try:
            source = await self._store.find_account(record.tenant_id, record.source_account_id)
            counterparty = await self._find_counterparty(record)
        except StorageError as e:
            return self._failures.handle_posting_error(record, e, unattended, occurrence_date)

        if source is None:
            return self._rejected(record, FailureKind.PRECONDITION, ["Source account not found"])
        if counterparty is None and not isinstance(record, StandardRecurring):
            message = (
                "Credit card account not found"
                if isinstance(record, CreditCardPaymentRecurring)
                else "Transfer account not found"
            )
            return self._rejected(record, FailureKind.PRECONDITION, [message])

        # A card at zero or in credit owes nothing, whatever amount was asked for
        if isinstance(record, CreditCardPaymentRecurring) and counterparty.balance >= 0:
            return self._skip_card_payment(
                record, occurrence_date, unattended, options, "Credit card has no balance owed"
            )

        # AmountResolved
        if options.override_amount is not None:
            amount = options.override_amount
        elif isinstance(record, CreditCardPaymentRecurring):
            try:
                amount = await self._resolver.resolve(counterparty, as_of)
            except StorageError as e:
                return self._failures.handle_posting_error(record, e, unattended, occurrence_date)
        else:
            amount = record.amount

        if isinstance(record, CreditCardPaymentRecurring) and amount <= 0:
            return self._skip_card_payment(
                record, occurrence_date, unattended, options, "No statement balance due"
            )

        # FundsChecked
        if not isinstance(record, StandardRecurring) and source.account_type == AccountType.ASSET:
            has_funds, _ = validate_account_balance(
                source.balance,
                amount,
                source.account_type,
                allow_overdraft=options.allow_overdraft,
            )
            if not has_funds:
                return self._failures.handle_insufficient_funds(
                    record,
                    required=amount,
                    available=source.balance,
                    unattended=unattended,
                    occurrence_date=occurrence_date,
                )

        # Posted
        entries = self._build_entries(record, amount, occurrence_date, options, source, counterparty)
        # Cancellation past this point must not interrupt a half-applied posting
        error, problems = await asyncio.shield(self._post(record, entries))
        if error is not None:
            return self._failures.handle_posting_error(
                record,
                error,
                unattended,
                occurrence_date,
                amount=amount,
                compensation_errors=problems,
            )

        # Rescheduled
        updated = self._reschedule(record, occurrence_date, unattended, options.executed_by)
        logger.info(
            "recurring_executed",
            recurring_id=record.id,
            recurring_type=record.recurring_type.value,
            amount=str(amount),
            occurrence_date=occurrence_date.isoformat(),
            next_occurrence_date=(
                updated.next_occurrence_date.isoformat() if updated.next_occurrence_date else None
            ),
            unattended=unattended,
        )
        return ExecutionResult(
            recurring_id=record.id,
            outcome=ExecutionOutcome.POSTED,
            state=ExecutionState.RESCHEDULED,
            recurring=updated,
            requires_save=True,
            occurrence_date=occurrence_date,
            entries=entries,
            amount_applied=amount,
        )

    async def preview(
        self,
        record: Recurring,
        as_of: Optional[date] = None,
    ) -> ExecutionPreview:
        """
        What execute() would do right now, without doing it.

        Problems show up as warnings rather than failures.
        """
        as_of = as_of or date.today()
        warnings = validate_execution_context(record, as_of=as_of)
        if 0 < record.failed_attempts < record.max_failed_attempts:
            warnings.append(f"{record.failed_attempts} previous failed attempt(s)")

        source = await self._store.find_account(record.tenant_id, record.source_account_id)
        counterparty = await self._find_counterparty(record)
        if source is None:
            warnings.append("Source account not found")
        if counterparty is None and not isinstance(record, StandardRecurring):
            warnings.append("Destination account not found")

        amount = record.amount or Decimal("0")
        if isinstance(record, CreditCardPaymentRecurring):
            amount = Decimal("0")
            if counterparty is not None:
                amount = await self._resolver.resolve(counterparty, as_of)
            if amount <= 0:
                warnings.append("No statement balance due")
        elif record.is_amount_flexible and record.amount is None:
            warnings.append("Amount will be entered at execution time")

        if (
            source is not None
            and not isinstance(record, StandardRecurring)
            and amount > 0
        ):
            has_funds, message = validate_account_balance(source.balance, amount, source.account_type)
            if not has_funds:
                warnings.append(message)

        upcoming = []
        if record.next_occurrence_date is not None:
            upcoming = future_occurrences(
                record.next_occurrence_date,
                record.interval_months,
                self._settings.preview_occurrence_count,
                record.anchor_day,
            )

        return ExecutionPreview(
            recurring_id=record.id,
            recurring_type=record.recurring_type,
            estimated_amount=amount,
            estimated_date=record.next_occurrence_date,
            source_account=source,
            destination_account=counterparty,
            upcoming_dates=upcoming,
            warnings=warnings,
        )

    async def preview_statement_payment(
        self,
        record: Recurring,
        as_of: Optional[date] = None,
    ) -> ExecutionPreview:
        """Preview of a credit card payment: estimated amount, date and warnings."""
        if record.recurring_type != RecurringType.CREDIT_CARD_PAYMENT:
            raise ValueError("Recurring transaction is not a credit card payment")
        return await self.preview(record, as_of)
