"""
Tests for the execution engine

Covers every outcome of execute(): posting for each type, skips,
rejections, insufficient funds in both modes and compensating rollback.
"""

import asyncio
import pytest
from datetime import date, timedelta
from decimal import Decimal

from recurring_ledger.execution.errors import PostingError, PreconditionError
from recurring_ledger.models.recurring import (
    Account,
    AccountType,
    ExecutionOptions,
    ExecutionOutcome,
    ExecutionState,
    FailureKind,
    StandardRecurring,
    TransactionKind,
)


TENANT = "tenant-1"
AS_OF = date(2024, 3, 15)


def _options(**overrides):
    data = {"as_of": AS_OF, "unattended": False}
    data.update(overrides)
    return ExecutionOptions(**data)


class TestStandardExecution:

    @pytest.mark.asyncio
    async def test_posts_expense(self, engine, store, standard_record):
        result = await engine.execute(standard_record, _options())

        assert result.outcome == ExecutionOutcome.POSTED
        assert result.state == ExecutionState.RESCHEDULED
        assert result.requires_save
        assert result.amount_applied == Decimal("100.00")
        assert len(result.entries) == 1

        entry = result.entries[0]
        assert entry.amount == Decimal("-100.00")
        assert entry.account_id == "checking"
        assert entry.date == date(2024, 3, 1)
        assert entry.recurring_id == standard_record.id
        assert store.get_account(TENANT, "checking").balance == Decimal("900.00")

    @pytest.mark.asyncio
    async def test_posts_income_positive(self, engine, store, standard_record):
        record = standard_record.model_copy(update={"transaction_kind": TransactionKind.INCOME})
        result = await engine.execute(record, _options())
        assert result.entries[0].amount == Decimal("100.00")
        assert store.get_account(TENANT, "checking").balance == Decimal("1100.00")

    @pytest.mark.asyncio
    async def test_reschedules(self, engine, standard_record):
        result = await engine.execute(standard_record, _options())
        updated = result.recurring
        assert updated.next_occurrence_date == date(2024, 4, 1)
        assert updated.last_executed_at == date(2024, 3, 1)
        assert updated.failed_attempts == 0
        assert updated.last_auto_applied_at is None

    @pytest.mark.asyncio
    async def test_month_end_chain(self, engine):
        """Jan 31 -> Feb 29 -> Mar 31 across two executions."""
        record = StandardRecurring(
            tenant_id=TENANT,
            name="Rent",
            source_account_id="checking",
            amount=Decimal("10"),
            next_occurrence_date=date(2024, 1, 31),
        )
        first = await engine.execute(record, _options())
        assert first.recurring.next_occurrence_date == date(2024, 2, 29)
        second = await engine.execute(first.recurring, _options())
        assert second.recurring.next_occurrence_date == date(2024, 3, 31)

    @pytest.mark.asyncio
    async def test_standard_skips_funds_check(self, engine, store, standard_record):
        record = standard_record.model_copy(update={"amount": Decimal("5000.00")})
        result = await engine.execute(record, _options())
        assert result.outcome == ExecutionOutcome.POSTED
        assert store.get_account(TENANT, "checking").balance == Decimal("-4000.00")

    @pytest.mark.asyncio
    async def test_override_amount(self, engine, standard_record):
        result = await engine.execute(standard_record, _options(override_amount=Decimal("42.50")))
        assert result.amount_applied == Decimal("42.50")
        assert result.entries[0].amount == Decimal("-42.50")

    @pytest.mark.asyncio
    async def test_flexible_date_uses_given_date(self, engine, standard_record):
        record = standard_record.model_copy(update={"is_date_flexible": True})
        result = await engine.execute(record, _options(occurrence_date=date(2024, 3, 12)))
        assert result.entries[0].date == date(2024, 3, 12)
        # Date-flexible records are not advanced
        assert result.recurring.next_occurrence_date == date(2024, 3, 1)

    @pytest.mark.asyncio
    async def test_deactivates_after_end_date(self, engine, standard_record):
        record = standard_record.model_copy(update={"end_date": date(2024, 3, 20)})
        result = await engine.execute(record, _options())
        assert result.outcome == ExecutionOutcome.POSTED
        assert result.recurring.next_occurrence_date == date(2024, 4, 1)
        assert result.recurring.is_active is False

    @pytest.mark.asyncio
    async def test_unattended_sets_auto_applied(self, engine, standard_record):
        result = await engine.execute(standard_record, _options(unattended=True))
        assert result.recurring.last_auto_applied_at is not None

    @pytest.mark.asyncio
    async def test_unattended_defaults_to_auto_apply_flag(self, engine, standard_record):
        record = standard_record.model_copy(update={"auto_apply_enabled": True})
        result = await engine.execute(record, ExecutionOptions(as_of=AS_OF))
        assert result.recurring.last_auto_applied_at is not None

    @pytest.mark.asyncio
    async def test_does_not_persist_record(self, engine, store, standard_record):
        await engine.execute(standard_record, _options())
        assert await store.find_recurring(TENANT, standard_record.id) is None


class TestTransferExecution:

    @pytest.mark.asyncio
    async def test_zero_sum_pair(self, engine, store, transfer_record):
        result = await engine.execute(transfer_record, _options())

        assert result.outcome == ExecutionOutcome.POSTED
        debit, credit = result.entries
        assert debit.account_id == "checking"
        assert debit.amount == Decimal("-100.00")
        assert credit.account_id == "savings"
        assert credit.amount == Decimal("100.00")
        assert debit.amount + credit.amount == 0
        assert debit.transfer_id == credit.id
        assert credit.transfer_id == debit.id
        assert debit.transfer_account_id == "savings"
        assert credit.transfer_account_id == "checking"
        assert credit.created_at - debit.created_at == timedelta(seconds=1)

        assert store.get_account(TENANT, "checking").balance == Decimal("900.00")
        assert store.get_account(TENANT, "savings").balance == Decimal("300.00")
        assert len(store.entries(TENANT, transfer_record.id)) == 2

    @pytest.mark.asyncio
    async def test_missing_destination(self, engine, transfer_record):
        record = transfer_record.model_copy(update={"transfer_account_id": "gone"})
        result = await engine.execute(record, _options())
        assert result.outcome == ExecutionOutcome.REJECTED
        assert result.reasons == ["Transfer account not found"]

    @pytest.mark.asyncio
    async def test_liability_source_skips_funds_check(self, engine, store, transfer_record):
        record = transfer_record.model_copy(update={
            "source_account_id": "card",
            "amount": Decimal("5000.00"),
        })
        result = await engine.execute(record, _options())
        assert result.outcome == ExecutionOutcome.POSTED


class TestCreditCardPaymentExecution:

    @pytest.mark.asyncio
    async def test_pays_statement_balance(self, engine, store, card_record):
        result = await engine.execute(card_record, _options())

        assert result.outcome == ExecutionOutcome.POSTED
        assert result.amount_applied == Decimal("500.00")
        assert store.get_account(TENANT, "checking").balance == Decimal("500.00")
        assert store.get_account(TENANT, "card").balance == Decimal("0.00")
        assert result.recurring.next_occurrence_date == date(2024, 4, 10)

    @pytest.mark.asyncio
    async def test_skips_when_nothing_owed(self, engine, store, card_record):
        store.add_account(Account(
            id="card",
            tenant_id=TENANT,
            name="Visa",
            balance=Decimal("0"),
            account_type=AccountType.LIABILITY,
        ))
        record = card_record.model_copy(update={"failed_attempts": 2})

        result = await engine.execute(record, _options())

        assert result.outcome == ExecutionOutcome.SKIPPED
        assert result.state == ExecutionState.SKIPPED
        assert result.entries == []
        assert store.entries(TENANT) == []
        assert result.recurring.next_occurrence_date == date(2024, 4, 10)
        assert result.recurring.failed_attempts == 0
        assert result.requires_save

    @pytest.mark.asyncio
    async def test_skips_card_in_credit(self, engine, store, card_record):
        store.add_account(Account(
            id="card",
            tenant_id=TENANT,
            name="Visa",
            balance=Decimal("200.00"),
            account_type=AccountType.LIABILITY,
        ))

        result = await engine.execute(card_record, _options())

        assert result.outcome == ExecutionOutcome.SKIPPED
        assert result.reasons == ["Credit card has no balance owed"]
        assert result.entries == []
        assert store.entries(TENANT) == []
        assert store.get_account(TENANT, "checking").balance == Decimal("1000.00")
        assert store.get_account(TENANT, "card").balance == Decimal("200.00")
        assert result.recurring.next_occurrence_date == date(2024, 4, 10)

    @pytest.mark.asyncio
    async def test_card_in_credit_ignores_override(self, engine, store, card_record):
        store.add_account(Account(
            id="card",
            tenant_id=TENANT,
            balance=Decimal("200.00"),
            account_type=AccountType.LIABILITY,
        ))
        result = await engine.execute(card_record, _options(override_amount=Decimal("50.00")))
        assert result.outcome == ExecutionOutcome.SKIPPED
        assert store.get_account(TENANT, "checking").balance == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_card_found_by_category(self, engine, card_record):
        record = card_record.model_copy(update={"transfer_account_id": "missing"})
        result = await engine.execute(record, _options())
        assert result.outcome == ExecutionOutcome.POSTED
        assert result.entries[1].account_id == "card"

    @pytest.mark.asyncio
    async def test_category_must_name_a_liability(self, engine, card_record):
        record = card_record.model_copy(update={
            "transfer_account_id": "missing",
            "category_id": "savings",
        })
        result = await engine.execute(record, _options())
        assert result.outcome == ExecutionOutcome.REJECTED
        assert result.reasons == ["Credit card account not found"]

    @pytest.mark.asyncio
    async def test_missing_card(self, engine, card_record):
        record = card_record.model_copy(update={
            "transfer_account_id": "missing",
            "category_id": "other",
        })
        result = await engine.execute(record, _options())
        assert result.reasons == ["Credit card account not found"]


class TestInsufficientFunds:
    """Funds 50 against 500 owed on the card."""

    @pytest.fixture
    def poor_store(self, store):
        store.add_account(Account(
            id="checking",
            tenant_id=TENANT,
            name="Checking",
            balance=Decimal("50.00"),
        ))
        return store

    @pytest.mark.asyncio
    async def test_unattended_skip_and_reschedule(self, engine, poor_store, card_record):
        result = await engine.execute(card_record, _options(unattended=True))

        assert result.outcome == ExecutionOutcome.SKIP_AND_RESCHEDULE
        assert result.state == ExecutionState.AMOUNT_RESOLVED
        assert result.failure_kind == FailureKind.INSUFFICIENT_FUNDS
        assert result.recurring.failed_attempts == 1
        assert result.recurring.next_occurrence_date == card_record.next_occurrence_date
        assert result.requires_save
        assert poor_store.entries(TENANT) == []
        assert poor_store.get_account(TENANT, "checking").balance == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_manual_partial_payment(self, engine, poor_store, card_record):
        result = await engine.execute(card_record, _options())

        assert result.outcome == ExecutionOutcome.PARTIAL_PAYMENT_AVAILABLE
        assert result.available_amount == Decimal("50.00")
        assert result.required_amount == Decimal("500.00")
        assert result.recurring.failed_attempts == 0
        assert not result.requires_save
        assert poor_store.entries(TENANT) == []

    @pytest.mark.asyncio
    async def test_manual_no_funds(self, engine, store, card_record):
        store.add_account(Account(id="checking", tenant_id=TENANT, balance=Decimal("0")))
        result = await engine.execute(card_record, _options())
        assert result.outcome == ExecutionOutcome.NO_FUNDS_AVAILABLE

    @pytest.mark.asyncio
    async def test_overdraft_allowed(self, engine, poor_store, card_record):
        result = await engine.execute(card_record, _options(allow_overdraft=True))
        assert result.outcome == ExecutionOutcome.POSTED
        assert poor_store.get_account(TENANT, "checking").balance == Decimal("-450.00")

    @pytest.mark.asyncio
    async def test_partial_payment_via_override(self, engine, poor_store, card_record):
        result = await engine.execute(card_record, _options(override_amount=Decimal("50.00")))
        assert result.outcome == ExecutionOutcome.POSTED
        assert poor_store.get_account(TENANT, "card").balance == Decimal("-450.00")

    @pytest.mark.asyncio
    async def test_exhaustion_after_repeated_failures(self, engine, poor_store, card_record):
        record = card_record
        for _ in range(record.max_failed_attempts):
            record = (await engine.execute(record, _options(unattended=True))).recurring
        assert record.failed_attempts == 3

        result = await engine.execute(record, _options(unattended=True))
        assert result.outcome == ExecutionOutcome.REJECTED
        assert result.failure_kind == FailureKind.PRECONDITION


class TestRejections:

    @pytest.mark.asyncio
    async def test_exhausted_record_rejected(self, engine, store, standard_record):
        record = standard_record.model_copy(update={"failed_attempts": 3})
        result = await engine.execute(record, _options())

        assert result.outcome == ExecutionOutcome.REJECTED
        assert result.state == ExecutionState.REJECTED
        assert result.failure_kind == FailureKind.PRECONDITION
        assert not result.requires_save
        assert store.entries(TENANT) == []
        with pytest.raises(PreconditionError):
            result.raise_for_failure()

    @pytest.mark.asyncio
    async def test_exhausted_acknowledged_interactively(self, engine, standard_record):
        record = standard_record.model_copy(update={"failed_attempts": 3})
        result = await engine.execute(record, _options(acknowledge_failures=True))
        assert result.outcome == ExecutionOutcome.POSTED
        assert result.recurring.failed_attempts == 0

    @pytest.mark.asyncio
    async def test_acknowledgement_ignored_unattended(self, engine, standard_record):
        record = standard_record.model_copy(update={"failed_attempts": 3})
        result = await engine.execute(
            record, _options(unattended=True, acknowledge_failures=True)
        )
        assert result.outcome == ExecutionOutcome.REJECTED

    @pytest.mark.asyncio
    async def test_inactive_rejected(self, engine, standard_record):
        record = standard_record.model_copy(update={"is_active": False})
        result = await engine.execute(record, _options())
        assert result.reasons == ["Recurring transaction is not active"]

    @pytest.mark.asyncio
    async def test_invalid_record_rejected(self, engine, standard_record):
        record = standard_record.model_copy(update={"interval_months": 30})
        result = await engine.execute(record, _options())
        assert result.failure_kind == FailureKind.VALIDATION
        assert result.issues[0].field == "interval_months"

    @pytest.mark.asyncio
    async def test_missing_source(self, engine, standard_record):
        record = standard_record.model_copy(update={"source_account_id": "gone"})
        result = await engine.execute(record, _options())
        assert result.reasons == ["Source account not found"]


class TestCompensation:
    """Posting failures leave the ledger as it was."""

    @pytest.mark.asyncio
    async def test_rollback_on_destination_failure(self, engine, store, transfer_record):
        store.fail_adjust_for_accounts = {"savings"}

        result = await engine.execute(transfer_record, _options())

        assert result.outcome == ExecutionOutcome.FAILED
        assert result.failure_kind == FailureKind.POSTING
        assert not result.compensation_failed
        assert store.entries(TENANT) == []
        assert store.get_account(TENANT, "checking").balance == Decimal("1000.00")
        assert store.get_account(TENANT, "savings").balance == Decimal("200.00")
        assert result.recurring.next_occurrence_date == transfer_record.next_occurrence_date

    @pytest.mark.asyncio
    async def test_post_entries_failure(self, engine, store, standard_record):
        store.fail_post_entries = True
        result = await engine.execute(standard_record, _options(unattended=True))
        assert result.outcome == ExecutionOutcome.FAILED
        assert result.recurring.failed_attempts == 1
        assert store.get_account(TENANT, "checking").balance == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_compensation_failure_reported(self, engine, store, transfer_record):
        store.fail_adjust_for_accounts = {"savings"}
        store.fail_remove_entries = True

        result = await engine.execute(transfer_record, _options())

        assert result.compensation_failed
        assert any("Could not remove posted entries" in r for r in result.reasons)
        with pytest.raises(PostingError) as exc:
            result.raise_for_failure()
        assert exc.value.compensated is False

    @pytest.mark.asyncio
    async def test_cancellation_does_not_interrupt_posting(self, engine, store, transfer_record):
        task = asyncio.ensure_future(engine.execute(transfer_record, _options()))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        # Let the shielded posting finish
        for _ in range(10):
            await asyncio.sleep(0)
        balances = (
            store.get_account(TENANT, "checking").balance,
            store.get_account(TENANT, "savings").balance,
        )
        assert balances in (
            (Decimal("1000.00"), Decimal("200.00")),
            (Decimal("900.00"), Decimal("300.00")),
        )


class TestPreview:

    @pytest.mark.asyncio
    async def test_standard_preview(self, engine, standard_record):
        preview = await engine.preview(standard_record, AS_OF)
        assert preview.estimated_amount == Decimal("100.00")
        assert preview.estimated_date == date(2024, 3, 1)
        assert preview.upcoming_dates[0] == date(2024, 4, 1)
        assert len(preview.upcoming_dates) == 5
        assert preview.warnings == []

    @pytest.mark.asyncio
    async def test_card_preview(self, engine, store, card_record):
        preview = await engine.preview_statement_payment(card_record, AS_OF)
        assert preview.estimated_amount == Decimal("500.00")
        assert preview.destination_account.id == "card"
        assert store.entries(TENANT) == []

    @pytest.mark.asyncio
    async def test_preview_warnings(self, engine, store, card_record):
        store.add_account(Account(id="checking", tenant_id=TENANT, balance=Decimal("50.00")))
        record = card_record.model_copy(update={"failed_attempts": 1})
        preview = await engine.preview(record, AS_OF)
        assert "1 previous failed attempt(s)" in preview.warnings
        assert "Insufficient funds: 50.00 < 500.00" in preview.warnings

    @pytest.mark.asyncio
    async def test_card_in_credit_preview(self, engine, store, card_record):
        store.add_account(Account(
            id="card",
            tenant_id=TENANT,
            balance=Decimal("75.00"),
            account_type=AccountType.LIABILITY,
        ))
        preview = await engine.preview_statement_payment(card_record, AS_OF)
        assert preview.estimated_amount == Decimal("0")
        assert "No statement balance due" in preview.warnings

    @pytest.mark.asyncio
    async def test_statement_preview_rejects_other_types(self, engine, standard_record):
        with pytest.raises(ValueError):
            await engine.preview_statement_payment(standard_record, AS_OF)
