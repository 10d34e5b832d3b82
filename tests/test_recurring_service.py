"""
Tests for the lifecycle service

Integration tests against the in-memory store and audit storage.
"""

import asyncio
import pytest
from datetime import date
from decimal import Decimal

from tenacity import wait_none

from recurring_ledger.audit import AuditLogger
from recurring_ledger.execution import ExecutionEngine, StatementBalanceResolver
from recurring_ledger.execution.errors import RecurringValidationError
from recurring_ledger.models.audit import AuditEventType
from recurring_ledger.models.recurring import (
    CreditCardPaymentRecurring,
    ExecutionOptions,
    ExecutionOutcome,
    RecurringDraft,
    RecurringType,
    StandardRecurring,
    TransferRecurring,
)
from recurring_ledger.services.recurring_service import RecurringService
from recurring_ledger.services.storage import ConcurrencyError, NotFoundError


TENANT = "tenant-1"
AS_OF = date(2024, 3, 15)


@pytest.fixture
def service(store, audit_storage, engine_settings):
    engine = ExecutionEngine(
        store,
        resolver=StatementBalanceResolver(store, wait=wait_none()),
        settings=engine_settings,
    )
    return RecurringService(
        store,
        engine=engine,
        audit_logger=AuditLogger(audit_storage),
        settings=engine_settings,
    )


def _event_types(audit_storage):
    return [event.event_type for event in audit_storage.events]


def _rent(**overrides):
    data = {
        "name": "Rent",
        "source_account_id": "checking",
        "amount": Decimal("100.00"),
        "next_occurrence_date": date(2024, 3, 1),
    }
    data.update(overrides)
    return data


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_standard(self, service, store, audit_storage):
        record = await service.create_standard(TENANT, _rent(), created_by="alice")

        assert isinstance(record, StandardRecurring)
        assert record.tenant_id == TENANT
        assert record.version == 1
        assert record.interval_months == 1
        assert record.max_failed_attempts == 3
        assert record.created_by == "alice"
        assert await store.find_recurring(TENANT, record.id) == record
        assert _event_types(audit_storage) == [AuditEventType.RECURRING_CREATED]

    @pytest.mark.asyncio
    async def test_create_from_draft(self, service):
        draft = RecurringDraft(**_rent(interval_months=3))
        record = await service.create_standard(TENANT, draft)
        assert record.interval_months == 3

    @pytest.mark.asyncio
    async def test_create_transfer(self, service):
        record = await service.create_transfer(TENANT, _rent(transfer_account_id="savings"))
        assert isinstance(record, TransferRecurring)
        assert record.recurring_type == RecurringType.TRANSFER

    @pytest.mark.asyncio
    async def test_create_credit_card_payment_drops_amount(self, service):
        record = await service.create_credit_card_payment(
            TENANT,
            _rent(transfer_account_id="card", category_id="card", amount=Decimal("99")),
        )
        assert isinstance(record, CreditCardPaymentRecurring)
        assert record.amount is None
        assert record.is_amount_flexible

    @pytest.mark.asyncio
    async def test_invalid_candidate_reports_all_errors(self, service, store, audit_storage):
        with pytest.raises(RecurringValidationError) as exc:
            await service.create_transfer(TENANT, _rent(interval_months=25))

        fields = {issue.field for issue in exc.value.issues}
        assert {"interval_months", "transfer_account_id"} <= fields
        assert await store.list_recurrings(TENANT) == []
        assert _event_types(audit_storage) == [AuditEventType.VALIDATION_FAILED]

    @pytest.mark.asyncio
    async def test_unknown_account(self, service):
        with pytest.raises(RecurringValidationError) as exc:
            await service.create_transfer(TENANT, _rent(transfer_account_id="nowhere"))
        assert [i.message for i in exc.value.issues] == ["Transfer account not found"]

    @pytest.mark.asyncio
    async def test_accounts_are_tenant_scoped(self, service):
        with pytest.raises(RecurringValidationError):
            await service.create_standard("tenant-2", _rent())

    @pytest.mark.asyncio
    async def test_standard_with_transfer_account_rejected(self, service):
        with pytest.raises(RecurringValidationError) as exc:
            await service.create_standard(TENANT, _rent(transfer_account_id="savings"))
        assert exc.value.issues[0].field == "transfer_account_id"


class TestUpdate:

    @pytest.mark.asyncio
    async def test_update_merges_and_bumps_version(self, service, audit_storage):
        record = await service.create_standard(TENANT, _rent())
        updated = await service.update(TENANT, record.id, {"amount": Decimal("120.00")}, updated_by="bob")

        assert updated.amount == Decimal("120.00")
        assert updated.name == "Rent"
        assert updated.version == 2
        assert updated.updated_by == "bob"
        assert _event_types(audit_storage)[-1] == AuditEventType.RECURRING_UPDATED

    @pytest.mark.asyncio
    async def test_update_revalidates(self, service):
        record = await service.create_standard(TENANT, _rent())
        with pytest.raises(RecurringValidationError):
            await service.update(TENANT, record.id, {"interval_months": 0})

    @pytest.mark.asyncio
    async def test_update_new_date_resets_anchor(self, service):
        record = await service.create_standard(TENANT, _rent())
        updated = await service.update(TENANT, record.id, {"next_occurrence_date": date(2024, 4, 30)})
        assert updated.anchor_day == 30

    @pytest.mark.asyncio
    async def test_manual_edit_resets_failed_attempts(self, service, store):
        record = await service.create_standard(TENANT, _rent())
        await store.save_recurring(
            record.model_copy(update={"failed_attempts": 3}), expected_version=record.version
        )
        updated = await service.update(TENANT, record.id, {"notes": "called the landlord"})
        assert updated.failed_attempts == 0

    @pytest.mark.asyncio
    async def test_type_cannot_change(self, service):
        record = await service.create_standard(TENANT, _rent())
        with pytest.raises(RecurringValidationError) as exc:
            await service.update(TENANT, record.id, {"recurring_type": "Transfer"})
        assert exc.value.issues[0].rule == "immutable"

    @pytest.mark.asyncio
    async def test_update_missing(self, service):
        with pytest.raises(NotFoundError):
            await service.update(TENANT, "nope", {"name": "x"})


class TestFlags:

    @pytest.mark.asyncio
    async def test_soft_delete(self, service, store, audit_storage):
        record = await service.create_standard(TENANT, _rent())
        deleted = await service.soft_delete(TENANT, record.id)

        assert deleted.is_deleted and not deleted.is_active
        assert await store.list_recurrings(TENANT) == []
        assert len(await store.list_recurrings(TENANT, include_deleted=True)) == 1
        with pytest.raises(NotFoundError):
            await service.get(TENANT, record.id)
        assert _event_types(audit_storage)[-1] == AuditEventType.RECURRING_DELETED

    @pytest.mark.asyncio
    async def test_set_auto_apply(self, service):
        record = await service.create_standard(TENANT, _rent())
        updated = await service.set_auto_apply(TENANT, record.id, True)
        assert updated.auto_apply_enabled

    @pytest.mark.asyncio
    async def test_reset_failed_attempts(self, service, store, audit_storage):
        record = await service.create_standard(TENANT, _rent())
        await store.save_recurring(
            record.model_copy(update={"failed_attempts": 3}), expected_version=record.version
        )
        reset = await service.reset_failed_attempts(TENANT, record.id)
        assert reset.failed_attempts == 0
        event = audit_storage.events[-1]
        assert event.event_type == AuditEventType.FAILED_ATTEMPTS_RESET
        assert event.details == {"previous_failed_attempts": 3}


class TestExecute:

    @pytest.mark.asyncio
    async def test_execute_persists(self, service, store, audit_storage):
        record = await service.create_transfer(TENANT, _rent(transfer_account_id="savings"))
        result = await service.execute(TENANT, record.id, ExecutionOptions(as_of=AS_OF))

        assert result.outcome == ExecutionOutcome.POSTED
        stored = await store.find_recurring(TENANT, record.id)
        assert stored.next_occurrence_date == date(2024, 4, 1)
        assert stored.version == 2
        assert result.recurring == stored
        assert _event_types(audit_storage)[-1] == AuditEventType.EXECUTION_POSTED

    @pytest.mark.asyncio
    async def test_rejection_not_persisted(self, service, store):
        record = await service.create_standard(TENANT, _rent(end_date=date(2024, 3, 10)))
        result = await service.execute(TENANT, record.id, ExecutionOptions(as_of=AS_OF))
        assert result.outcome == ExecutionOutcome.REJECTED
        assert (await store.find_recurring(TENANT, record.id)).version == 1

    @pytest.mark.asyncio
    async def test_require_due(self, service):
        record = await service.create_standard(TENANT, _rent(next_occurrence_date=date(2024, 4, 1)))
        result = await service.execute(
            TENANT, record.id, ExecutionOptions(as_of=AS_OF), require_due=True
        )
        assert result.outcome == ExecutionOutcome.REJECTED
        assert result.reasons == ["Recurring transaction is not due"]

    @pytest.mark.asyncio
    async def test_concurrent_executions_post_once(self, service, store):
        """Two callers racing on one record: the lock serializes them."""
        record = await service.create_standard(TENANT, _rent())
        options = ExecutionOptions(as_of=AS_OF)

        first, second = await asyncio.gather(
            service.execute(TENANT, record.id, options, require_due=True),
            service.execute(TENANT, record.id, options, require_due=True),
        )
        outcomes = sorted([first.outcome.value, second.outcome.value])
        assert outcomes == [ExecutionOutcome.POSTED.value, ExecutionOutcome.REJECTED.value]
        assert len(store.entries(TENANT, record.id)) == 1

    @pytest.mark.asyncio
    async def test_edit_during_execution_waits_for_save(self, service, store):
        """An edit arriving mid-posting runs after the schedule is saved."""
        record = await service.create_standard(TENANT, _rent())
        adjust_balance = store.adjust_balance
        edits = []

        async def adjust_and_edit(tenant_id, account_id, delta):
            edits.append(asyncio.create_task(
                service.set_auto_apply(TENANT, record.id, True)
            ))
            await asyncio.sleep(0)
            await adjust_balance(tenant_id, account_id, delta)

        store.adjust_balance = adjust_and_edit
        result = await service.execute(TENANT, record.id, ExecutionOptions(as_of=AS_OF))
        await asyncio.gather(*edits)

        assert result.outcome == ExecutionOutcome.POSTED
        stored = await store.find_recurring(TENANT, record.id)
        assert stored.next_occurrence_date == date(2024, 4, 1)
        assert stored.auto_apply_enabled is True
        assert stored.version == 3
        assert len(store.entries(TENANT, record.id)) == 1
        assert store.get_account(TENANT, "checking").balance == Decimal("900.00")

        store.adjust_balance = adjust_balance
        again = await service.execute(
            TENANT, record.id, ExecutionOptions(as_of=AS_OF), require_due=True
        )
        assert again.outcome == ExecutionOutcome.REJECTED
        assert len(store.entries(TENANT, record.id)) == 1

    @pytest.mark.asyncio
    async def test_update_waits_for_execution(self, service, store):
        record = await service.create_standard(TENANT, _rent())
        lock = service._locks.lock_for(TENANT, record.id)

        async with lock:
            edit = asyncio.create_task(
                service.update(TENANT, record.id, {"name": "Rent (new lease)"})
            )
            await asyncio.sleep(0)
            assert not edit.done()

        updated = await edit
        assert updated.name == "Rent (new lease)"

    @pytest.mark.asyncio
    async def test_stale_version_raises(self, service, store):
        record = await service.create_standard(TENANT, _rent())

        class RacingStore:
            """Bumps the stored version between read and save."""
            def __getattr__(self, name):
                return getattr(store, name)

            async def find_recurring(self, tenant_id, recurring_id):
                found = await store.find_recurring(tenant_id, recurring_id)
                await store.save_recurring(found)
                return found

        racing = RecurringService(RacingStore(), engine=ExecutionEngine(RacingStore()))
        with pytest.raises(ConcurrencyError):
            await racing.execute(TENANT, record.id, ExecutionOptions(as_of=AS_OF))

    @pytest.mark.asyncio
    async def test_compensation_failure_audited(self, service, store, audit_storage):
        record = await service.create_transfer(TENANT, _rent(transfer_account_id="savings"))
        store.fail_adjust_for_accounts = {"savings"}
        store.fail_remove_entries = True

        result = await service.execute(TENANT, record.id, ExecutionOptions(as_of=AS_OF))

        assert result.compensation_failed
        assert _event_types(audit_storage)[-2:] == [
            AuditEventType.POSTING_FAILED,
            AuditEventType.COMPENSATION_FAILED,
        ]


class TestQueries:

    @pytest.mark.asyncio
    async def test_preview(self, service):
        record = await service.create_standard(TENANT, _rent())
        preview = await service.preview(TENANT, record.id, AS_OF)
        assert preview.estimated_amount == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_auto_apply_status(self, service, store):
        rent = await service.create_standard(TENANT, _rent())
        await service.set_auto_apply(TENANT, rent.id, True)
        await service.create_standard(TENANT, _rent(name="Gym", next_occurrence_date=date(2024, 5, 1)))
        later = await service.create_standard(TENANT, _rent(name="Phone"))
        current = await store.find_recurring(TENANT, later.id)
        await store.save_recurring(
            current.model_copy(update={"failed_attempts": 1}), expected_version=current.version
        )

        status = await service.auto_apply_status(TENANT, AS_OF)
        assert status.total_recurring == 3
        assert status.auto_apply_enabled == 1
        assert status.due_count == 2
        assert status.failed_count == 1

    @pytest.mark.asyncio
    async def test_list_recurrings(self, service):
        await service.create_standard(TENANT, _rent(name="B", next_occurrence_date=date(2024, 5, 1)))
        await service.create_standard(TENANT, _rent(name="A"))
        names = [r.name for r in await service.list_recurrings(TENANT)]
        assert names == ["A", "B"]
