"""
Recurring Lifecycle Service

The operations a UI action handler calls: create (one constructor per
type), update, soft delete, toggle auto-apply, reset the failure counter,
execute and preview by id, and the auto-apply overview.

DESIGN DECISIONS:
1. Nothing is stored without passing validation. Invalid input raises
   RecurringValidationError carrying every violation, and the failure is
   audited.
2. Execution and every edit go through the per-record lock, so an edit
   never lands between posting and saving the advanced schedule. Saves
   pass the version read under the lock, so a writer outside this
   service surfaces as ConcurrencyError.
3. Records are soft-deleted only. Entries already posted keep pointing at
   them.
"""

from datetime import date
from typing import Any, Optional, Union
from uuid import UUID

import structlog
from pydantic import ValidationError

from recurring_ledger.audit.logger import AuditLogger
from recurring_ledger.config import EngineSettings, get_settings
from recurring_ledger.execution.engine import ExecutionEngine
from recurring_ledger.execution.errors import RecurringValidationError
from recurring_ledger.models.recurring import (
    AutoApplyStatus,
    ExecutionOptions,
    ExecutionOutcome,
    ExecutionPreview,
    ExecutionResult,
    ExecutionState,
    FailureKind,
    Recurring,
    RecurringDraft,
    RecurringType,
    ValidationIssue,
    ValidationResult,
    parse_recurring,
    utcnow,
)
from recurring_ledger.scheduling.interval import is_due
from recurring_ledger.services.locks import RecordLockRegistry
from recurring_ledger.services.storage.interface import (
    LedgerStoreInterface,
    NotFoundError,
)
from recurring_ledger.validation.validator import RecurringValidator


logger = structlog.get_logger(__name__)


DraftInput = Union[RecurringDraft, dict]


class RecurringService:
    """Lifecycle operations on recurring records for one ledger store."""

    def __init__(
        self,
        store: LedgerStoreInterface,
        engine: Optional[ExecutionEngine] = None,
        validator: Optional[RecurringValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
        locks: Optional[RecordLockRegistry] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self._store = store
        self._settings = settings or get_settings().engine
        self._validator = validator or RecurringValidator(self._settings.min_amount)
        self._engine = engine or ExecutionEngine(
            store, validator=self._validator, settings=self._settings
        )
        self._audit = audit_logger or AuditLogger()
        self._locks = locks or RecordLockRegistry()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _as_draft(draft: DraftInput) -> RecurringDraft:
        if isinstance(draft, RecurringDraft):
            return draft
        return RecurringDraft.model_validate(draft)

    async def _build(
        self,
        data: dict,
        correlation_id: Optional[UUID],
    ) -> Recurring:
        """Build the typed record, reporting model errors as validation issues."""
        try:
            return parse_recurring(data)
        except ValidationError as e:
            # The first location part is the union tag
            issues = [
                ValidationIssue(
                    field=str(err["loc"][-1]) if len(err["loc"]) > 1 else "record",
                    rule=err["type"],
                    value=err.get("input") if not isinstance(err.get("input"), dict) else None,
                    message=err["msg"],
                )
                for err in e.errors()
            ]
            await self._reject(
                ValidationResult(is_valid=False, errors=issues),
                data.get("tenant_id"),
                data.get("id"),
                correlation_id,
            )

    async def _account_issues(self, tenant_id: str, draft: RecurringDraft) -> list[ValidationIssue]:
        """Referenced accounts must exist for the tenant."""
        issues = []
        if draft.source_account_id:
            if await self._store.find_account(tenant_id, draft.source_account_id) is None:
                issues.append(ValidationIssue(
                    field="source_account_id",
                    rule="exists",
                    value=draft.source_account_id,
                    message="Source account not found",
                ))
        if draft.transfer_account_id and draft.recurring_type != RecurringType.STANDARD.value:
            if await self._store.find_account(tenant_id, draft.transfer_account_id) is None:
                issues.append(ValidationIssue(
                    field="transfer_account_id",
                    rule="exists",
                    value=draft.transfer_account_id,
                    message="Transfer account not found",
                ))
        return issues

    async def _reject(
        self,
        result: ValidationResult,
        tenant_id: str,
        recurring_id: Optional[str],
        correlation_id: Optional[UUID],
    ) -> None:
        await self._audit.log_validation_failed(
            result,
            tenant_id=tenant_id,
            recurring_id=recurring_id,
            correlation_id=correlation_id,
        )
        raise RecurringValidationError(result.errors)

    async def _create(
        self,
        tenant_id: str,
        draft: DraftInput,
        recurring_type: RecurringType,
        created_by: Optional[str],
        correlation_id: Optional[UUID],
    ) -> Recurring:
        draft = self._as_draft(draft).model_copy(update={
            "tenant_id": tenant_id,
            "recurring_type": recurring_type.value,
        })
        if draft.interval_months is None:
            draft.interval_months = self._settings.default_interval_months
        if draft.max_failed_attempts is None:
            draft.max_failed_attempts = self._settings.default_max_failed_attempts
        if recurring_type == RecurringType.CREDIT_CARD_PAYMENT:
            draft.is_amount_flexible = True
            draft.amount = None

        if recurring_type == RecurringType.TRANSFER:
            result = self._validator.validate_transfer(draft)
        elif recurring_type == RecurringType.CREDIT_CARD_PAYMENT:
            result = self._validator.validate_credit_card_payment(draft)
        else:
            result = self._validator.validate(draft)

        errors = list(result.errors) + await self._account_issues(tenant_id, draft)
        if errors:
            await self._reject(
                ValidationResult(is_valid=False, errors=errors),
                tenant_id,
                draft.id,
                correlation_id,
            )

        data = draft.model_dump(exclude_none=True)
        data["created_by"] = created_by
        record = await self._build(data, correlation_id)
        saved = await self._store.save_recurring(record)

        logger.info(
            "recurring_created",
            tenant_id=tenant_id,
            recurring_id=saved.id,
            recurring_type=saved.recurring_type.value,
        )
        await self._audit.log_recurring_created(saved, correlation_id)
        return saved

    # ------------------------------------------------------------------
    # Type-specific constructors
    # ------------------------------------------------------------------

    async def create_standard(
        self,
        tenant_id: str,
        draft: DraftInput,
        created_by: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Recurring:
        """Create a Standard (single-account) recurring record."""
        return await self._create(tenant_id, draft, RecurringType.STANDARD, created_by, correlation_id)

    async def create_transfer(
        self,
        tenant_id: str,
        draft: DraftInput,
        created_by: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Recurring:
        """Create a Transfer between two of the tenant's accounts."""
        return await self._create(tenant_id, draft, RecurringType.TRANSFER, created_by, correlation_id)

    async def create_credit_card_payment(
        self,
        tenant_id: str,
        draft: DraftInput,
        created_by: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Recurring:
        """
        Create a CreditCardPayment.

        Any amount in the draft is dropped: card payments are always
        resolved from the statement at execution time.
        """
        return await self._create(
            tenant_id, draft, RecurringType.CREDIT_CARD_PAYMENT, created_by, correlation_id
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, tenant_id: str, recurring_id: str) -> Recurring:
        """
        Raises:
            NotFoundError: If the record doesn't exist or is deleted
        """
        record = await self._store.find_recurring(tenant_id, recurring_id)
        if record is None or record.is_deleted:
            raise NotFoundError(f"Recurring {recurring_id} not found")
        return record

    async def list_recurrings(self, tenant_id: str, include_deleted: bool = False) -> list[Recurring]:
        return await self._store.list_recurrings(tenant_id, include_deleted=include_deleted)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def update(
        self,
        tenant_id: str,
        recurring_id: str,
        changes: dict[str, Any],
        updated_by: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Recurring:
        """
        Merge `changes` into a record and re-validate it.

        A manual edit is a human intervention: it resets failed_attempts
        unless the changes set it explicitly. The type of a record cannot
        be changed; create a new record instead.
        """
        changes = dict(changes)
        new_type = changes.pop("recurring_type", None)

        async with self._locks.lock_for(tenant_id, recurring_id):
            current = await self.get(tenant_id, recurring_id)

            if new_type is not None and str(getattr(new_type, "value", new_type)) != current.recurring_type.value:
                await self._reject(
                    ValidationResult(is_valid=False, errors=[ValidationIssue(
                        field="recurring_type",
                        rule="immutable",
                        value=str(getattr(new_type, "value", new_type)),
                        message="Recurring type cannot be changed",
                    )]),
                    tenant_id,
                    recurring_id,
                    correlation_id,
                )

            merged = current.model_dump()
            merged.update(changes)
            if "next_occurrence_date" in changes and "anchor_day" not in changes:
                merged["anchor_day"] = None
            if "failed_attempts" not in changes:
                merged["failed_attempts"] = 0

            result = self._validator.validate(merged)
            errors = list(result.errors)
            if {"source_account_id", "transfer_account_id"} & changes.keys():
                errors.extend(await self._account_issues(tenant_id, RecurringDraft.model_validate(merged)))
            if errors:
                await self._reject(
                    ValidationResult(is_valid=False, errors=errors),
                    tenant_id,
                    recurring_id,
                    correlation_id,
                )

            merged["updated_at"] = utcnow()
            merged["updated_by"] = updated_by
            record = await self._build(merged, correlation_id)
            saved = await self._store.save_recurring(record, expected_version=current.version)

        await self._audit.log_recurring_updated(saved, sorted(changes.keys()), correlation_id)
        return saved

    async def _save_flags(
        self,
        current: Recurring,
        update: dict[str, Any],
        updated_by: Optional[str],
    ) -> Recurring:
        update = {**update, "updated_at": utcnow(), "updated_by": updated_by}
        return await self._store.save_recurring(
            current.model_copy(update=update),
            expected_version=current.version,
        )

    async def soft_delete(
        self,
        tenant_id: str,
        recurring_id: str,
        deleted_by: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Recurring:
        """Mark a record deleted and inactive. It is never removed."""
        async with self._locks.lock_for(tenant_id, recurring_id):
            current = await self.get(tenant_id, recurring_id)
            saved = await self._save_flags(
                current, {"is_deleted": True, "is_active": False}, deleted_by
            )
        await self._audit.log_recurring_deleted(saved, correlation_id)
        return saved

    async def set_auto_apply(
        self,
        tenant_id: str,
        recurring_id: str,
        enabled: bool,
        updated_by: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Recurring:
        async with self._locks.lock_for(tenant_id, recurring_id):
            current = await self.get(tenant_id, recurring_id)
            saved = await self._save_flags(current, {"auto_apply_enabled": enabled}, updated_by)
        await self._audit.log_auto_apply_toggled(saved, correlation_id)
        return saved

    async def reset_failed_attempts(
        self,
        tenant_id: str,
        recurring_id: str,
        updated_by: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Recurring:
        """Human intervention that unblocks an exhausted record."""
        async with self._locks.lock_for(tenant_id, recurring_id):
            current = await self.get(tenant_id, recurring_id)
            saved = await self._save_flags(current, {"failed_attempts": 0}, updated_by)
        await self._audit.log_failed_attempts_reset(saved, current.failed_attempts, correlation_id)
        return saved

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        tenant_id: str,
        recurring_id: str,
        options: Optional[ExecutionOptions] = None,
        correlation_id: Optional[UUID] = None,
        require_due: bool = False,
    ) -> ExecutionResult:
        """
        Execute one occurrence of a stored record and persist the result.

        Args:
            require_due: Refuse if the record is not due on options.as_of
                         (used by unattended runs, which re-read the record
                         under the lock)

        Raises:
            NotFoundError: If the record doesn't exist
            ConcurrencyError: If the record changed while executing
        """
        options = options or ExecutionOptions()

        async with self._locks.lock_for(tenant_id, recurring_id):
            record = await self.get(tenant_id, recurring_id)
            as_of = options.as_of or date.today()

            if require_due and (
                record.next_occurrence_date is None
                or not is_due(record.next_occurrence_date, as_of)
            ):
                return ExecutionResult(
                    recurring_id=record.id,
                    outcome=ExecutionOutcome.REJECTED,
                    state=ExecutionState.REJECTED,
                    recurring=record,
                    failure_kind=FailureKind.PRECONDITION,
                    reasons=["Recurring transaction is not due"],
                )

            result = await self._engine.execute(record, options)
            if result.requires_save:
                saved = await self._store.save_recurring(
                    result.recurring, expected_version=record.version
                )
                result = result.model_copy(update={"recurring": saved})

        unattended = (
            options.unattended if options.unattended is not None else record.auto_apply_enabled
        )
        await self._audit.log_execution(result, unattended, correlation_id)
        if result.compensation_failed:
            await self._audit.log_compensation_failed(record, result.message, correlation_id)
        return result

    async def preview(
        self,
        tenant_id: str,
        recurring_id: str,
        as_of: Optional[date] = None,
    ) -> ExecutionPreview:
        record = await self.get(tenant_id, recurring_id)
        return await self._engine.preview(record, as_of)

    async def auto_apply_status(
        self,
        tenant_id: str,
        as_of: Optional[date] = None,
    ) -> AutoApplyStatus:
        """Counts for the auto-apply overview."""
        as_of = as_of or date.today()
        records = await self._store.list_recurrings(tenant_id)
        return AutoApplyStatus(
            total_recurring=len(records),
            auto_apply_enabled=sum(1 for r in records if r.auto_apply_enabled),
            due_count=sum(
                1 for r in records
                if r.is_active
                and r.next_occurrence_date is not None
                and is_due(r.next_occurrence_date, as_of)
            ),
            failed_count=sum(1 for r in records if r.failed_attempts > 0),
        )
