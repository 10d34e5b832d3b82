"""
Main Orchestrator for the Recurring Ledger

This module ties the components together and defines the unattended
auto-apply flow:

    due records → split auto-apply / pending → execute in bounded batches
                → persist each record → summarize → audit

DESIGN DECISION: The orchestrator enforces the boundaries:
- Records without auto-apply are never executed here; they are reported
  as pending so a human can act on them
- One record's failure never stops the batch
- Every record is executed under its own lock, the same lock interactive
  execution takes
- Every run is audited under one correlation ID
"""

import asyncio
from datetime import date
from typing import Optional
from uuid import UUID

import structlog

from recurring_ledger.audit import AuditLogger, configure_logging, create_correlation_id
from recurring_ledger.config import AutoApplySettings, get_settings
from recurring_ledger.execution.engine import ExecutionEngine
from recurring_ledger.models.recurring import (
    AutoApplySummary,
    ExecutionOptions,
    ExecutionOutcome,
    ExecutionResult,
    ExecutionState,
    FailureKind,
    Recurring,
)
from recurring_ledger.services.locks import RecordLockRegistry
from recurring_ledger.services.recurring_service import RecurringService
from recurring_ledger.services.storage import (
    AuditStorageInterface,
    InMemoryAuditStorage,
    InMemoryLedgerStore,
    LedgerStoreInterface,
    StorageError,
)
from recurring_ledger.validation import RecurringValidator


logger = structlog.get_logger(__name__)


class AutoApplyFlow:
    """
    Runs every due auto-apply record of a tenant, unattended.

    Flow:
    1. Load → records that are active, not deleted and due on as_of
    2. Split → auto-apply records run, the rest are reported as pending
    3. Execute → in batches of max_batch_size, concurrently within a batch
    4. Persist → each record is saved by the lifecycle service
    5. Summarize → counts per outcome, audited as one batch event
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        service: Optional[RecurringService] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[AutoApplySettings] = None,
    ):
        self._store = store
        self._audit_logger = audit_logger or AuditLogger()
        self._service = service or RecurringService(store, audit_logger=self._audit_logger)
        self._settings = settings or get_settings().auto_apply

    async def _run_one(
        self,
        record: Recurring,
        as_of: date,
        correlation_id: UUID,
    ) -> ExecutionResult:
        options = ExecutionOptions(as_of=as_of, unattended=True, executed_by="auto-apply")
        try:
            return await self._service.execute(
                record.tenant_id,
                record.id,
                options,
                correlation_id=correlation_id,
                require_due=True,
            )
        except StorageError as e:
            # Covers NotFoundError and ConcurrencyError from the save
            logger.error(
                "auto_apply_record_failed",
                recurring_id=record.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._audit_logger.log_error(
                error_type=type(e).__name__,
                error_message=str(e),
                details={"recurring_id": record.id, "tenant_id": record.tenant_id},
                correlation_id=correlation_id,
            )
            return ExecutionResult(
                recurring_id=record.id,
                outcome=ExecutionOutcome.FAILED,
                state=ExecutionState.VALIDATED,
                recurring=record,
                failure_kind=FailureKind.POSTING,
                reasons=[f"Could not execute recurring transaction: {e}"],
            )

    async def run_due(
        self,
        tenant_id: str,
        as_of: Optional[date] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AutoApplySummary:
        """
        Execute every due auto-apply record of a tenant.

        Args:
            tenant_id: Tenant to process
            as_of: Business date of the run (defaults to today)
            correlation_id: Shared by every audit event of the run

        Returns:
            AutoApplySummary with per-outcome counts and every result
        """
        as_of = as_of or date.today()
        correlation_id = correlation_id or create_correlation_id()
        summary = AutoApplySummary(
            correlation_id=str(correlation_id),
            tenant_id=tenant_id,
            as_of=as_of,
        )

        if not self._settings.enabled:
            logger.info("auto_apply_disabled", tenant_id=tenant_id)
            return summary

        due = await self._store.find_due_recurrings(tenant_id, as_of)

        # Never the same record twice in one run
        seen = set()
        to_run = []
        for record in due:
            if record.id in seen:
                continue
            seen.add(record.id)
            if record.auto_apply_enabled:
                to_run.append(record)
            else:
                summary.pending_recurring_ids.append(record.id)
        summary.pending_count = len(summary.pending_recurring_ids)

        logger.info(
            "auto_apply_started",
            tenant_id=tenant_id,
            as_of=as_of.isoformat(),
            due=len(seen),
            to_run=len(to_run),
            pending=summary.pending_count,
            correlation_id=str(correlation_id),
        )

        batch_size = self._settings.max_batch_size
        for start in range(0, len(to_run), batch_size):
            batch = to_run[start:start + batch_size]
            results = await asyncio.gather(
                *(self._run_one(record, as_of, correlation_id) for record in batch)
            )
            summary.results.extend(results)

        for result in summary.results:
            if result.outcome == ExecutionOutcome.POSTED:
                summary.applied_count += 1
            elif result.outcome in (ExecutionOutcome.SKIPPED, ExecutionOutcome.SKIP_AND_RESCHEDULE):
                summary.skipped_count += 1
            elif result.outcome == ExecutionOutcome.REJECTED:
                summary.rejected_count += 1
            else:
                summary.failed_count += 1

        logger.info(
            "auto_apply_completed",
            tenant_id=tenant_id,
            applied=summary.applied_count,
            skipped=summary.skipped_count,
            rejected=summary.rejected_count,
            failed=summary.failed_count,
            pending=summary.pending_count,
            correlation_id=str(correlation_id),
        )
        await self._audit_logger.log_batch_completed(summary)
        return summary


def create_app_components(
    store: Optional[LedgerStoreInterface] = None,
    audit_storage: Optional[AuditStorageInterface] = None,
) -> tuple[RecurringService, AutoApplyFlow, LedgerStoreInterface]:
    """
    Factory function to create all application components.

    Args:
        store: Ledger store. Defaults to an in-memory store.
        audit_storage: Audit persistence. Defaults to in-memory.

    Returns:
        (recurring_service, auto_apply_flow, store)
    """
    settings = get_settings()
    configure_logging(settings.logging.level, settings.logging.json_output)

    store = store if store is not None else InMemoryLedgerStore()
    audit_storage = audit_storage if audit_storage is not None else InMemoryAuditStorage()
    audit_logger = AuditLogger(audit_storage)

    # One lock registry shared by interactive and unattended execution
    locks = RecordLockRegistry()
    validator = RecurringValidator(settings.engine.min_amount)
    engine = ExecutionEngine(store, validator=validator, settings=settings.engine)

    service = RecurringService(
        store,
        engine=engine,
        validator=validator,
        audit_logger=audit_logger,
        locks=locks,
        settings=settings.engine,
    )
    flow = AutoApplyFlow(
        store,
        service=service,
        audit_logger=audit_logger,
        settings=settings.auto_apply,
    )
    return service, flow, store
