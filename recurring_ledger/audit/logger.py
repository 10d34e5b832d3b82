"""
Audit Logger

DESIGN DECISION: Every change to a recurring record and every execution
attempt is logged, so an unattended posting can always be traced back to
the record, the run and the reason.

The audit logger:
- Is async to not block the execution flow
- Gracefully handles failures (a broken audit store never undoes a posting)
- Supports correlation IDs to trace all events of one batch run
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

import structlog

from recurring_ledger.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from recurring_ledger.models.recurring import (
    AutoApplySummary,
    ExecutionResult,
    RecurringBase,
    ValidationResult,
)
from recurring_ledger.services.storage.interface import AuditStorageInterface


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """
    Configure structlog (and the stdlib logging it renders through).

    Called once at import with defaults; create_app_components calls it
    again with the values from LoggingSettings.
    """
    logging.basicConfig(format="%(message)s", level=getattr(logging, level, logging.INFO))
    logging.getLogger().setLevel(getattr(logging, level, logging.INFO))

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure_logging()


class AuditLogger:
    """
    Writes audit events for recurring records and batch runs.

    Logs events both to:
    1. The structlog logger "recurring_ledger.audit"
    2. An AuditStorageInterface backend (for persistence), when given
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Args:
            storage: Where events are persisted.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("recurring_ledger.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity == AuditSeverity.CRITICAL:
            self._logger.critical("audit_event", **log_dict)
        elif event.severity == AuditSeverity.ERROR:
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_recurring_created(
        self,
        record: RecurringBase,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.recurring_created(
            tenant_id=record.tenant_id,
            recurring_id=record.id,
            name=record.name,
            recurring_type=record.recurring_type.value,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_recurring_updated(
        self,
        record: RecurringBase,
        changed_fields: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.recurring_updated(
            tenant_id=record.tenant_id,
            recurring_id=record.id,
            changed_fields=changed_fields,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_recurring_deleted(
        self,
        record: RecurringBase,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.recurring_deleted(
            tenant_id=record.tenant_id,
            recurring_id=record.id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_auto_apply_toggled(
        self,
        record: RecurringBase,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.auto_apply_toggled(
            tenant_id=record.tenant_id,
            recurring_id=record.id,
            enabled=record.auto_apply_enabled,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_failed_attempts_reset(
        self,
        record: RecurringBase,
        previous: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.failed_attempts_reset(
            tenant_id=record.tenant_id,
            recurring_id=record.id,
            previous=previous,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_validation_failed(
        self,
        result: ValidationResult,
        tenant_id: Optional[str] = None,
        recurring_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a rejected candidate with every rule it broke."""
        event = AuditEventBuilder.validation_failed(
            tenant_id=tenant_id,
            recurring_id=recurring_id,
            issues=[issue.model_dump(mode="json") for issue in result.errors],
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_execution(
        self,
        result: ExecutionResult,
        unattended: bool,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log the outcome of one execution attempt."""
        event = AuditEventBuilder.execution_outcome(
            tenant_id=result.recurring.tenant_id,
            recurring_id=result.recurring_id,
            outcome=result.outcome.value,
            amount=str(result.amount_applied),
            reasons=result.reasons,
            unattended=unattended,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_compensation_failed(
        self,
        record: RecurringBase,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.compensation_failed(
            tenant_id=record.tenant_id,
            recurring_id=record.id,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_batch_completed(self, summary: AutoApplySummary) -> None:
        event = AuditEventBuilder.batch_completed(
            tenant_id=summary.tenant_id,
            applied=summary.applied_count,
            skipped=summary.skipped_count,
            rejected=summary.rejected_count,
            failed=summary.failed_count,
            correlation_id=UUID(summary.correlation_id),
        )
        await self.log(event)

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a batch run or a user action and pass it
    through all subsequent operations.
    """
    return uuid4()
