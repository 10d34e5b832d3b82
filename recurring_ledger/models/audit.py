"""
Audit Models for the Recurring Transaction Engine

Every change to a recurring obligation and every execution attempt produces
an audit event. Together they answer "why did this money move (or not)?"

DESIGN DECISION: Audit logs are append-only. Events are never edited or
removed, even when the recurring record they describe is soft-deleted.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Lifecycle of a recurring record
    RECURRING_CREATED = "recurring_created"
    RECURRING_UPDATED = "recurring_updated"
    RECURRING_DELETED = "recurring_deleted"
    VALIDATION_FAILED = "validation_failed"
    AUTO_APPLY_TOGGLED = "auto_apply_toggled"
    FAILED_ATTEMPTS_RESET = "failed_attempts_reset"

    # Execution
    EXECUTION_POSTED = "execution_posted"
    EXECUTION_SKIPPED = "execution_skipped"
    EXECUTION_REJECTED = "execution_rejected"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    POSTING_FAILED = "posting_failed"
    COMPENSATION_FAILED = "compensation_failed"

    # Unattended runs
    AUTO_APPLY_BATCH_COMPLETED = "auto_apply_batch_completed"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    One entry of the audit trail, about one recurring record or one batch run.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # Context - what entity is this about?
    tenant_id: Optional[str] = None
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'recurring', 'batch')"
    )
    entity_id: Optional[str] = None

    # Correlation - all events of one batch run or one user action
    correlation_id: Optional[UUID] = None

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(default_factory=dict)

    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="False for unattended (auto-apply) activity"
    )

    def to_log_dict(self) -> dict:
        """Convert to a dictionary suitable for structured logging."""
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


class AuditEventBuilder:
    """
    Builds the events for record lifecycle changes and execution outcomes.

    Usage:
        event = AuditEventBuilder.recurring_created(tenant_id, recurring_id, name, recurring_type)
        event = AuditEventBuilder.execution_outcome(tenant_id, recurring_id, outcome, ...)
    """

    @staticmethod
    def recurring_created(
        tenant_id: str,
        recurring_id: str,
        name: str,
        recurring_type: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_CREATED,
            tenant_id=tenant_id,
            entity_type="recurring",
            entity_id=recurring_id,
            correlation_id=correlation_id,
            description=f"Recurring created: {name}",
            details={"recurring_type": recurring_type},
            is_user_action=True,
        )

    @staticmethod
    def recurring_updated(
        tenant_id: str,
        recurring_id: str,
        changed_fields: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_UPDATED,
            tenant_id=tenant_id,
            entity_type="recurring",
            entity_id=recurring_id,
            correlation_id=correlation_id,
            description=f"Recurring updated ({len(changed_fields)} fields)",
            details={"changed_fields": changed_fields},
            is_user_action=True,
        )

    @staticmethod
    def recurring_deleted(
        tenant_id: str,
        recurring_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_DELETED,
            tenant_id=tenant_id,
            entity_type="recurring",
            entity_id=recurring_id,
            correlation_id=correlation_id,
            description="Recurring soft-deleted",
            is_user_action=True,
        )

    @staticmethod
    def auto_apply_toggled(
        tenant_id: str,
        recurring_id: str,
        enabled: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.AUTO_APPLY_TOGGLED,
            tenant_id=tenant_id,
            entity_type="recurring",
            entity_id=recurring_id,
            correlation_id=correlation_id,
            description=f"Auto-apply {'enabled' if enabled else 'disabled'}",
            details={"enabled": enabled},
            is_user_action=True,
        )

    @staticmethod
    def failed_attempts_reset(
        tenant_id: str,
        recurring_id: str,
        previous: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.FAILED_ATTEMPTS_RESET,
            tenant_id=tenant_id,
            entity_type="recurring",
            entity_id=recurring_id,
            correlation_id=correlation_id,
            description="Failed attempts counter reset",
            details={"previous_failed_attempts": previous},
            is_user_action=True,
        )

    @staticmethod
    def validation_failed(
        tenant_id: Optional[str],
        recurring_id: Optional[str],
        issues: list[dict],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            severity=AuditSeverity.WARNING,
            tenant_id=tenant_id,
            entity_type="recurring",
            entity_id=recurring_id,
            correlation_id=correlation_id,
            description=f"Validation failed with {len(issues)} issues",
            details={"issues": issues},
        )

    @staticmethod
    def execution_outcome(
        tenant_id: str,
        recurring_id: str,
        outcome: str,
        amount: str,
        reasons: list[str],
        unattended: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        """Map an execution outcome onto the matching event type and severity."""
        event_type, severity = {
            "Posted": (AuditEventType.EXECUTION_POSTED, AuditSeverity.INFO),
            "Skipped": (AuditEventType.EXECUTION_SKIPPED, AuditSeverity.INFO),
            "Rejected": (AuditEventType.EXECUTION_REJECTED, AuditSeverity.WARNING),
            "SkipAndReschedule": (AuditEventType.INSUFFICIENT_FUNDS, AuditSeverity.WARNING),
            "PartialPaymentAvailable": (AuditEventType.INSUFFICIENT_FUNDS, AuditSeverity.WARNING),
            "NoFundsAvailable": (AuditEventType.INSUFFICIENT_FUNDS, AuditSeverity.WARNING),
            "Failed": (AuditEventType.POSTING_FAILED, AuditSeverity.ERROR),
        }.get(outcome, (AuditEventType.SYSTEM_ERROR, AuditSeverity.ERROR))
        return AuditEvent(
            event_type=event_type,
            severity=severity,
            tenant_id=tenant_id,
            entity_type="recurring",
            entity_id=recurring_id,
            correlation_id=correlation_id,
            description=f"Execution {outcome}: {amount}",
            details={
                "outcome": outcome,
                "amount": amount,
                "reasons": reasons,
            },
            is_user_action=not unattended,
        )

    @staticmethod
    def compensation_failed(
        tenant_id: str,
        recurring_id: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COMPENSATION_FAILED,
            severity=AuditSeverity.CRITICAL,
            tenant_id=tenant_id,
            entity_type="recurring",
            entity_id=recurring_id,
            correlation_id=correlation_id,
            description="Rollback after posting failure did not complete",
            error_message=error_message,
        )

    @staticmethod
    def batch_completed(
        tenant_id: str,
        applied: int,
        skipped: int,
        rejected: int,
        failed: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.AUTO_APPLY_BATCH_COMPLETED,
            tenant_id=tenant_id,
            entity_type="batch",
            correlation_id=correlation_id,
            description=f"Auto-apply run: {applied} applied, {failed + rejected} not applied",
            details={
                "applied": applied,
                "skipped": skipped,
                "rejected": rejected,
                "failed": failed,
            },
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
