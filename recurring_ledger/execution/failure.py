"""
Failure Handler

Decides what happens when an execution cannot complete.

UNATTENDED (auto-apply) runs never wait for a human: the occurrence is
skipped, failed_attempts goes up by one, and the next occurrence date is
left where it is so the same occurrence is retried on the next run. Once
failed_attempts reaches max_failed_attempts the record is refused at the
precondition check until someone intervenes.

INTERACTIVE runs get an advisory outcome instead: either a partial payment
is possible (some funds available) or nothing can be paid. Nothing is
posted and the record is not changed - the caller decides what to do.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

import structlog

from recurring_ledger.models.recurring import (
    ExecutionOutcome,
    ExecutionResult,
    ExecutionState,
    FailureKind,
    Recurring,
    utcnow,
)


logger = structlog.get_logger(__name__)


class FailureHandler:
    """Maps insufficient-funds and posting failures onto execution results."""

    @staticmethod
    def _count_failure(record: Recurring) -> Recurring:
        return record.model_copy(update={
            "failed_attempts": record.failed_attempts + 1,
            "updated_at": utcnow(),
        })

    def handle_insufficient_funds(
        self,
        record: Recurring,
        required: Decimal,
        available: Decimal,
        unattended: bool,
        occurrence_date: Optional[date] = None,
    ) -> ExecutionResult:
        """Result for a run whose source account cannot cover the amount."""
        if unattended:
            updated = self._count_failure(record)
            logger.warning(
                "auto_apply_skipped_insufficient_funds",
                recurring_id=record.id,
                required=str(required),
                available=str(available),
                failed_attempts=updated.failed_attempts,
                max_failed_attempts=updated.max_failed_attempts,
            )
            return ExecutionResult(
                recurring_id=record.id,
                outcome=ExecutionOutcome.SKIP_AND_RESCHEDULE,
                state=ExecutionState.AMOUNT_RESOLVED,
                recurring=updated,
                requires_save=True,
                occurrence_date=occurrence_date,
                required_amount=required,
                available_amount=available,
                failure_kind=FailureKind.INSUFFICIENT_FUNDS,
                reasons=[
                    f"Insufficient funds ({available} < {required}). Payment skipped."
                ],
            )

        if available > 0:
            outcome = ExecutionOutcome.PARTIAL_PAYMENT_AVAILABLE
            reason = f"Insufficient funds for full payment. Partial payment of {available} available."
        else:
            outcome = ExecutionOutcome.NO_FUNDS_AVAILABLE
            reason = "No funds available for payment."

        return ExecutionResult(
            recurring_id=record.id,
            outcome=outcome,
            state=ExecutionState.AMOUNT_RESOLVED,
            recurring=record,
            occurrence_date=occurrence_date,
            required_amount=required,
            available_amount=available,
            failure_kind=FailureKind.INSUFFICIENT_FUNDS,
            reasons=[reason],
        )

    def handle_posting_error(
        self,
        record: Recurring,
        error: Exception,
        unattended: bool,
        occurrence_date: Optional[date] = None,
        amount: Optional[Decimal] = None,
        compensation_errors: Optional[list[str]] = None,
    ) -> ExecutionResult:
        """
        Result for a run whose ledger writes failed (and were rolled back).

        The schedule is never advanced. Unattended runs count the failure.
        """
        updated = self._count_failure(record) if unattended else record
        reasons = [f"Posting failed: {error}"]
        reasons.extend(compensation_errors or [])

        logger.error(
            "posting_failed",
            recurring_id=record.id,
            error=str(error),
            unattended=unattended,
            compensated=not compensation_errors,
        )
        return ExecutionResult(
            recurring_id=record.id,
            outcome=ExecutionOutcome.FAILED,
            state=ExecutionState.FUNDS_CHECKED,
            recurring=updated,
            requires_save=unattended,
            occurrence_date=occurrence_date,
            required_amount=amount,
            failure_kind=FailureKind.POSTING,
            compensation_failed=bool(compensation_errors),
            reasons=reasons,
        )
