"""
Abstract Storage Interface

DESIGN DECISION: The engine never talks to a database directly. It goes
through this interface, which lets us:
1. Use the in-memory store for tests and local runs
2. Plug in a real ledger database without touching the engine
3. Inject faults (posting failures, dropped connections) in tests

The interface is intentionally narrow - just the operations the engine
and the service layer need. Everything is tenant-scoped.
"""

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import Optional, Sequence
from uuid import UUID

from recurring_ledger.models.audit import AuditEvent
from recurring_ledger.models.recurring import (
    Account,
    LedgerEntry,
    Recurring,
)


class LedgerStoreInterface(ABC):
    """
    Abstract interface for the ledger: accounts, entries and recurring records.

    Any storage implementation must implement these methods.
    """

    # ------------------------------------------------------------------
    # Accounts and entries
    # ------------------------------------------------------------------

    @abstractmethod
    async def find_account(self, tenant_id: str, account_id: str) -> Optional[Account]:
        """
        Look up an account.

        Returns:
            The account, or None if it does not exist (or is deleted)
        """
        pass

    @abstractmethod
    async def post_entries(self, entries: Sequence[LedgerEntry]) -> None:
        """
        Persist a batch of entries.

        All-or-nothing: either every entry is stored or none is.

        Raises:
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def remove_entries(self, tenant_id: str, entry_ids: Sequence[str]) -> None:
        """
        Remove previously posted entries (compensating action).

        Raises:
            StorageError: If the removal fails
        """
        pass

    @abstractmethod
    async def adjust_balance(self, tenant_id: str, account_id: str, delta: Decimal) -> None:
        """
        Add delta to an account's stored balance.

        Raises:
            NotFoundError: If the account doesn't exist
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def entries_in_range(
        self,
        tenant_id: str,
        account_id: str,
        start: date,
        end: date,
    ) -> list[LedgerEntry]:
        """
        Entries for an account dated in [start, end).

        The end date is exclusive.
        """
        pass

    @abstractmethod
    async def balance_at_date(self, tenant_id: str, account_id: str, as_of: date) -> Decimal:
        """
        Account balance as of the end of `as_of`.

        Raises:
            NotFoundError: If the account doesn't exist
        """
        pass

    # ------------------------------------------------------------------
    # Recurring records
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_recurring(
        self,
        record: Recurring,
        expected_version: Optional[int] = None,
    ) -> Recurring:
        """
        Insert or replace a recurring record.

        Args:
            record: The record to store
            expected_version: When given, the stored version must match it

        Returns:
            The stored record, with its version incremented

        Raises:
            ConcurrencyError: If expected_version doesn't match
        """
        pass

    @abstractmethod
    async def find_recurring(self, tenant_id: str, recurring_id: str) -> Optional[Recurring]:
        """Return a recurring record (including soft-deleted ones), or None."""
        pass

    @abstractmethod
    async def list_recurrings(
        self,
        tenant_id: str,
        include_deleted: bool = False,
    ) -> list[Recurring]:
        """List a tenant's recurring records."""
        pass

    @abstractmethod
    async def find_due_recurrings(self, tenant_id: str, as_of: date) -> list[Recurring]:
        """
        Records due on `as_of`.

        Active, not deleted, next occurrence on or before `as_of`. Ordered
        by next occurrence date. Auto-apply and exhaustion are NOT filtered
        here; the batch runner and the engine decide those.
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get all events for a correlation ID, in chronological order."""
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """Get all events for a specific entity, in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get the most recent audit events (newest first)."""
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class ConcurrencyError(StorageError):
    """The stored record changed since it was read."""

    def __init__(self, recurring_id: str, expected: int, actual: int):
        self.recurring_id = recurring_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Recurring {recurring_id} is at version {actual}, expected {expected}"
        )


class StoreConnectionError(StorageError):
    """Could not reach the storage backend. Safe to retry reads."""
    pass
