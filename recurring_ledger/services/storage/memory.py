"""
In-Memory Storage Implementation

DESIGN DECISION: The in-memory store is a full implementation of the
storage interfaces, not a mock. It is what the tests, local runs and the
demo wiring use.

It keeps records as plain dicts (like rows in a table) and rebuilds models
on every read, so a caller mutating a returned object never changes what
is stored.

FAULT INJECTION: tests can make posting, balance updates, compensation or
reads fail on demand to exercise the engine's rollback and retry paths.
"""

import asyncio
from datetime import date
from decimal import Decimal
from typing import Optional, Sequence
from uuid import UUID

from recurring_ledger.models.audit import AuditEvent
from recurring_ledger.models.recurring import (
    Account,
    LedgerEntry,
    Recurring,
    parse_recurring,
)
from recurring_ledger.services.storage.interface import (
    AuditStorageInterface,
    ConcurrencyError,
    LedgerStoreInterface,
    NotFoundError,
    StorageError,
    StoreConnectionError,
)


class InMemoryLedgerStore(LedgerStoreInterface):
    """Ledger store backed by dicts, with optional fault injection."""

    def __init__(self):
        self._accounts: dict[tuple[str, str], dict] = {}
        self._entries: dict[tuple[str, str], dict] = {}
        self._recurrings: dict[tuple[str, str], dict] = {}
        self._lock = asyncio.Lock()

        # Fault injection knobs
        self.fail_post_entries = False
        self.fail_adjust_for_accounts: set[str] = set()
        self.fail_remove_entries = False
        self.read_failures_remaining = 0

    # ------------------------------------------------------------------
    # Seeding and inspection helpers (not part of the interface)
    # ------------------------------------------------------------------

    def add_account(self, account: Account) -> Account:
        self._accounts[(account.tenant_id, account.id)] = account.model_dump()
        return account

    def get_account(self, tenant_id: str, account_id: str) -> Account:
        row = self._accounts.get((tenant_id, account_id))
        if row is None:
            raise NotFoundError(f"Account {account_id} not found")
        return Account.model_validate(row)

    def add_entries(self, entries: Sequence[LedgerEntry]) -> None:
        """Seed historical entries without touching balances."""
        for entry in entries:
            self._entries[(entry.tenant_id, entry.id)] = entry.model_dump()

    def entries(self, tenant_id: str, recurring_id: Optional[str] = None) -> list[LedgerEntry]:
        result = [
            LedgerEntry.model_validate(row)
            for (tid, _), row in self._entries.items()
            if tid == tenant_id
            and (recurring_id is None or row.get("recurring_id") == recurring_id)
        ]
        return sorted(result, key=lambda e: (e.date, e.created_at))

    def _check_read(self) -> None:
        if self.read_failures_remaining > 0:
            self.read_failures_remaining -= 1
            raise StoreConnectionError("Ledger store temporarily unavailable")

    # ------------------------------------------------------------------
    # Accounts and entries
    # ------------------------------------------------------------------

    async def find_account(self, tenant_id: str, account_id: str) -> Optional[Account]:
        self._check_read()
        row = self._accounts.get((tenant_id, account_id))
        if row is None or row.get("is_deleted"):
            return None
        return Account.model_validate(row)

    async def post_entries(self, entries: Sequence[LedgerEntry]) -> None:
        async with self._lock:
            if self.fail_post_entries:
                raise StorageError("Failed to post entries")
            for entry in entries:
                if (entry.tenant_id, entry.id) in self._entries:
                    raise StorageError(f"Entry {entry.id} already exists")
            for entry in entries:
                self._entries[(entry.tenant_id, entry.id)] = entry.model_dump()

    async def remove_entries(self, tenant_id: str, entry_ids: Sequence[str]) -> None:
        async with self._lock:
            if self.fail_remove_entries:
                raise StorageError("Failed to remove entries")
            for entry_id in entry_ids:
                self._entries.pop((tenant_id, entry_id), None)

    async def adjust_balance(self, tenant_id: str, account_id: str, delta: Decimal) -> None:
        async with self._lock:
            if account_id in self.fail_adjust_for_accounts:
                raise StorageError(f"Failed to update balance of {account_id}")
            row = self._accounts.get((tenant_id, account_id))
            if row is None:
                raise NotFoundError(f"Account {account_id} not found")
            row["balance"] = Decimal(row["balance"]) + delta

    async def entries_in_range(
        self,
        tenant_id: str,
        account_id: str,
        start: date,
        end: date,
    ) -> list[LedgerEntry]:
        self._check_read()
        return [
            entry
            for entry in self.entries(tenant_id)
            if entry.account_id == account_id and start <= entry.date < end
        ]

    async def balance_at_date(self, tenant_id: str, account_id: str, as_of: date) -> Decimal:
        self._check_read()
        account = self.get_account(tenant_id, account_id)
        later = sum(
            (
                entry.amount
                for entry in self.entries(tenant_id)
                if entry.account_id == account_id and entry.date > as_of
            ),
            Decimal("0"),
        )
        return account.balance - later

    # ------------------------------------------------------------------
    # Recurring records
    # ------------------------------------------------------------------

    async def save_recurring(
        self,
        record: Recurring,
        expected_version: Optional[int] = None,
    ) -> Recurring:
        async with self._lock:
            key = (record.tenant_id, record.id)
            current = self._recurrings.get(key)
            current_version = current["version"] if current else 0
            if expected_version is not None and expected_version != current_version:
                raise ConcurrencyError(record.id, expected_version, current_version)
            data = record.model_dump()
            data["version"] = current_version + 1
            self._recurrings[key] = data
            return parse_recurring(data)

    async def find_recurring(self, tenant_id: str, recurring_id: str) -> Optional[Recurring]:
        self._check_read()
        row = self._recurrings.get((tenant_id, recurring_id))
        return parse_recurring(row) if row is not None else None

    async def list_recurrings(
        self,
        tenant_id: str,
        include_deleted: bool = False,
    ) -> list[Recurring]:
        self._check_read()
        records = [
            parse_recurring(row)
            for (tid, _), row in self._recurrings.items()
            if tid == tenant_id and (include_deleted or not row["is_deleted"])
        ]
        return sorted(records, key=lambda r: (r.next_occurrence_date or date.max, r.name))

    async def find_due_recurrings(self, tenant_id: str, as_of: date) -> list[Recurring]:
        records = await self.list_recurrings(tenant_id)
        return [
            record
            for record in records
            if record.is_active
            and record.next_occurrence_date is not None
            and record.next_occurrence_date <= as_of
        ]


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit log kept in a list."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        matching = [e for e in self._events if e.correlation_id == correlation_id]
        return sorted(matching, key=lambda e: e.timestamp)

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        matching = [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        return sorted(matching, key=lambda e: e.timestamp)

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        return sorted(self._events, key=lambda e: e.timestamp, reverse=True)[:limit]
