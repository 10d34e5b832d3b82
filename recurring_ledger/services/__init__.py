"""Services package."""

from recurring_ledger.services.storage import (
    AuditStorageInterface,
    ConcurrencyError,
    InMemoryAuditStorage,
    InMemoryLedgerStore,
    LedgerStoreInterface,
    NotFoundError,
    StorageError,
    StoreConnectionError,
)

__all__ = [
    # Storage services
    "AuditStorageInterface",
    "ConcurrencyError",
    "InMemoryAuditStorage",
    "InMemoryLedgerStore",
    "LedgerStoreInterface",
    "NotFoundError",
    "StorageError",
    "StoreConnectionError",
]
