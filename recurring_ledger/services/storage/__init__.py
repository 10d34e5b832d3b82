"""
Storage Services Package

Provides abstract interfaces and the in-memory implementation.
A database-backed store only needs to implement LedgerStoreInterface.
"""

from recurring_ledger.services.storage.interface import (
    AuditStorageInterface,
    ConcurrencyError,
    LedgerStoreInterface,
    NotFoundError,
    StorageError,
    StoreConnectionError,
)
from recurring_ledger.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryLedgerStore,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LedgerStoreInterface",
    # Exceptions
    "ConcurrencyError",
    "NotFoundError",
    "StorageError",
    "StoreConnectionError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryLedgerStore",
]
