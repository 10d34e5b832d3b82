"""
Per-record locks.

The engine assumes a single writer per recurring record for the duration of
one execution. Everything that executes a record (the lifecycle service and
the auto-apply runner) takes the record's lock from a shared registry, so an
interactive retry can never race an unattended run of the same id.
"""

import asyncio
from collections import defaultdict


class RecordLockRegistry:
    """Hands out one asyncio.Lock per (tenant, recurring id)."""

    def __init__(self):
        self._locks: defaultdict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock_for(self, tenant_id: str, recurring_id: str) -> asyncio.Lock:
        return self._locks[(tenant_id, recurring_id)]

    def is_locked(self, tenant_id: str, recurring_id: str) -> bool:
        key = (tenant_id, recurring_id)
        return key in self._locks and self._locks[key].locked()
