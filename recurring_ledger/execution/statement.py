"""
Statement Balance Resolver

Works out how much is owed on a liability (credit card) account.

- Balances are signed, so only a negative balance is owed. A card at zero
  or in credit owes nothing.
- No billing-cycle anchor configured: the owed amount is abs(min(balance, 0)).
- Anchor configured: the statement covers the last closed cycle window
  [start, end). Amount = abs(min(balance before start + sum of entries in
  window, 0)).

Read-only: never mutates the store. Reads are retried on transient
connection errors, the same way the storage client retries its API calls.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from recurring_ledger.models.recurring import Account
from recurring_ledger.scheduling.interval import billing_cycle_window
from recurring_ledger.services.storage.interface import (
    LedgerStoreInterface,
    StoreConnectionError,
)


logger = structlog.get_logger(__name__)


def _owed(balance: Decimal) -> Decimal:
    return abs(min(balance, Decimal("0")))


class StatementBalanceResolver:
    """Computes statement balances through the ledger store."""

    def __init__(
        self,
        store: LedgerStoreInterface,
        max_attempts: int = 3,
        wait=None,
    ):
        """
        Args:
            store: Ledger store to read from
            max_attempts: Attempts per read before giving up
            wait: tenacity wait strategy (exponential 2-10s by default)
        """
        self._store = store
        self._max_attempts = max_attempts
        self._wait = wait or wait_exponential(multiplier=1, min=2, max=10)

    async def _call(self, fn, *args):
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(StoreConnectionError),
            stop=stop_after_attempt(self._max_attempts),
            wait=self._wait,
            reraise=True,
        ):
            with attempt:
                return await fn(*args)

    async def resolve(self, account: Account, as_of: Optional[date] = None) -> Decimal:
        """
        Amount owed on `account` as of `as_of` (defaults to today).

        Raises:
            StoreConnectionError: If the store stays unreachable after retries
        """
        as_of = as_of or date.today()

        if account.statement_day is None:
            return _owed(account.balance)

        start, end = billing_cycle_window(account.statement_day, as_of)
        opening = await self._call(
            self._store.balance_at_date,
            account.tenant_id,
            account.id,
            start - timedelta(days=1),
        )
        entries = await self._call(
            self._store.entries_in_range,
            account.tenant_id,
            account.id,
            start,
            end,
        )
        movement = sum((entry.amount for entry in entries), Decimal("0"))
        statement = _owed(opening + movement)

        logger.debug(
            "statement_balance_resolved",
            account_id=account.id,
            window_start=start.isoformat(),
            window_end=end.isoformat(),
            opening=str(opening),
            movement=str(movement),
            statement=str(statement),
        )
        return statement
