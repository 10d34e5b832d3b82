"""
Shared fixtures.

Every test gets a fresh in-memory store seeded with a checking account,
a savings account and a credit card for one tenant.
"""

from datetime import date
from decimal import Decimal

import pytest
from tenacity import wait_none

from recurring_ledger.config import AutoApplySettings, EngineSettings
from recurring_ledger.execution import ExecutionEngine, StatementBalanceResolver
from recurring_ledger.models.recurring import (
    Account,
    AccountType,
    CreditCardPaymentRecurring,
    StandardRecurring,
    TransferRecurring,
)
from recurring_ledger.services.storage import InMemoryAuditStorage, InMemoryLedgerStore


TENANT = "tenant-1"
TODAY = date(2024, 3, 15)


@pytest.fixture
def tenant_id():
    return TENANT


@pytest.fixture
def as_of():
    return TODAY


@pytest.fixture
def engine_settings():
    return EngineSettings()


@pytest.fixture
def auto_apply_settings():
    return AutoApplySettings()


@pytest.fixture
def store():
    store = InMemoryLedgerStore()
    store.add_account(Account(
        id="checking",
        tenant_id=TENANT,
        name="Checking",
        balance=Decimal("1000.00"),
    ))
    store.add_account(Account(
        id="savings",
        tenant_id=TENANT,
        name="Savings",
        balance=Decimal("200.00"),
    ))
    store.add_account(Account(
        id="card",
        tenant_id=TENANT,
        name="Visa",
        balance=Decimal("-500.00"),
        account_type=AccountType.LIABILITY,
    ))
    return store


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def engine(store, engine_settings):
    resolver = StatementBalanceResolver(store, wait=wait_none())
    return ExecutionEngine(store, resolver=resolver, settings=engine_settings)


@pytest.fixture
def standard_record():
    return StandardRecurring(
        tenant_id=TENANT,
        name="Rent",
        source_account_id="checking",
        amount=Decimal("100.00"),
        next_occurrence_date=date(2024, 3, 1),
    )


@pytest.fixture
def transfer_record():
    return TransferRecurring(
        tenant_id=TENANT,
        name="Savings top-up",
        source_account_id="checking",
        transfer_account_id="savings",
        amount=Decimal("100.00"),
        next_occurrence_date=date(2024, 3, 10),
    )


@pytest.fixture
def card_record():
    return CreditCardPaymentRecurring(
        tenant_id=TENANT,
        name="Visa payment",
        source_account_id="checking",
        transfer_account_id="card",
        category_id="card",
        next_occurrence_date=date(2024, 3, 10),
    )
