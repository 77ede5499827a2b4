from __future__ import annotations

import os

# Keep the module-level API wiring from writing a log file into the cwd
os.environ.setdefault("CREDIT_LEDGER_LOG_PATH", "")

from datetime import datetime, timedelta, timezone

import pytest

from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.db.store import BalanceStore
from credit_ledger.logging.transaction_log import TransactionLog
from credit_ledger.services.credit_service import CreditService
from credit_ledger.services.subscription_service import InMemoryTierProvider


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db():
    return InMemoryDBManager()


@pytest.fixture
def transaction_log(db, tmp_path):
    return TransactionLog(db=db, file_path=tmp_path / "transactions.log")


@pytest.fixture
def store(db, transaction_log):
    return BalanceStore(db, transaction_log, max_attempts=50, wait_multiplier=0, max_wait=0)


@pytest.fixture
def tiers():
    return InMemoryTierProvider()


@pytest.fixture
def service(store, transaction_log, tiers, clock):
    return CreditService(
        store=store, transaction_log=transaction_log, tier_provider=tiers, clock=clock
    )
