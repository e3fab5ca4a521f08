"""
Shared fixtures: a file-backed SQLite ledger per test, a controllable
clock, funded players and a standard-room engine driven by hand.
"""

import random
from decimal import Decimal

import pytest

from db import LedgerStore
from engine import CrashEngine
from schemas import Role
from settings import IDLE_DURATION_SEC


class FakeClock:
    """Injectable time source; only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture
async def store(database_url):
    ledger = LedgerStore(database_url)
    await ledger.init()
    yield ledger
    await ledger.close()


@pytest.fixture
async def player(store):
    account = await store.create_account("254700000001", balance=Decimal("10000"))
    return account.identity


@pytest.fixture
async def second_player(store):
    account = await store.create_account("254700000002", balance=Decimal("10000"))
    return account.identity


@pytest.fixture
async def operator(store):
    account = await store.create_account("ops", role=Role.ADMIN)
    return account.identity


@pytest.fixture
async def engine(store, clock):
    table = CrashEngine(store, "standard", clock=clock, rng=random.Random(7))
    await table.initialize()
    return table


@pytest.fixture
async def demo_engine(store, clock):
    table = CrashEngine(store, "standard", demo=True, clock=clock, rng=random.Random(11))
    await table.initialize()
    return table


@pytest.fixture
def fly(clock):
    """Stage a crash value (optional) and run the idle countdown out."""

    async def _fly(table, crash_at=None):
        if crash_at is not None:
            table.set_next_crash_override(crash_at)
        clock.advance(IDLE_DURATION_SEC)
        return await table.tick()

    return _fly
