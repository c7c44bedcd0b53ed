"""Pytest configuration and fixtures."""

import asyncio
import os
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["SWAP_STORE"] = "memory"
os.environ["AUTO_WATCH"] = "false"
os.environ["LIGHTNING_BACKEND"] = "dryrun"
os.environ["SETTLEMENT_BACKEND"] = "dryrun"
os.environ["DEBUG"] = "true"

from lnbridge.config import Settings
from lnbridge.ledger.models import Base
from lnbridge.ledger.repository import SqlSwapStore
from lnbridge.providers.dryrun import DryRunLightningBackend, DryRunSettlementBackend
from lnbridge.swap.driver import SwapLifecycleDriver
from lnbridge.swap.models import utcnow
from lnbridge.swap.store import InMemorySwapStore
from lnbridge.utils.locks import clear_swap_locks

RECIPIENT = "0x04a1b2c3d4e5f6"
# 940u = 94000 sats, the output of a 100000-sat Starknet -> Lightning swap
PAYOUT_INVOICE = "lntb940u1pjexamplepayoutinvoice"
DEPOSIT_ADDRESS = "0x05e1f0c0ffee"

TOKENS = {"alice-token": "alice", "bob-token": "bob"}


class FakeClock:
    """Controllable clock for expiry tests."""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    """Sleep replacement that records requested delays without waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def make_settings(**overrides) -> Settings:
    values = {
        "environment": "test",
        "auto_watch": False,
        "retry_delay_seconds": 0.0,
        "settlement_deposit_address": DEPOSIT_ADDRESS,
        "auth_tokens": ",".join(f"{token}:{user}" for token, user in TOKENS.items()),
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def fund_debit(
    settlement: DryRunSettlementBackend,
    tx_hash: str,
    amount: int = 100000,
    token: str = "WBTC",
    recipient: str = DEPOSIT_ADDRESS,
) -> None:
    """Finalize a user debit paying the service deposit address."""
    settlement.finalize(tx_hash, recipient=recipient, token=token, amount=amount)


@pytest.fixture(autouse=True)
def reset_locks():
    """Start every test with an empty lock registry."""
    clear_swap_locks()
    yield
    clear_swap_locks()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> InMemorySwapStore:
    return InMemorySwapStore()


@pytest.fixture
def lightning() -> DryRunLightningBackend:
    return DryRunLightningBackend(network="testnet")


@pytest.fixture
def settlement() -> DryRunSettlementBackend:
    return DryRunSettlementBackend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def driver(store, lightning, settlement, settings, clock, sleeper) -> SwapLifecycleDriver:
    return SwapLifecycleDriver(
        store, lightning, settlement, settings, clock=clock, sleep=sleeper
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """File-backed SQLite engine (in-memory SQLite is per-connection)."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'swaps.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def sql_store(db_engine) -> SqlSwapStore:
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return SqlSwapStore(session_factory)


@pytest.fixture
def test_app(settings, store, lightning, settlement):
    """Application wired to dry-run collaborators."""
    from lnbridge.api.app import create_app

    return create_app(
        settings=settings,
        lightning=lightning,
        settlement=settlement,
        store=store,
    )


@pytest_asyncio.fixture
async def client(test_app):
    """Create async test client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def auth(user: str = "alice") -> dict:
    token = next(t for t, u in TOKENS.items() if u == user)
    return {"Authorization": f"Bearer {token}"}
