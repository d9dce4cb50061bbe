"""
Pytest configuration and fixtures for Flywheel Engine tests
"""

import os

# Must be set before config.config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("FLYWHEEL_API_KEY", "test-api-key")
os.environ.setdefault("SENTRY_DSN", "")

import itertools
from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from flywheel.core.enums import AlgorithmMode, LaunchStatus, TradeReason
from flywheel.database import crud
from flywheel.database.models import Base
from flywheel.services.cycle.executor import TradeExecutor, TradeOutcome, TradeRequest
from flywheel.utils.timeutils import utcnow


# Test database URL (in-memory SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

_mints = itertools.count(1)


def new_mint() -> str:
    return f"Mint{next(_mints):040d}"


@pytest.fixture(scope="function")
async def test_db_engine():
    """
    Create test database engine
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(test_db_engine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory bound to the test engine (what services receive)
    """
    return async_sessionmaker(
        test_db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """
    Create test database session
    """
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def make_token(session_maker):
    """
    Factory: registered UserToken with TokenConfig and CycleState

    Extra keyword arguments override TokenConfig columns.
    """

    async def _make(
        mode: AlgorithmMode = AlgorithmMode.SIMPLE,
        owner_id: Optional[str] = "user-1",
        mint: Optional[str] = None,
        **config_values,
    ):
        async with session_maker() as session:
            token = await crud.register_user_token(
                session,
                mint_address=mint or new_mint(),
                dev_wallet_address="DevWallet111",
                dev_wallet_key_encrypted="enc-dev",
                dev_encryption_iv="iv-dev",
                ops_wallet_address="OpsWallet111",
                ops_wallet_key_encrypted="enc-ops",
                ops_encryption_iv="iv-ops",
                owner_id=owner_id,
                token_symbol="FLY",
                token_name="Flywheel Test",
                algorithm_mode=mode,
            )
            if config_values:
                await crud.update_token_config(session, token.id, config_values)
            return token.id

    return _make


@pytest.fixture
def make_launch(session_maker):
    """Factory: PendingLaunch row, completed with a fresh mint by default."""

    async def _make(
        status: LaunchStatus = LaunchStatus.COMPLETED,
        mint: Optional[str] = "auto",
        owner_id: Optional[str] = "user-1",
        symbol: str = "LNCH",
    ):
        async with session_maker() as session:
            launch = await crud.create_pending_launch(
                session,
                token_name=f"{symbol} token",
                token_symbol=symbol,
                dev_wallet_address="DevWallet222",
                dev_wallet_key_encrypted="enc-dev",
                dev_encryption_iv="iv-dev",
                ops_wallet_address="OpsWallet222",
                ops_wallet_key_encrypted="enc-ops",
                ops_encryption_iv="iv-ops",
                owner_id=owner_id,
                status=status,
                token_mint_address=new_mint() if mint == "auto" else mint,
            )
            return launch.id

    return _make


class FakeClock:
    """Controllable UTC clock for scheduler ticks."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeExecutor(TradeExecutor):
    """Records requests and replays scripted outcomes (default: filled)."""

    def __init__(self, outcomes=None):
        self.requests: list[TradeRequest] = []
        self._outcomes = list(outcomes or [])

    def queue(self, *outcomes: TradeOutcome):
        self._outcomes.extend(outcomes)

    async def execute_trade(self, request: TradeRequest) -> TradeOutcome:
        self.requests.append(request)
        if self._outcomes:
            outcome = self._outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return TradeOutcome.filled(amount=1.0, signature=f"sig-{len(self.requests)}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def insufficient_funds():
    return TradeOutcome.failed(TradeReason.INSUFFICIENT_FUNDS, "ops wallet empty")
