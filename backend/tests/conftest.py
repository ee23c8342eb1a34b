"""Shared test configuration and fixtures."""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import jwt
import pytest
import pytest_asyncio

from contest_engine.core.config import Settings
from contest_engine.core.context import RequestContext
from contest_engine.core.security import AuthenticatedUser
from contest_engine.models.contest import ContestCreate
from contest_engine.services.engine import ContestEngine
from contest_engine.services.quote_providers import StaticQuoteProvider

JWT_SECRET = "test-secret"
START = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

ALICE = AuthenticatedUser(user_id="u-alice", username="alice")
BOB = AuthenticatedUser(user_id="u-bob", username="bob")
CAROL = AuthenticatedUser(user_id="u-carol", username="carol")


class FakeClock:
    """Controllable stand-in for utcnow."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_token(user: AuthenticatedUser, expires_in: timedelta = timedelta(hours=1), **claims) -> str:
    payload = {
        "sub": user.user_id,
        "username": user.username,
        "exp": datetime.now(timezone.utc) + expires_in,
        **claims,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return StaticQuoteProvider({
        "RELIANCE.NS": "500",
        "TCS.NS": "3500",
        "INFY.NS": "1500",
    })


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'contests.db'}",
        ENVIRONMENT="test",
        JWT_SECRET=JWT_SECRET,
        PRICE_PROVIDER="static",
        RATE_LIMIT_ENABLED=False,
        BACKGROUND_TASKS_ENABLED=False,
        REDIS_URL=None,
        LOCK_TIMEOUT_SECONDS=5,
        QUOTE_TIMEOUT_SECONDS=1,
    )


@pytest_asyncio.fixture
async def engine(settings, provider, clock):
    engine = ContestEngine(settings, quote_provider=provider, clock=clock)
    await engine.start(background=False)
    try:
        yield engine
    finally:
        await engine.stop()


@pytest.fixture
def open_ctx(engine):
    """Factory for a RequestContext bound to a fresh session."""

    @asynccontextmanager
    async def _open(user: AuthenticatedUser):
        async with engine.database.session() as session:
            yield RequestContext(user=user, session=session, engine=engine)

    return _open


@pytest.fixture
def make_contest(engine, open_ctx, clock):
    """Create a contest owned by ``user`` (default alice) starting in one hour."""

    async def _make(
        user: AuthenticatedUser = ALICE,
        *,
        budget="100000",
        max_participants: int = 10,
        is_private: bool = False,
        starts_in: timedelta = timedelta(hours=1),
        duration: timedelta = timedelta(hours=6),
        name: str = "Weekly Challenge",
    ):
        start = clock() + starts_in
        data = ContestCreate(
            name=name,
            is_private=is_private,
            start_time=start,
            end_time=start + duration,
            virtual_budget=Decimal(budget),
            max_participants=max_participants,
        )
        async with open_ctx(user) as ctx:
            return await engine.contests.create_contest(ctx, data)

    return _make


@pytest.fixture
def join(engine, open_ctx):
    async def _join(user: AuthenticatedUser, contest_id):
        async with open_ctx(user) as ctx:
            return await engine.contests.join_contest(ctx, contest_id)

    return _join


@pytest.fixture
def trade(engine, open_ctx):
    async def _trade(user: AuthenticatedUser, contest_id, side: str, symbol: str, quantity: int):
        async with open_ctx(user) as ctx:
            return await engine.trades.execute_transaction(ctx, contest_id, symbol, side, quantity)

    return _trade


@pytest.fixture
def portfolio(engine, open_ctx):
    async def _portfolio(user: AuthenticatedUser, contest_id):
        async with open_ctx(user) as ctx:
            return await engine.trades.get_portfolio(ctx, contest_id)

    return _portfolio
