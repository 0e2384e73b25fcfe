# Set environment variables before the app reads its settings
import os

os.environ["TESTING"] = "True"
os.environ["MATCHMAKING_PERIODIC"] = "False"
os.environ.setdefault("LOG_FILE", "logs/test.log")

from contextlib import asynccontextmanager
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from src.config import logger
from src.db.main import get_session, get_session_factory
from src.main import app
from src.matchmaking.queue import MatchmakingQueue
from src.matchmaking.schemas.queue import MatchmakingConfig
from src.matchmaking.service import get_matchmaking_queue, reset_matchmaking_queue

# Use an in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite+aiosqlite://"


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def matchmaking_config():
    return MatchmakingConfig(
        wpm_range=15,
        min_players=2,
        max_players=4,
        expand_after_ms=10000,
        expand_step=10,
        max_wpm_range=50,
    )


@pytest.fixture
def queue(matchmaking_config, clock):
    q = MatchmakingQueue(matchmaking_config, clock=clock)
    yield q
    q.stop_periodic_matching()
    q.clear()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(SQLALCHEMY_DATABASE_URL, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


# Create test client
@pytest.fixture
def client(queue):
    async def override_get_session():
        yield MagicMock()

    @asynccontextmanager
    async def fake_session_factory():
        yield MagicMock()

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: fake_session_factory
    app.dependency_overrides[get_matchmaking_queue] = lambda: queue

    with TestClient(app) as test_client:
        yield test_client

    # Remove the override after the test
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_global_queue():
    yield
    reset_matchmaking_queue()


# Disable logging during tests
@pytest.fixture(autouse=True)
def disable_logging():
    logger.disabled = True
    yield
    logger.disabled = False
