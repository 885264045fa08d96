"""Global pytest fixtures for the roster engine.

This module provides shared fixtures for testing including:
- Settings isolated from the developer's environment
- A file-backed SQLite database with the full schema
- Mock Redis and an in-memory notification sink
- Service objects wired the way the application wires them
"""

from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from roster.config import get_settings
from roster.database import make_session_factory
from roster.locks import WorkspaceLocks
from roster.models import Base
from roster.services.activity_aggregator import ActivityAggregator
from roster.services.permission_cache import PermissionCache

from tests.factories.membership_factory import FakeMembershipSource

CRON_SECRET = "test-cron-secret"
SERVICE_KEY = "test-service-key"


# ===========================================
# SETTINGS
# ===========================================


@pytest.fixture(autouse=True)
def roster_settings(monkeypatch):
    """Pin settings so tests never depend on ROSTER_* variables of the host."""
    monkeypatch.setenv("ROSTER_DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("ROSTER_CRON_SECRET", CRON_SECRET)
    monkeypatch.setenv("ROSTER_SERVICE_KEY", SERVICE_KEY)
    monkeypatch.setenv("ROSTER_SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("ROSTER_LOG_FORMAT", "console")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


# ===========================================
# DATABASE FIXTURES
# ===========================================


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database per test with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'roster.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for seeding and assertions. Commit before calling services."""
    async with session_factory() as session:
        yield session


# ===========================================
# REDIS MOCK FIXTURES
# ===========================================


@pytest.fixture
def mock_redis_client() -> MagicMock:
    """Create a mock Redis client for unit tests."""
    redis = MagicMock()
    redis.publish = AsyncMock(return_value=1)
    redis.ping = AsyncMock(return_value=True)
    redis.close = AsyncMock()

    lock = MagicMock()
    lock.acquire = AsyncMock(return_value=True)
    lock.release = AsyncMock()
    redis.lock = MagicMock(return_value=lock)
    return redis


# ===========================================
# SERVICE FIXTURES
# ===========================================


class RecordingSink:
    """Notification sink that keeps every event in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, int, dict[str, Any]]] = []

    def emit(self, event_type: str, workspace_id: int, payload: dict[str, Any]) -> None:
        self.events.append((event_type, workspace_id, payload))

    def of_type(self, event_type: str) -> list[tuple[str, int, dict[str, Any]]]:
        return [e for e in self.events if e[0] == event_type]


@pytest.fixture
def notifier() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def permission_cache() -> PermissionCache:
    return PermissionCache(ttl_seconds=30)


@pytest.fixture
def locks() -> WorkspaceLocks:
    return WorkspaceLocks()


@pytest.fixture
def membership_source() -> FakeMembershipSource:
    return FakeMembershipSource()


@pytest.fixture
def aggregator(session_factory) -> ActivityAggregator:
    return ActivityAggregator(session_factory)


# ===========================================
# TIME FIXTURES
# ===========================================


@pytest.fixture
def now() -> datetime:
    """A fixed Wednesday used as "now" by time-sensitive tests."""
    return datetime(2026, 3, 18, 12, 0, tzinfo=timezone.utc)
