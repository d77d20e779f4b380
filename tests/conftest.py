"""
Test configuration and fixtures.
Uses a file-backed SQLite database per test so worker code can open its own
sessions against the same data. Redis is unavailable by default; every
caller must degrade gracefully.
"""
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

from syncgate.database import Base
import syncgate.models  # noqa: F401 - registers all tables

TEST_SECRETS = {
    "SHOPIFY_WEBHOOK_SECRET": "shopify_test_secret",
    "KAJABI_WEBHOOK_SECRET": "kajabi_test_secret",
    "FACEBOOK_WEBHOOK_SECRET": "meta_test_secret",
    "TWITTER_WEBHOOK_SECRET": "twitter_test_secret",
    "CLICKUP_WEBHOOK_SECRET": "clickup_test_secret",
    "N8N_BEARER_TOKEN": "n8n_test_token",
    "ADMIN_API_TOKEN": "admin_test_token",
}


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Deterministic settings; caches that depend on them are reset per test."""
    from syncgate.config import get_settings
    from syncgate.services import dispatch_router, source_registry

    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    for key, value in TEST_SECRETS.items():
        monkeypatch.setenv(key, value)

    get_settings.cache_clear()
    source_registry.set_registry(None)
    dispatch_router._default_table = None
    yield get_settings()
    get_settings.cache_clear()
    source_registry.set_registry(None)
    dispatch_router._default_table = None


@pytest.fixture(autouse=True)
def redis_unavailable():
    """Redis is down unless a test installs its own mock."""
    from syncgate.utils import alerting

    alerting._local_cooldowns.clear()
    with patch(
        "syncgate.utils.redis_client.get_redis",
        new=AsyncMock(side_effect=ConnectionError("redis unavailable in tests")),
    ) as mock:
        yield mock
    alerting._local_cooldowns.clear()


@pytest.fixture
def mock_redis(redis_unavailable):
    """A working Redis mock."""
    redis_mock = AsyncMock()
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.get = AsyncMock(return_value=None)
    redis_mock.ping = AsyncMock(return_value=True)
    redis_mock.lpush = AsyncMock(return_value=1)
    redis_mock.brpop = AsyncMock(return_value=None)
    redis_mock.zrange = AsyncMock(return_value=[])
    redis_unavailable.side_effect = None
    redis_unavailable.return_value = redis_mock
    return redis_mock


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite database, fresh per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'syncgate_test.db'}",
        connect_args={"timeout": 30},  # concurrent writers wait on the file lock
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session

