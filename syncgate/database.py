"""
Database engine and session plumbing.

PostgreSQL (asyncpg) in production. The queue claim relies on row-level
UPDATE ... WHERE compare-and-set, so any SQLAlchemy async dialect works;
the test suite runs against aiosqlite.

Sessions are created with expire_on_commit=False: workers commit a claim
and keep reading the claimed item afterwards.
"""
import logging
from typing import AsyncGenerator
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker | None = None


class Base(DeclarativeBase):
    """Declarative base shared by every syncgate table."""


def _engine_options(database_url: str) -> dict:
    from syncgate.config import get_settings
    settings = get_settings()

    if make_url(database_url).get_backend_name() == "sqlite":
        # SQLite uses a static/null pool; sizing arguments are rejected.
        return {}
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
    }


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        from syncgate.config import get_settings
        url = get_settings().database_url
        _engine = create_async_engine(url, **_engine_options(url))
        logger.info("Database engine created (%s)", make_url(url).get_backend_name())
    return _engine


def async_session_factory() -> AsyncSession:
    """Open a session outside a request, for workers and startup hooks."""
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _sessionmaker()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency. Commits whatever the handler left pending and rolls
    back if the handler raised.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def dispose_engine() -> None:
    """Drop pooled connections at shutdown."""
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _sessionmaker = None
