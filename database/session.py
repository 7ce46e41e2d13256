"""
Async engine and session scope for the action queue table.

  postgresql:// | postgres://  → postgresql+asyncpg://   (asyncpg)
  sqlite://                    → sqlite+aiosqlite://     (aiosqlite)

Several scanner processes may share one SQLite file, so SQLite
connections run in WAL mode with a busy timeout; conditional updates
then wait for the writer lock instead of failing.

Usage:
    await init_db()
    async with get_session() as db:
        await db.execute(...)
    await close_db()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

SQLITE_BUSY_TIMEOUT_MS = 5000

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    """Map a plain database URL onto its async driver."""
    for prefix, async_prefix in (
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),
        ("sqlite://", "sqlite+aiosqlite://"),
    ):
        if db_url.startswith(prefix):
            return async_prefix + db_url[len(prefix):]
    return db_url


def _display_url(engine: AsyncEngine) -> str:
    url = str(engine.url)
    return url.split("@")[-1] if "@" in url else url


def _sqlite_pragmas(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def _build_engine(db_url: str) -> AsyncEngine:
    debug = get_settings().debug
    if db_url.startswith("sqlite"):
        engine = create_async_engine(db_url, echo=debug)
        event.listen(engine.sync_engine, "connect", _sqlite_pragmas)
        return engine
    # The scanner is sequential; a small pool covers it plus the API
    return create_async_engine(
        db_url,
        echo=debug,
        pool_size=5,
        max_overflow=5,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
    )


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = _build_engine(_to_async_url(get_settings().database.url))
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name,
                    url=_display_url(_engine))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction: commit on success, roll back on any error."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create the queue table and its indexes if missing."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables.keys()))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database_closed", url=_display_url(_engine))
    _engine = None
    _session_factory = None


async def use_database(db_url: str) -> None:
    """Repoint the engine at another database (scripts, tests)."""
    await close_db()
    get_settings().database.url = db_url
    await init_db()
