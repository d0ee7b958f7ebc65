"""Async database session management for SQLAlchemy 2.0+.

Defaults to SQLite through aiosqlite; any async SQLAlchemy URL works.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from mancy.app.core.logging import get_logger

logger = get_logger(__name__)


def _ensure_sqlite_directory(url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    database = make_url(url).database
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)


def create_engine_for(url: str) -> AsyncEngine:
    """Create an async engine for the given database URL.

    Args:
        url: SQLAlchemy async URL (e.g. ``sqlite+aiosqlite:///./data/mancy.db``)

    Returns:
        AsyncEngine instance
    """
    if "sqlite" in url.lower():
        _ensure_sqlite_directory(url)
        engine = create_async_engine(url, echo=False, future=True)
        logger.info("Created SQLite async engine")
    else:
        engine = create_async_engine(
            url,
            echo=False,
            future=True,
            pool_pre_ping=True,
        )
        logger.info(f"Created async engine for {make_url(url).get_backend_name()}")
    return engine


def get_async_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session maker bound to ``engine``."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Async context manager for database sessions.

    Usage:
        async with session_scope(maker) as session:
            result = await session.execute(...)
    """
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_async_db(engine: AsyncEngine) -> None:
    """Create all tables. Call during application startup."""
    from mancy.app.db import models  # noqa: F401 - registers the tables
    from mancy.app.db.base import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ping(engine: AsyncEngine) -> bool:
    """Return True if the database answers a trivial query."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database ping failed: {e}")
        return False


async def close_async_engine(engine: AsyncEngine) -> None:
    """Dispose the engine. Call this on application shutdown."""
    try:
        await engine.dispose()
        logger.debug("Async engine disposed successfully")
    except RuntimeError:
        # Event loop mismatch; the connections are already gone
        logger.debug("Engine dispose encountered RuntimeError (event loop mismatch)")
