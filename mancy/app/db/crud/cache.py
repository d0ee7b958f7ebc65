"""Durable cache CRUD operations."""

from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from mancy.app.db.models import ApiCacheEntry


async def get_cache_entry(
    session: AsyncSession,
    key_hash: str,
    now: datetime,
) -> Optional[ApiCacheEntry]:
    """Get a cache row that has not expired yet.

    Args:
        session: Database session
        key_hash: Cache key
        now: Current wall-clock time (timezone-aware)

    Returns:
        The row, or None if missing or expired
    """
    result = await session.execute(
        select(ApiCacheEntry)
        .where(ApiCacheEntry.key_hash == key_hash)
        .where(ApiCacheEntry.expires_at > now)
    )
    return result.scalar_one_or_none()


async def upsert_cache_entry(
    session: AsyncSession,
    key_hash: str,
    data: str,
    expires_at: datetime,
    auto_commit: bool = True,
) -> ApiCacheEntry:
    """Insert or replace a cache row."""
    entry = await session.merge(
        ApiCacheEntry(key_hash=key_hash, data=data, expires_at=expires_at)
    )
    if auto_commit:
        await session.commit()
    return entry


async def delete_cache_entry(session: AsyncSession, key_hash: str) -> None:
    await session.execute(delete(ApiCacheEntry).where(ApiCacheEntry.key_hash == key_hash))
    await session.commit()


async def delete_expired_cache_entries(session: AsyncSession, now: datetime) -> int:
    """Delete every expired cache row.

    Returns:
        Number of rows deleted
    """
    result = await session.execute(
        delete(ApiCacheEntry).where(ApiCacheEntry.expires_at <= now)
    )
    await session.commit()
    return result.rowcount or 0
