"""Durable storage behind the in-memory caches.

Two capabilities, both optional for the service to run:

- ``DurableStore``: JSON key/value mirror with expiry, used as an L2 cache
- ``InteractionHistory``: answered messages and per-user statistics, used
  for context summaries

``SQLDurableStore`` provides both on SQLAlchemy async. ``RedisDurableStore``
provides the key/value mirror only.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from mancy.app.core.logging import get_logger
from mancy.app.core.utils import digest
from mancy.app.db import crud
from mancy.app.db.async_session import (
    close_async_engine,
    get_async_session_maker,
    init_async_db,
    ping,
    session_scope,
)

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Interaction:
    """An answered message as handed to and returned from history storage."""
    principal_id: str
    user_message: str
    bot_response: str
    model_used: str
    response_time_ms: int = 0
    has_external_info: bool = False
    guild_id: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def message_hash(self) -> str:
        return digest(self.user_message)


@dataclass
class StoredValue:
    """A durable hit and the seconds it has left, if the store knows."""
    value: Any
    ttl: Optional[float] = None


class DurableStore(ABC):
    """Abstract base class for durable key/value mirrors.

    Values must be JSON-serializable.
    """

    @abstractmethod
    async def get(self, key: str) -> StoredValue | None:
        """Return the stored value with its remaining lifetime, or None if missing or expired."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float) -> None:
        """Store a value for ``ttl`` seconds."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def delete_expired(self) -> int:
        """Remove expired entries and return how many were removed."""
        pass

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class InteractionHistory(ABC):
    """Abstract base class for interaction history storage."""

    @abstractmethod
    async def save_interaction(self, interaction: Interaction) -> None:
        pass

    @abstractmethod
    async def recent_interactions(self, principal_id: str, limit: int = 3) -> List[Interaction]:
        """Most recent interactions of a principal, newest first."""
        pass

    @abstractmethod
    async def get_user_stats(self, principal_id: str) -> dict | None:
        pass


class SQLDurableStore(DurableStore, InteractionHistory):
    """SQLAlchemy-backed cache mirror and interaction history.

    Example:
        >>> store = SQLDurableStore.from_engine(create_engine_for(url))
        >>> await store.init()
        >>> await store.set("wiki:abc", [{"title": "X"}], ttl=900)
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_maker = session_maker
        self._engine = engine
        self.initialized = False

    @classmethod
    def from_engine(cls, engine: AsyncEngine) -> "SQLDurableStore":
        return cls(get_async_session_maker(engine), engine=engine)

    async def init(self) -> None:
        """Create tables if the store owns its engine."""
        if self._engine is not None:
            await init_async_db(self._engine)
        self.initialized = True
        logger.info("SQL durable store initialized")

    async def get(self, key: str) -> StoredValue | None:
        now = _utcnow()
        async with session_scope(self._session_maker) as session:
            entry = await crud.get_cache_entry(session, key, now)
        if entry is None:
            return None
        expires_at = entry.expires_at
        # SQLite hands timestamps back without their offset.
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return StoredValue(json.loads(entry.data), ttl=(expires_at - now).total_seconds())

    async def set(self, key: str, value: Any, ttl: float) -> None:
        expires_at = _utcnow() + timedelta(seconds=ttl)
        data = json.dumps(value, ensure_ascii=False)
        async with session_scope(self._session_maker) as session:
            await crud.upsert_cache_entry(session, key, data, expires_at)

    async def delete(self, key: str) -> None:
        async with session_scope(self._session_maker) as session:
            await crud.delete_cache_entry(session, key)

    async def delete_expired(self) -> int:
        async with session_scope(self._session_maker) as session:
            deleted = await crud.delete_expired_cache_entries(session, _utcnow())
        if deleted:
            logger.debug("Expired durable cache rows deleted", extra={"deleted": deleted})
        return deleted

    async def save_interaction(self, interaction: Interaction) -> None:
        async with session_scope(self._session_maker) as session:
            await crud.save_interaction(
                session,
                principal_id=interaction.principal_id,
                message_hash=interaction.message_hash,
                user_message=interaction.user_message,
                bot_response=interaction.bot_response,
                model_used=interaction.model_used,
                response_time_ms=interaction.response_time_ms,
                has_external_info=interaction.has_external_info,
                guild_id=interaction.guild_id,
                timestamp=interaction.timestamp,
            )

    async def recent_interactions(self, principal_id: str, limit: int = 3) -> List[Interaction]:
        async with session_scope(self._session_maker) as session:
            rows = await crud.get_recent_interactions(session, principal_id, limit)
        return [
            Interaction(
                principal_id=row.principal_id,
                user_message=row.user_message,
                bot_response=row.bot_response,
                model_used=row.model_used,
                response_time_ms=row.response_time_ms,
                has_external_info=row.has_external_info,
                guild_id=row.guild_id,
                timestamp=row.timestamp,
            )
            for row in rows
        ]

    async def get_user_stats(self, principal_id: str) -> dict | None:
        async with session_scope(self._session_maker) as session:
            stats = await crud.get_user_stats(session, principal_id)
        if stats is None:
            return None
        return {
            "principal_id": stats.principal_id,
            "total_interactions": stats.total_interactions,
            "last_interaction": stats.last_interaction.isoformat(),
        }

    async def count_interactions(self) -> int:
        async with session_scope(self._session_maker) as session:
            return await crud.count_interactions(session)

    async def health_check(self) -> bool:
        if self._engine is None:
            return self.initialized
        return await ping(self._engine)

    async def close(self) -> None:
        if self._engine is not None:
            await close_async_engine(self._engine)


class RedisDurableStore(DurableStore):
    """Redis-backed cache mirror. Redis expires keys itself.

    Example:
        >>> store = RedisDurableStore("redis://localhost:6379/0")
        >>> await store.set("wiki:abc", [{"title": "X"}], ttl=900)
    """

    def __init__(self, redis_url: str, client: Any = None) -> None:
        self._redis_url = redis_url
        self._redis = client
        self._client_factory = aioredis.from_url

    async def _get_client(self) -> Any:
        if self._redis is None:
            self._redis = self._client_factory(self._redis_url, decode_responses=True)
        return self._redis

    async def get(self, key: str) -> StoredValue | None:
        client = await self._get_client()
        raw = await client.get(key)
        if raw is None:
            return None
        # -2: expired since the GET, -1: no expiry set.
        remaining_ms = await client.pttl(key)
        if remaining_ms == -2:
            return None
        ttl = remaining_ms / 1000 if remaining_ms >= 0 else None
        return StoredValue(json.loads(raw), ttl=ttl)

    async def set(self, key: str, value: Any, ttl: float) -> None:
        client = await self._get_client()
        await client.setex(key, max(1, int(ttl)), json.dumps(value, ensure_ascii=False))

    async def delete(self, key: str) -> None:
        client = await self._get_client()
        await client.delete(key)

    async def delete_expired(self) -> int:
        return 0

    async def health_check(self) -> bool:
        try:
            client = await self._get_client()
            return bool(await client.ping())
        except Exception as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
