"""Bounded TTL cache with negative caching and an optional durable mirror.

Two independent instances are used by the service: one for knowledge-lookup
results and one for generated response text.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from mancy.app.core.logging import get_logger
from mancy.app.core.utils import Clock, default_clock, digest, normalize_key_text

if TYPE_CHECKING:
    from mancy.app.services.durable_store import DurableStore

logger = get_logger(__name__)


class _Absent:
    """Sentinel type for "no entry", distinct from a cached ``None``."""

    _instance: "_Absent | None" = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = _Absent()


@dataclass
class _CacheEntry:
    """Internal cache entry with TTL tracking."""

    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        """An entry is visible only while now < expires_at."""
        return now >= self.expires_at


def make_key(prefix: str, *parts: Any, scope: str | None = None) -> str:
    """Build a cache key from a semantic key.

    The parts are case-folded and whitespace-collapsed before hashing so
    that "Qué es  X" and "qué es x" land on the same entry. ``scope`` gets
    its own hashed key segment so entries belonging to one principal can be
    purged with ``scope_prefix`` without knowing the original queries.

    Examples:
        >>> make_key("wiki", "es", "Fotosíntesis") == make_key("wiki", "ES", " fotosíntesis ")
        True
    """
    semantic = "\x1f".join(normalize_key_text(str(p)) for p in parts)
    if scope is not None:
        return f"{scope_prefix(prefix, scope)}{digest(semantic)}"
    return f"{prefix}:{digest(semantic)}"


def scope_prefix(prefix: str, scope: str) -> str:
    """Key prefix shared by every ``make_key(prefix, ..., scope=scope)``.

    The scope is hashed, so no scope can be a textual prefix of another.
    """
    return f"{prefix}:{digest(scope)}:"


class TTLCache:
    """In-memory expiring key/value store with a fixed capacity.

    - ``get`` returns the cached value, ``None`` for a negative entry, or
      ``ABSENT`` when nothing usable is stored.
    - When full, inserting a new key evicts the oldest inserted entry (FIFO).
    - Expired entries are dropped lazily on ``get`` and in bulk by ``cleanup``.
    - With a durable store attached, misses fall through to it and hits are
      copied back into memory. Positive values may be persisted; negative
      entries stay in memory only.
    """

    def __init__(
        self,
        name: str,
        default_ttl: float,
        max_entries: int = 1000,
        durable: DurableStore | None = None,
        clock: Clock = default_clock,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.name = name
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._durable = durable
        self._clock = clock
        self._data: dict[str, _CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._data)

    @property
    def durable(self) -> DurableStore | None:
        return self._durable

    @durable.setter
    def durable(self, store: DurableStore | None) -> None:
        self._durable = store

    async def get(self, key: str, use_durable: bool = True) -> Any:
        """Look up a key in memory, then in the durable store."""
        async with self._lock:
            entry = self._data.get(key)
            if entry is not None:
                if entry.is_expired(self._clock()):
                    del self._data[key]
                else:
                    self._hits += 1
                    return entry.value

        if use_durable and self._durable is not None:
            try:
                stored = await self._durable.get(key)
            except Exception as e:
                logger.warning(f"Durable cache get failed for {self.name}: {e}")
                stored = None
            if stored is not None:
                # The copy never outlives the durable row.
                ttl = self.default_ttl if stored.ttl is None else min(stored.ttl, self.default_ttl)
                if ttl > 0:
                    async with self._lock:
                        self._insert(key, stored.value, ttl)
                        self._hits += 1
                    return stored.value

        self._misses += 1
        return ABSENT

    async def set(
        self,
        key: str,
        value: Any,
        ttl: float | None = None,
        persist: bool = False,
    ) -> None:
        """Store a value (``None`` records a negative result)."""
        ttl = self.default_ttl if ttl is None else ttl
        async with self._lock:
            self._insert(key, value, ttl)

        if persist and value is not None and self._durable is not None:
            try:
                await self._durable.set(key, value, ttl)
            except Exception as e:
                logger.warning(f"Durable cache set failed for {self.name}: {e}")

    def _insert(self, key: str, value: Any, ttl: float) -> None:
        # Re-inserting a key moves it to the back of the eviction queue.
        self._data.pop(key, None)
        while len(self._data) >= self.max_entries:
            oldest = next(iter(self._data))
            del self._data[oldest]
            self._evictions += 1
        self._data[key] = _CacheEntry(value=value, expires_at=self._clock() + ttl)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def delete_matching(self, predicate: Callable[[str], bool]) -> int:
        """Remove every key for which ``predicate`` is true.

        Returns:
            Number of entries removed.
        """
        async with self._lock:
            doomed = [key for key in self._data if predicate(key)]
            for key in doomed:
                del self._data[key]
            return len(doomed)

    async def cleanup(self) -> int:
        """Remove all expired entries.

        Returns:
            Number of entries removed.
        """
        async with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._data.items() if entry.is_expired(now)]
            for key in expired:
                del self._data[key]
        if expired:
            logger.debug(f"Cache {self.name} cleaned", extra={"deleted": len(expired)})
        return len(expired)

    async def clear(self) -> None:
        async with self._lock:
            self._data.clear()

    def get_stats(self) -> dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "name": self.name,
            "size": len(self._data),
            "max_entries": self.max_entries,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
            "durable": type(self._durable).__name__ if self._durable else None,
        }
