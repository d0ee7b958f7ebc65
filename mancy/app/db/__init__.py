"""Database package for Mancy.

This package provides:
- Database models (InteractionRecord, UserStats, ApiCacheEntry)
- Asynchronous engine and session management
- CRUD operations for all models
"""

from mancy.app.db.base import Base
from mancy.app.db.models import ApiCacheEntry, InteractionRecord, UserStats
from mancy.app.db.async_session import (
    close_async_engine,
    create_engine_for,
    get_async_session_maker,
    init_async_db,
    ping,
    session_scope,
)

__all__ = [
    # Base
    "Base",
    # Models
    "ApiCacheEntry",
    "InteractionRecord",
    "UserStats",
    # Session
    "close_async_engine",
    "create_engine_for",
    "get_async_session_maker",
    "init_async_db",
    "ping",
    "session_scope",
]
