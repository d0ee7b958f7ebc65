from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from mancy.app.db.base import Base


class InteractionRecord(Base):
    """One answered message, kept for context summaries and statistics."""

    __tablename__ = "interactions"
    __table_args__ = (
        UniqueConstraint("principal_id", "message_hash", name="uq_interactions_principal_message"),
        Index("idx_interactions_principal_timestamp", "principal_id", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    principal_id: Mapped[str] = mapped_column(String(64))
    guild_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    message_hash: Mapped[str] = mapped_column(String(64))
    user_message: Mapped[str] = mapped_column(Text)
    bot_response: Mapped[str] = mapped_column(Text)
    model_used: Mapped[str] = mapped_column(String(100))
    response_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    has_external_info: Mapped[bool] = mapped_column(Boolean, default=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class UserStats(Base):
    __tablename__ = "user_stats"

    principal_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total_interactions: Mapped[int] = mapped_column(Integer, default=0)
    last_interaction: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class ApiCacheEntry(Base):
    """Durable mirror of cached lookup results (JSON-encoded)."""

    __tablename__ = "api_cache"
    __table_args__ = (
        Index("idx_api_cache_expires", "expires_at"),
    )

    key_hash: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[str] = mapped_column(Text)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
