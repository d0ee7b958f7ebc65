"""Interaction history and user statistics CRUD operations."""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mancy.app.db.models import InteractionRecord, UserStats


async def save_interaction(
    session: AsyncSession,
    principal_id: str,
    message_hash: str,
    user_message: str,
    bot_response: str,
    model_used: str,
    response_time_ms: int,
    has_external_info: bool,
    guild_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
    auto_commit: bool = True,
) -> InteractionRecord:
    """Save an interaction and update the principal's statistics.

    A repeated ``(principal_id, message_hash)`` replaces the earlier answer
    instead of adding a second row, and is not counted again.

    Args:
        session: Database session
        principal_id: End user the interaction belongs to
        message_hash: Digest of the user message
        user_message: Normalized user text
        bot_response: Final response text
        model_used: Model that produced the response
        response_time_ms: Generation time in milliseconds
        has_external_info: Whether knowledge lookups contributed context
        guild_id: Optional chat-platform server id
        timestamp: Interaction time; defaults to now
        auto_commit: Whether to commit the transaction

    Returns:
        The saved InteractionRecord
    """
    timestamp = timestamp or datetime.now(timezone.utc)

    result = await session.execute(
        select(InteractionRecord)
        .where(InteractionRecord.principal_id == principal_id)
        .where(InteractionRecord.message_hash == message_hash)
    )
    record = result.scalar_one_or_none()
    is_new = record is None
    if is_new:
        record = InteractionRecord(principal_id=principal_id, message_hash=message_hash)
        session.add(record)

    record.guild_id = guild_id
    record.user_message = user_message
    record.bot_response = bot_response
    record.model_used = model_used
    record.response_time_ms = response_time_ms
    record.has_external_info = has_external_info
    record.timestamp = timestamp

    stats = await session.get(UserStats, principal_id)
    if stats is None:
        stats = UserStats(principal_id=principal_id, total_interactions=0)
        session.add(stats)
    if is_new:
        stats.total_interactions = (stats.total_interactions or 0) + 1
    stats.last_interaction = timestamp

    if auto_commit:
        await session.commit()
        await session.refresh(record)
    return record


async def get_recent_interactions(
    session: AsyncSession,
    principal_id: str,
    limit: int = 3,
) -> List[InteractionRecord]:
    """Get the principal's most recent interactions, newest first."""
    result = await session.execute(
        select(InteractionRecord)
        .where(InteractionRecord.principal_id == principal_id)
        .order_by(InteractionRecord.timestamp.desc(), InteractionRecord.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_user_stats(session: AsyncSession, principal_id: str) -> Optional[UserStats]:
    return await session.get(UserStats, principal_id)


async def count_interactions(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(InteractionRecord))
    return result.scalar_one()
