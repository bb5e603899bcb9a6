"""Takeover log repository: one row per activation, closed on release."""
import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import TakeoverLog

logger = logging.getLogger(__name__)


async def add(
    session: AsyncSession,
    conversation_id: UUID,
    reason: str,
    *,
    triggered_by: str = "system",
    triggered_by_user_id: Optional[str] = None,
    reason_detail: Optional[str] = None,
    confidence: Optional[float] = None,
    message_context: Optional[str] = None,
    duration_hours: Optional[float] = None,
) -> TakeoverLog:
    entry = TakeoverLog(
        conversation_id=conversation_id,
        reason=reason,
        reason_detail=reason_detail,
        triggered_by=triggered_by,
        triggered_by_user_id=triggered_by_user_id,
        confidence=confidence,
        message_context=message_context,
        duration_hours=duration_hours,
    )
    session.add(entry)
    await session.flush()
    return entry


async def resolve_open(
    session: AsyncSession,
    conversation_id: UUID,
    resolved_by: Optional[str],
    resolved_at: Optional[datetime] = None,
) -> int:
    """Close every unresolved takeover row of the conversation. Returns the count."""
    result = await session.execute(
        update(TakeoverLog)
        .where(TakeoverLog.conversation_id == conversation_id)
        .where(TakeoverLog.resolved_at.is_(None))
        .values(resolved_at=resolved_at or datetime.now(timezone.utc), resolved_by=resolved_by)
        .returning(TakeoverLog.id)
    )
    await session.flush()
    return len(result.fetchall())


async def history(session: AsyncSession, conversation_id: UUID, limit: int = 10) -> list[TakeoverLog]:
    result = await session.execute(
        select(TakeoverLog)
        .where(TakeoverLog.conversation_id == conversation_id)
        .order_by(TakeoverLog.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
