"""Message repository: stored chat history."""
import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Message

logger = logging.getLogger(__name__)


async def add(
    session: AsyncSession,
    conversation_id: UUID,
    direction: str,
    text: str,
    *,
    sent_at: Optional[datetime] = None,
    external_message_id: Optional[str] = None,
) -> Message:
    message = Message(
        conversation_id=conversation_id,
        direction=direction,
        text=text or "",
        sent_at=sent_at or datetime.now(timezone.utc),
        external_message_id=external_message_id,
    )
    session.add(message)
    await session.flush()
    return message


async def recent(session: AsyncSession, conversation_id: UUID, limit: int = 20) -> list[Message]:
    """Return the latest `limit` messages in chronological order (oldest first)."""
    result = await session.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.sent_at.desc())
        .limit(limit)
    )
    return list(reversed(result.scalars().all()))


async def outbound_since(session: AsyncSession, conversation_id: UUID, since: datetime) -> list[datetime]:
    """Send times of agent messages at or after `since`, oldest first."""
    result = await session.execute(
        select(Message.sent_at)
        .where(Message.conversation_id == conversation_id)
        .where(Message.direction == "outbound")
        .where(Message.sent_at >= since)
        .order_by(Message.sent_at)
    )
    return [row[0] for row in result.all()]
