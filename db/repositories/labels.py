"""Label history repository."""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import LabelHistory

logger = logging.getLogger(__name__)


async def add_history(
    session: AsyncSession,
    conversation_id: UUID,
    label: str,
    *,
    previous_label: Optional[str],
    set_by: str,
    actor_kind: str,
    reason: Optional[str] = None,
) -> LabelHistory:
    entry = LabelHistory(
        conversation_id=conversation_id,
        label=label,
        previous_label=previous_label,
        set_by=set_by,
        actor_kind=actor_kind,
        reason=reason,
    )
    session.add(entry)
    await session.flush()
    return entry


async def history(session: AsyncSession, conversation_id: UUID, limit: int = 20) -> list[LabelHistory]:
    result = await session.execute(
        select(LabelHistory)
        .where(LabelHistory.conversation_id == conversation_id)
        .order_by(LabelHistory.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
