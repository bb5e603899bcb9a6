"""Audit repository: append-only log of engine actions."""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ActionLog

logger = logging.getLogger(__name__)


async def log_action(
    session: AsyncSession,
    action_type: str,
    *,
    conversation_id: Optional[UUID] = None,
    account_id: Optional[str] = None,
    goal_id: Optional[UUID] = None,
    action_data: Optional[dict] = None,
    explanation: Optional[str] = None,
    confidence: Optional[float] = None,
) -> ActionLog:
    """Append one audit record. Written in the caller's transaction."""
    entry = ActionLog(
        conversation_id=conversation_id,
        account_id=account_id,
        goal_id=goal_id,
        action_type=action_type,
        action_data=action_data,
        explanation=explanation,
        confidence=confidence,
    )
    session.add(entry)
    await session.flush()
    logger.debug("Audit %s conversation=%s", action_type, conversation_id)
    return entry


async def recent_actions(
    session: AsyncSession,
    conversation_id: UUID,
    limit: int = 50,
    action_type: Optional[str] = None,
) -> list[ActionLog]:
    stmt = (
        select(ActionLog)
        .where(ActionLog.conversation_id == conversation_id)
        .order_by(ActionLog.created_at.desc())
        .limit(limit)
    )
    if action_type is not None:
        stmt = stmt.where(ActionLog.action_type == action_type)
    result = await session.execute(stmt)
    return list(result.scalars().all())
