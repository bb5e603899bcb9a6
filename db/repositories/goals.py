"""Goal repository: one active goal per conversation, terminal states are final."""
import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Goal

logger = logging.getLogger(__name__)


async def create(
    session: AsyncSession,
    conversation_id: UUID,
    goal_type: str,
    *,
    directive: Optional[str] = None,
    context: Optional[dict] = None,
    priority: int = 1,
    created_by: Optional[str] = None,
) -> Goal:
    goal = Goal(
        conversation_id=conversation_id,
        goal_type=goal_type,
        directive=directive,
        context=context or {},
        priority=priority,
        status="active",
        progress_score=0,
        created_by=created_by,
    )
    session.add(goal)
    await session.flush()
    return goal


async def get(session: AsyncSession, goal_id: UUID) -> Optional[Goal]:
    result = await session.execute(
        select(Goal).where(Goal.id == goal_id), execution_options={"populate_existing": True}
    )
    return result.scalar_one_or_none()


async def get_active(session: AsyncSession, conversation_id: UUID) -> Optional[Goal]:
    """Return the highest-priority active goal for the conversation, or None."""
    result = await session.execute(
        select(Goal)
        .where(Goal.conversation_id == conversation_id)
        .where(Goal.status == "active")
        .order_by(Goal.priority.desc(), Goal.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def abandon_active(session: AsyncSession, conversation_id: UUID, reason: str) -> int:
    """Mark every active goal of the conversation abandoned. Returns the count."""
    result = await session.execute(
        update(Goal)
        .where(Goal.conversation_id == conversation_id)
        .where(Goal.status == "active")
        .values(status="abandoned", abandoned_reason=reason, updated_at=func.now())
        .returning(Goal.id)
    )
    await session.flush()
    count = len(result.fetchall())
    if count:
        logger.info("Abandoned %d goals for conversation %s", count, conversation_id)
    return count


async def record_progress(session: AsyncSession, goal_id: UUID, progress: int) -> Optional[Goal]:
    """Raise the stored progress to `progress` if higher. Active goals only.

    Returns None when the goal is missing or no longer active.
    """
    result = await session.execute(
        update(Goal)
        .where(Goal.id == goal_id)
        .where(Goal.status == "active")
        .values(progress_score=func.greatest(Goal.progress_score, progress), updated_at=func.now())
        .returning(Goal),
        execution_options={"populate_existing": True},
    )
    await session.flush()
    return result.scalar_one_or_none()


async def finish(
    session: AsyncSession,
    goal_id: UUID,
    status: str,
    *,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[Goal]:
    """Move an active goal to a terminal status. No-op (None) if not active."""
    values = {"status": status, "updated_at": func.now()}
    if status == "completed":
        values["completed_at"] = now or datetime.now(timezone.utc)
        values["progress_score"] = 100
    elif status == "abandoned":
        values["abandoned_reason"] = reason
    result = await session.execute(
        update(Goal)
        .where(Goal.id == goal_id)
        .where(Goal.status == "active")
        .values(**values)
        .returning(Goal),
        execution_options={"populate_existing": True},
    )
    await session.flush()
    return result.scalar_one_or_none()


async def history(
    session: AsyncSession, conversation_id: UUID, limit: int = 10, include_active: bool = False
) -> list[Goal]:
    stmt = (
        select(Goal)
        .where(Goal.conversation_id == conversation_id)
        .order_by(Goal.created_at.desc())
        .limit(limit)
    )
    if not include_active:
        stmt = stmt.where(Goal.status != "active")
    result = await session.execute(stmt)
    return list(result.scalars().all())
