"""Follow-up repository: queue entries and their status transitions.

Status writes are conditional on the current status (pending) so two
workers racing on the same entry cannot both transition it.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import FollowUp

logger = logging.getLogger(__name__)


async def create(
    session: AsyncSession,
    conversation_id: UUID,
    account_id: str,
    scheduled_at: datetime,
    *,
    follow_up_type: str = "manual",
    reason: Optional[str] = None,
    message_template: Optional[str] = None,
    goal_id: Optional[UUID] = None,
    max_retries: int = 3,
    created_by: Optional[str] = None,
) -> FollowUp:
    follow_up = FollowUp(
        conversation_id=conversation_id,
        account_id=account_id,
        scheduled_at=scheduled_at,
        follow_up_type=follow_up_type,
        reason=reason,
        message_template=message_template,
        goal_id=goal_id,
        status="pending",
        retry_count=0,
        max_retries=max_retries,
        created_by=created_by,
    )
    session.add(follow_up)
    await session.flush()
    return follow_up


async def get(session: AsyncSession, follow_up_id: UUID, *, for_update: bool = False) -> Optional[FollowUp]:
    stmt = select(FollowUp).where(FollowUp.id == follow_up_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    return result.scalar_one_or_none()


async def cancel_pending(
    session: AsyncSession,
    conversation_id: UUID,
    error_message: str,
    *,
    types: Optional[Iterable[str]] = None,
) -> int:
    """Cancel every pending follow-up of the conversation. Returns the count."""
    stmt = (
        update(FollowUp)
        .where(FollowUp.conversation_id == conversation_id)
        .where(FollowUp.status == "pending")
        .values(status="cancelled", error_message=error_message, updated_at=func.now())
        .returning(FollowUp.id)
    )
    if types is not None:
        stmt = stmt.where(FollowUp.follow_up_type.in_(list(types)))
    result = await session.execute(stmt)
    await session.flush()
    count = len(result.fetchall())
    if count:
        logger.info("Cancelled %d follow-ups for conversation %s", count, conversation_id)
    return count


async def cancel(session: AsyncSession, follow_up_id: UUID, error_message: str) -> Optional[FollowUp]:
    result = await session.execute(
        update(FollowUp)
        .where(FollowUp.id == follow_up_id)
        .where(FollowUp.status == "pending")
        .values(status="cancelled", error_message=error_message, updated_at=func.now())
        .returning(FollowUp),
        execution_options={"populate_existing": True},
    )
    await session.flush()
    return result.scalar_one_or_none()


async def count_pending(session: AsyncSession, conversation_id: UUID) -> int:
    result = await session.execute(
        select(func.count(FollowUp.id))
        .where(FollowUp.conversation_id == conversation_id)
        .where(FollowUp.status == "pending")
    )
    return result.scalar_one()


async def count_since(
    session: AsyncSession, conversation_id: UUID, follow_up_type: str, since: datetime
) -> int:
    """Count non-cancelled follow-ups of a type scheduled at or after `since`."""
    result = await session.execute(
        select(func.count(FollowUp.id))
        .where(FollowUp.conversation_id == conversation_id)
        .where(FollowUp.follow_up_type == follow_up_type)
        .where(FollowUp.status != "cancelled")
        .where(FollowUp.scheduled_at >= since)
    )
    return result.scalar_one()


async def get_due(session: AsyncSession, now: Optional[datetime] = None, limit: int = 50) -> list[FollowUp]:
    """Return pending follow-ups scheduled at or before `now`, oldest first."""
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        select(FollowUp)
        .where(FollowUp.status == "pending")
        .where(FollowUp.scheduled_at <= now)
        .order_by(FollowUp.scheduled_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_scheduled(session: AsyncSession, conversation_id: UUID) -> list[FollowUp]:
    result = await session.execute(
        select(FollowUp)
        .where(FollowUp.conversation_id == conversation_id)
        .where(FollowUp.status == "pending")
        .order_by(FollowUp.scheduled_at)
    )
    return list(result.scalars().all())


async def mark_sent(
    session: AsyncSession,
    follow_up_id: UUID,
    message_id: Optional[str],
    sent_at: Optional[datetime] = None,
) -> Optional[FollowUp]:
    if sent_at is None:
        sent_at = datetime.now(timezone.utc)
    result = await session.execute(
        update(FollowUp)
        .where(FollowUp.id == follow_up_id)
        .where(FollowUp.status == "pending")
        .values(status="sent", sent_at=sent_at, sent_message_id=message_id, updated_at=func.now())
        .returning(FollowUp),
        execution_options={"populate_existing": True},
    )
    await session.flush()
    return result.scalar_one_or_none()


async def record_failure(
    session: AsyncSession,
    follow_up_id: UUID,
    *,
    retry_count: int,
    status: str,
    error_message: str,
    scheduled_at: Optional[datetime] = None,
) -> Optional[FollowUp]:
    """Persist a failed attempt. Only applies to an entry still pending."""
    values = {
        "retry_count": retry_count,
        "status": status,
        "error_message": error_message,
        "updated_at": func.now(),
    }
    if scheduled_at is not None:
        values["scheduled_at"] = scheduled_at
    result = await session.execute(
        update(FollowUp)
        .where(FollowUp.id == follow_up_id)
        .where(FollowUp.status == "pending")
        .values(**values)
        .returning(FollowUp),
        execution_options={"populate_existing": True},
    )
    await session.flush()
    return result.scalar_one_or_none()


async def reschedule(session: AsyncSession, follow_up_id: UUID, scheduled_at: datetime) -> Optional[FollowUp]:
    result = await session.execute(
        update(FollowUp)
        .where(FollowUp.id == follow_up_id)
        .where(FollowUp.status == "pending")
        .values(scheduled_at=scheduled_at, updated_at=func.now())
        .returning(FollowUp),
        execution_options={"populate_existing": True},
    )
    await session.flush()
    return result.scalar_one_or_none()
