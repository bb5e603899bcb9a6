"""Engagement record repository: inputs to best-time estimation."""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import EngagementRecord

logger = logging.getLogger(__name__)


async def add(
    session: AsyncSession,
    conversation_id: UUID,
    account_id: str,
    participant_id: str,
    *,
    direction: str,
    message_at: datetime,
    day_of_week: int,
    hour_of_day: int,
    response_latency_seconds: Optional[int] = None,
    engagement_score: float = 1.0,
) -> EngagementRecord:
    record = EngagementRecord(
        conversation_id=conversation_id,
        account_id=account_id,
        participant_id=participant_id,
        direction=direction,
        message_at=message_at,
        day_of_week=day_of_week,
        hour_of_day=hour_of_day,
        response_latency_seconds=response_latency_seconds,
        engagement_score=engagement_score,
    )
    session.add(record)
    await session.flush()
    return record


async def own_inbound(
    session: AsyncSession, conversation_id: UUID, limit: int = 50
) -> list[EngagementRecord]:
    """Most recent inbound records for this conversation, newest first."""
    result = await session.execute(
        select(EngagementRecord)
        .where(EngagementRecord.conversation_id == conversation_id)
        .where(EngagementRecord.direction == "inbound")
        .order_by(EngagementRecord.message_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def peer_inbound(
    session: AsyncSession,
    account_id: str,
    exclude_conversation_id: UUID,
    limit: int = 100,
) -> list[EngagementRecord]:
    """Inbound records from other conversations on the same account, newest first."""
    result = await session.execute(
        select(EngagementRecord)
        .where(EngagementRecord.account_id == account_id)
        .where(EngagementRecord.conversation_id != exclude_conversation_id)
        .where(EngagementRecord.direction == "inbound")
        .order_by(EngagementRecord.message_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def analytics(session: AsyncSession, conversation_id: UUID, since: datetime) -> dict:
    """Average response latency plus the three busiest hours and days."""
    base = (
        select(EngagementRecord)
        .where(EngagementRecord.conversation_id == conversation_id)
        .where(EngagementRecord.message_at >= since)
        .subquery()
    )
    totals = await session.execute(
        select(func.count(), func.avg(base.c.response_latency_seconds)).select_from(base)
    )
    total, avg_latency = totals.one()

    hours = await session.execute(
        select(base.c.hour_of_day, func.count().label("n"))
        .group_by(base.c.hour_of_day)
        .order_by(func.count().desc())
        .limit(3)
    )
    days = await session.execute(
        select(base.c.day_of_week, func.count().label("n"))
        .group_by(base.c.day_of_week)
        .order_by(func.count().desc())
        .limit(3)
    )
    return {
        "total_messages": total or 0,
        "avg_response_latency_seconds": float(avg_latency) if avg_latency is not None else None,
        "top_hours": [{"hour_of_day": h, "count": n} for h, n in hours.all()],
        "top_days": [{"day_of_week": d, "count": n} for d, n in days.all()],
    }
