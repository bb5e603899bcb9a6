"""Best-time-to-contact estimation from engagement history.

Days are numbered 0 = Monday .. 6 = Sunday and hours are local to the
account's configured timezone. Returned occurrences are aware UTC datetimes.
"""
import hashlib
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from db.repositories import engagement as engagement_repo
from schemas.config import AgentConfig
from schemas.scheduling import BestTimeResult, BestTimeSlot

logger = logging.getLogger(__name__)

MIN_OWN_RECORDS = 5
MIN_TOTAL_RECORDS = 3
OWN_RECORD_LIMIT = 50
PEER_RECORD_LIMIT = 100
TOP_SLOTS = 5
PEER_CONFIDENCE_FACTOR = 0.7
DEFAULT_CONFIDENCE = 0.3
DEFAULT_SLOT_SCORES = (0.8, 0.75, 0.7, 0.65, 0.6)


def next_occurrence(day_of_week: int, hour_of_day: int, now: datetime, tz: ZoneInfo) -> datetime:
    """The next time strictly after `now` that falls on day/hour in `tz`."""
    local_now = now.astimezone(tz)
    days_until = (day_of_week - local_now.weekday()) % 7
    candidate = local_now.replace(hour=hour_of_day, minute=0, second=0, microsecond=0) + timedelta(days=days_until)
    if candidate <= local_now:
        candidate += timedelta(days=7)
    return candidate.astimezone(timezone.utc)


def stable_seed(conversation_id: UUID | str) -> int:
    digest = hashlib.sha256(str(conversation_id).encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def default_best_time(conversation_id: UUID | str, now: datetime, tz: ZoneInfo) -> BestTimeResult:
    """Weekday business-hour slots derived from a hash of the conversation id.

    The same conversation always gets the same slots, and different
    conversations are spread across the week.
    """
    seed = stable_seed(conversation_id)
    primary_day = seed % 5
    primary_hour = 9 + (seed >> 8) % 8
    pairs = [
        (primary_day, primary_hour),
        (((primary_day + 1) % 5), 9 + (primary_hour + 4) % 8),
        (((primary_day + 2) % 5), 9 + (primary_hour + 2) % 8),
        (((primary_day + 3) % 5), 9 + (primary_hour + 6) % 8),
        (((primary_day + 4) % 5), 9 + (primary_hour + 1) % 8),
    ]
    slots = [
        BestTimeSlot(
            day_of_week=day,
            hour_of_day=hour,
            score=score,
            next_occurrence=next_occurrence(day, hour, now, tz),
        )
        for (day, hour), score in zip(pairs, DEFAULT_SLOT_SCORES)
    ]
    return BestTimeResult(
        slots=slots,
        next_best_time=min(s.next_occurrence for s in slots),
        confidence=DEFAULT_CONFIDENCE,
        data_points=0,
        source="default",
    )


def score_slots(records: Sequence) -> list[tuple[int, int, float, int]]:
    """Group records by (day, hour) and score each group.

    score = 0.3 * count / max_count
          + 0.4 * max(0, 1 - avg_latency / 3600)
          + 0.3 * avg_engagement_score

    Groups without latency data get a neutral 0.5 latency factor.
    Returned sorted best first as (day, hour, score, count).
    """
    groups = defaultdict(list)
    for record in records:
        groups[(record.day_of_week, record.hour_of_day)].append(record)
    if not groups:
        return []

    max_count = max(len(g) for g in groups.values())
    scored = []
    for (day, hour), group in groups.items():
        latencies = [r.response_latency_seconds for r in group if r.response_latency_seconds is not None]
        if latencies:
            latency_factor = max(0.0, 1 - (sum(latencies) / len(latencies)) / 3600)
        else:
            latency_factor = 0.5
        scores = [1.0 if r.engagement_score is None else r.engagement_score for r in group]
        avg_score = sum(scores) / len(scores)
        score = 0.3 * len(group) / max_count + 0.4 * latency_factor + 0.3 * avg_score
        scored.append((day, hour, round(score, 4), len(group)))

    scored.sort(key=lambda s: (-s[2], -s[3], s[0], s[1]))
    return scored


def estimate_best_time(
    conversation_id: UUID | str,
    own_records: Sequence,
    peer_records: Sequence,
    now: datetime,
    tz: ZoneInfo,
) -> BestTimeResult:
    """Pure estimator over already-fetched records."""
    records = list(own_records)
    source = "contact"
    if len(records) < MIN_OWN_RECORDS and peer_records:
        records.extend(peer_records)
        source = "peers"

    if len(records) < MIN_TOTAL_RECORDS:
        return default_best_time(conversation_id, now, tz)

    slots = [
        BestTimeSlot(
            day_of_week=day,
            hour_of_day=hour,
            score=score,
            count=count,
            next_occurrence=next_occurrence(day, hour, now, tz),
        )
        for day, hour, score, count in score_slots(records)[:TOP_SLOTS]
    ]
    confidence = min(len(records) / 20, 1.0)
    if source == "peers":
        confidence *= PEER_CONFIDENCE_FACTOR
    return BestTimeResult(
        slots=slots,
        next_best_time=min(s.next_occurrence for s in slots),
        confidence=round(confidence, 4),
        data_points=len(records),
        source=source,
    )


async def calculate_best_time(
    session: AsyncSession,
    conversation,
    config: AgentConfig,
    now: Optional[datetime] = None,
) -> BestTimeResult:
    """Best time for `conversation`, falling back to defaults on any failure."""
    now = now or datetime.now(timezone.utc)
    tz = ZoneInfo(config.timezone)
    try:
        async with session.begin_nested():
            own = await engagement_repo.own_inbound(session, conversation.id, limit=OWN_RECORD_LIMIT)
            peers = []
            if len(own) < MIN_OWN_RECORDS:
                peers = await engagement_repo.peer_inbound(
                    session, conversation.account_id, conversation.id, limit=PEER_RECORD_LIMIT
                )
        return estimate_best_time(conversation.id, own, peers, now, tz)
    except Exception:
        logger.exception("Best-time estimation failed for %s, using defaults", conversation.id)
        return default_best_time(conversation.id, now, tz)


async def record_engagement(
    session: AsyncSession,
    conversation,
    config: AgentConfig,
    *,
    direction: str,
    message_at: datetime,
    engagement_score: float = 1.0,
):
    """Store one engagement record with local day/hour and reply latency."""
    local = message_at.astimezone(ZoneInfo(config.timezone))
    latency = None
    if direction == "inbound" and conversation.last_agent_message_at is not None:
        seconds = (message_at - conversation.last_agent_message_at).total_seconds()
        if seconds >= 0:
            latency = int(seconds)
    return await engagement_repo.add(
        session,
        conversation.id,
        conversation.account_id,
        conversation.participant_id,
        direction=direction,
        message_at=message_at,
        day_of_week=local.weekday(),
        hour_of_day=local.hour,
        response_latency_seconds=latency,
        engagement_score=engagement_score,
    )
