"""Follow-up scheduling, intuition cadence and delivery retry policy.

Two scheduling paths:
- schedule_follow_up(): one pending entry per conversation; scheduling
  replaces whatever is pending.
- schedule_quick_follow_up(): short-delay nudges that coexist (at most
  three pending) and never cancel anything.
"""
import logging
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Union
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from db.models import FOLLOW_UP_TYPES
from db.repositories import audit as audit_repo
from db.repositories import conversations as conversations_repo
from db.repositories import followups as followups_repo
from db.repositories import messages as messages_repo
from engine.best_time import calculate_best_time
from engine.errors import FollowUpNotFound, SchedulingValidationError
from engine.policy import build_policy
from engine.signals import extract_signals, should_trigger_follow_up
from schemas.config import AgentConfig
from schemas.messages import ChatMessage
from schemas.scheduling import AvailabilityMention, QuickFollowUpRefusal, RetryOutcome, ScheduleResult

logger = logging.getLogger(__name__)

DEFAULT_DELAY_HOURS = 4
RETRY_BACKOFF = timedelta(hours=1)
QUICK_MIN_SPACING = timedelta(minutes=30)
QUICK_MAX_PENDING = 3
PROACTIVE_TYPES = ("intuition", "intuition_quick")

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def fibonacci(n: int) -> int:
    """1, 2, 3, 5, 8, 13, ... for n = 1, 2, 3, ...; n <= 1 gives 1."""
    if n <= 1:
        return 1
    a, b = 1, 2
    for _ in range(n - 2):
        a, b = b, a + b
    return b


def cadence_bucket_hours(hours: int) -> int:
    """Waits of a day or more are rounded up to whole days."""
    if hours >= 24:
        return math.ceil(hours / 24) * 24
    return hours


def intuition_delay_hours(prior_count: int, shift: int = 0) -> int:
    """Total hours from the last inbound message to the next intuition follow-up.

    Steps 1..prior_count + 1 each wait fibonacci(step - shift) hours; a
    positive shift starts earlier in the sequence (shorter waits).
    """
    total = 0
    for step in range(1, prior_count + 2):
        total += cadence_bucket_hours(fibonacci(max(1, step - shift)))
    return total


def next_intuition_time(base_time: datetime, prior_count: int, shift: int = 0) -> datetime:
    return base_time + timedelta(hours=intuition_delay_hours(prior_count, shift))


def resolve_target_time(
    now: datetime,
    *,
    scheduled_at: Optional[datetime] = None,
    best_time: Optional[datetime] = None,
    delay_hours: Optional[float] = None,
    cooldown_until: Optional[datetime] = None,
) -> datetime:
    """explicit > best time > delay > default, then never before cooldown end."""
    if scheduled_at is not None:
        target = scheduled_at
    elif best_time is not None:
        target = best_time
    elif delay_hours is not None:
        target = now + timedelta(hours=delay_hours)
    else:
        target = now + timedelta(hours=DEFAULT_DELAY_HOURS)

    if cooldown_until is not None and cooldown_until > target:
        target = cooldown_until
    return target


def retry_decision(retry_count: int, max_retries: int, now: datetime) -> tuple[int, bool, Optional[datetime]]:
    """(new_retry_count, will_retry, next_attempt_at) after one more failure."""
    new_count = retry_count + 1
    if new_count < max_retries:
        return new_count, True, now + RETRY_BACKOFF
    return new_count, False, None


_TIME = r"(\d{1,2})(?::(\d{2}))?\s*(am|pm)?\b(?!\s*(?:days?|weeks?|months?|hours?|hrs?|minutes?|mins?)\b)"
_AVAILABILITY_PATTERNS = (
    ("relative_hours", re.compile(r"\bin\s+(\d+)\s+(hours?|hrs?|minutes?|mins?)\b")),
    ("minutes_from_now", re.compile(r"\b(\d+)\s+(minutes?|mins?)\s+from\s+now\b")),
    ("day_at", re.compile(r"\b(today|tomorrow|" + "|".join(WEEKDAYS) + r")\s+(?:at|around|after)\s+" + _TIME)),
    ("free_at", re.compile(r"\b(?:free|available)\s+(?:at|after|around)\s+" + _TIME)),
    ("contact_me_at", re.compile(r"\b(?:call|text|message)\s+me\s+(?:at|after|around)\s+" + _TIME)),
    ("after_before", re.compile(r"\b(after|before)\s+" + _TIME)),
)


def _clock(hour: str, minute: Optional[str], meridiem: Optional[str]) -> Optional[tuple[int, int]]:
    h = int(hour)
    m = int(minute) if minute else 0
    if m > 59:
        return None
    if meridiem:
        if not 1 <= h <= 12:
            return None
        if meridiem == "pm" and h != 12:
            h += 12
        elif meridiem == "am" and h == 12:
            h = 0
    else:
        if h > 23:
            return None
        # "at 3" in a chat almost always means the afternoon
        if 1 <= h <= 7:
            h += 12
    return h, m


def detect_availability_mention(
    text: str, now: Optional[datetime] = None, tz: Optional[ZoneInfo] = None
) -> Optional[AvailabilityMention]:
    """Find a time the contact said they are available, as an aware UTC datetime."""
    now = now or datetime.now(timezone.utc)
    tz = tz or ZoneInfo("UTC")
    lowered = (text or "").lower()
    local_now = now.astimezone(tz)

    for name, pattern in _AVAILABILITY_PATTERNS:
        match = pattern.search(lowered)
        if not match:
            continue

        if name in ("relative_hours", "minutes_from_now"):
            amount = int(match.group(1))
            unit = match.group(2)
            delta = timedelta(hours=amount) if unit.startswith("h") else timedelta(minutes=amount)
            return AvailabilityMention(target_time=now + delta, matched_text=match.group(0), pattern=name)

        if name == "day_at":
            day_word, hour, minute, meridiem = match.groups()
        elif name == "after_before":
            day_word = None
            qualifier, hour, minute, meridiem = match.groups()
        else:
            day_word = None
            hour, minute, meridiem = match.groups()

        clock = _clock(hour, minute, meridiem)
        if clock is None:
            continue
        target = local_now.replace(hour=clock[0], minute=clock[1], second=0, microsecond=0)

        if day_word == "tomorrow":
            target += timedelta(days=1)
        elif day_word in WEEKDAYS:
            days_ahead = (WEEKDAYS.index(day_word) - local_now.weekday()) % 7
            target += timedelta(days=days_ahead)
            if target <= local_now:
                target += timedelta(days=7)
        elif target <= local_now:
            target += timedelta(days=1)

        if name == "after_before" and qualifier == "before":
            target -= timedelta(hours=1)
            if target <= local_now:
                target += timedelta(days=1)

        return AvailabilityMention(
            target_time=target.astimezone(timezone.utc),
            matched_text=match.group(0),
            pattern=name,
        )
    return None


def _require_aware(value: Optional[datetime], name: str) -> None:
    if value is not None and value.tzinfo is None:
        raise SchedulingValidationError(f"{name} must be timezone-aware")


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


async def schedule_follow_up(
    session: AsyncSession,
    conversation_id: UUID,
    config: AgentConfig,
    *,
    follow_up_type: str = "manual",
    scheduled_at: Optional[datetime] = None,
    use_best_time: bool = False,
    delay_hours: Optional[float] = None,
    reason: Optional[str] = None,
    message_template: Optional[str] = None,
    goal_id: Optional[UUID] = None,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ScheduleResult:
    """Replace any pending follow-up of the conversation with a new one."""
    if follow_up_type not in FOLLOW_UP_TYPES or follow_up_type == "intuition_quick":
        raise SchedulingValidationError(f"Invalid follow-up type for this path: {follow_up_type!r}")
    _require_aware(scheduled_at, "scheduled_at")
    if delay_hours is not None and delay_hours < 0:
        raise SchedulingValidationError("delay_hours must not be negative")

    now = now or datetime.now(timezone.utc)
    conversation = await conversations_repo.require(session, conversation_id, for_update=True)
    policy = build_policy(conversation, config, now=now)

    if policy.safety.opted_out:
        return ScheduleResult(scheduled=False, reason="opted_out", follow_up_type=follow_up_type)
    if follow_up_type in PROACTIVE_TYPES and not policy.may_schedule_proactive:
        return ScheduleResult(scheduled=False, reason="proactive_suppressed", follow_up_type=follow_up_type)

    best_time = None
    best_time_confidence = None
    if scheduled_at is None and use_best_time:
        estimate = await calculate_best_time(session, conversation, config, now=now)
        best_time = estimate.next_best_time
        best_time_confidence = estimate.confidence

    target = resolve_target_time(
        now,
        scheduled_at=scheduled_at,
        best_time=best_time,
        delay_hours=delay_hours,
        cooldown_until=conversation.cooldown_until,
    )

    cancelled = await followups_repo.cancel_pending(
        session, conversation_id, "Replaced by a newly scheduled follow-up"
    )
    follow_up = await followups_repo.create(
        session,
        conversation_id,
        conversation.account_id,
        target,
        follow_up_type=follow_up_type,
        reason=reason,
        message_template=message_template,
        goal_id=goal_id or conversation.active_goal_id,
        max_retries=config.follow_up_max_retries,
        created_by=user_id,
    )
    await audit_repo.log_action(
        session,
        "followup_scheduled",
        conversation_id=conversation_id,
        account_id=conversation.account_id,
        goal_id=follow_up.goal_id,
        action_data={
            "follow_up_id": str(follow_up.id),
            "type": follow_up_type,
            "scheduled_at": target.isoformat(),
            "used_best_time": best_time is not None,
            "replaced": cancelled,
        },
        explanation=reason or f"{follow_up_type} follow-up scheduled",
        confidence=best_time_confidence,
    )
    logger.info("Scheduled %s follow-up %s for %s at %s", follow_up_type, follow_up.id, conversation_id, target)
    return ScheduleResult(
        scheduled=True,
        follow_up_id=follow_up.id,
        scheduled_at=target,
        follow_up_type=follow_up_type,
        cancelled_existing=cancelled,
        best_time_confidence=best_time_confidence,
    )


async def schedule_quick_follow_up(
    session: AsyncSession,
    conversation_id: UUID,
    config: AgentConfig,
    *,
    delay_minutes: int = 5,
    reason: Optional[str] = None,
    message_template: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Union[ScheduleResult, QuickFollowUpRefusal]:
    """Queue a short-delay nudge alongside whatever is already pending."""
    if delay_minutes < 0:
        raise SchedulingValidationError("delay_minutes must not be negative")

    now = now or datetime.now(timezone.utc)
    conversation = await conversations_repo.require(session, conversation_id, for_update=True)
    policy = build_policy(conversation, config, now=now)

    if policy.safety.opted_out:
        return QuickFollowUpRefusal(reason="opted_out")
    if policy.safety.human_takeover:
        return QuickFollowUpRefusal(reason="human_takeover")
    if not policy.may_schedule_proactive:
        return QuickFollowUpRefusal(reason="proactive_suppressed")

    if conversation.last_agent_message_at is not None:
        elapsed = now - conversation.last_agent_message_at
        if elapsed < QUICK_MIN_SPACING:
            wait = math.ceil((QUICK_MIN_SPACING - elapsed).total_seconds() / 60)
            return QuickFollowUpRefusal(reason="quick_cooldown", wait_minutes=wait)

    pending = await followups_repo.count_pending(session, conversation_id)
    if pending >= QUICK_MAX_PENDING:
        return QuickFollowUpRefusal(reason="too_many_pending", pending_count=pending)

    target = now + timedelta(minutes=delay_minutes)
    follow_up = await followups_repo.create(
        session,
        conversation_id,
        conversation.account_id,
        target,
        follow_up_type="intuition_quick",
        reason=reason or "Quick follow-up",
        message_template=message_template,
        goal_id=conversation.active_goal_id,
        max_retries=config.follow_up_max_retries,
    )
    await audit_repo.log_action(
        session,
        "followup_scheduled",
        conversation_id=conversation_id,
        account_id=conversation.account_id,
        action_data={
            "follow_up_id": str(follow_up.id),
            "type": "intuition_quick",
            "scheduled_at": target.isoformat(),
            "pending_before": pending,
        },
        explanation=reason or "Quick follow-up scheduled",
    )
    return ScheduleResult(
        scheduled=True,
        follow_up_id=follow_up.id,
        scheduled_at=target,
        follow_up_type="intuition_quick",
    )


async def trigger_intuition_follow_up(
    session: AsyncSession,
    conversation_id: UUID,
    config: AgentConfig,
    *,
    force: bool = False,
    now: Optional[datetime] = None,
) -> ScheduleResult:
    """Schedule the next intuition follow-up if the conversation's signals call for one.

    The time is fully determined by the last inbound timestamp, the number of
    intuition follow-ups already scheduled since then and the configured shift.
    """
    now = now or datetime.now(timezone.utc)
    conversation = await conversations_repo.require(session, conversation_id)
    policy = build_policy(conversation, config, now=now)
    if not policy.may_schedule_proactive:
        return ScheduleResult(scheduled=False, reason=policy.safety.reason or "proactive_suppressed")

    if not force:
        pending = await followups_repo.get_scheduled(session, conversation_id)
        existing = next((f for f in pending if f.follow_up_type == "intuition"), None)
        if existing is not None:
            return ScheduleResult(
                scheduled=False,
                reason="already_pending",
                follow_up_id=existing.id,
                scheduled_at=existing.scheduled_at,
                follow_up_type="intuition",
            )

    history = [ChatMessage.model_validate(m) for m in await messages_repo.recent(session, conversation_id, limit=20)]
    report = extract_signals(history, now=now, silence_hours=config.intuition_silence_hours)
    recommendation = should_trigger_follow_up(report.signals)
    if not recommendation.trigger and not force:
        return ScheduleResult(scheduled=False, reason="no_signal")

    last_inbound = next((m for m in reversed(history) if m.direction == "inbound"), None)
    if last_inbound is not None:
        base_time = last_inbound.sent_at
    else:
        base_time = conversation.last_message_at or now

    prior = await followups_repo.count_since(session, conversation_id, "intuition", base_time)
    target = next_intuition_time(base_time, prior, config.intuition_fibonacci_shift)

    await audit_repo.log_action(
        session,
        "intent_detected",
        conversation_id=conversation_id,
        account_id=conversation.account_id,
        action_data={
            "signals": [s.type for s in report.significant()],
            "trigger": recommendation.signal_type,
            "step": prior + 1,
        },
        explanation=recommendation.reason or "Forced intuition follow-up",
    )
    return await schedule_follow_up(
        session,
        conversation_id,
        config,
        follow_up_type="intuition",
        scheduled_at=target,
        reason=recommendation.reason or "Intuition follow-up",
        now=now,
    )


async def schedule_based_on_availability(
    session: AsyncSession,
    conversation_id: UUID,
    text: str,
    config: AgentConfig,
    now: Optional[datetime] = None,
) -> Optional[ScheduleResult]:
    """Schedule a follow-up at a time the contact said suits them, if any."""
    now = now or datetime.now(timezone.utc)
    mention = detect_availability_mention(text, now, ZoneInfo(config.timezone))
    if mention is None:
        return None
    return await schedule_follow_up(
        session,
        conversation_id,
        config,
        follow_up_type="customer_availability",
        scheduled_at=mention.target_time,
        reason=f'Contact availability: "{mention.matched_text}"',
        now=now,
    )


# ---------------------------------------------------------------------------
# Delivery outcomes
# ---------------------------------------------------------------------------


async def mark_follow_up_sent(
    session: AsyncSession,
    follow_up_id: UUID,
    message_id: Optional[str],
    now: Optional[datetime] = None,
):
    follow_up = await followups_repo.get(session, follow_up_id)
    if follow_up is None:
        raise FollowUpNotFound(follow_up_id)
    return await followups_repo.mark_sent(session, follow_up_id, message_id, now)


async def mark_follow_up_failed(
    session: AsyncSession,
    follow_up_id: UUID,
    error_message: str,
    now: Optional[datetime] = None,
    *,
    retryable: bool = True,
) -> RetryOutcome:
    """Count a failed delivery; re-queue an hour later until retries run out.

    A non-retryable failure (e.g. the recipient rejected the message) goes
    straight to failed.
    """
    now = now or datetime.now(timezone.utc)
    follow_up = await followups_repo.get(session, follow_up_id, for_update=True)
    if follow_up is None:
        raise FollowUpNotFound(follow_up_id)

    if follow_up.status != "pending":
        return RetryOutcome(
            follow_up_id=follow_up_id,
            retry_count=follow_up.retry_count,
            will_retry=False,
            status=follow_up.status,
        )

    retry_count, will_retry, next_at = retry_decision(follow_up.retry_count, follow_up.max_retries, now)
    if not retryable:
        will_retry, next_at = False, None
    await followups_repo.record_failure(
        session,
        follow_up_id,
        retry_count=retry_count,
        status="pending" if will_retry else "failed",
        error_message=error_message,
        scheduled_at=next_at,
    )
    if will_retry:
        logger.warning("Follow-up %s failed (attempt %d), retrying at %s: %s", follow_up_id, retry_count, next_at, error_message)
    else:
        logger.error("Follow-up %s failed permanently after %d attempts: %s", follow_up_id, retry_count, error_message)
    return RetryOutcome(
        follow_up_id=follow_up_id,
        retry_count=retry_count,
        will_retry=will_retry,
        next_attempt_at=next_at,
        status="pending" if will_retry else "failed",
    )


async def cancel_follow_up(
    session: AsyncSession,
    follow_up_id: UUID,
    reason: str = "Cancelled manually",
    user_id: Optional[str] = None,
):
    follow_up = await followups_repo.get(session, follow_up_id)
    if follow_up is None:
        raise FollowUpNotFound(follow_up_id)

    cancelled = await followups_repo.cancel(session, follow_up_id, reason)
    if cancelled is not None:
        await audit_repo.log_action(
            session,
            "followup_cancelled",
            conversation_id=follow_up.conversation_id,
            account_id=follow_up.account_id,
            action_data={"follow_up_id": str(follow_up_id), "user_id": user_id},
            explanation=reason,
        )
    return cancelled


async def get_due_follow_ups(session: AsyncSession, now: Optional[datetime] = None, limit: int = 50):
    return await followups_repo.get_due(session, now, limit=limit)


async def get_scheduled_follow_ups(session: AsyncSession, conversation_id: UUID):
    return await followups_repo.get_scheduled(session, conversation_id)
