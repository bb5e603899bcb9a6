"""Safety gate: may the agent speak on this conversation right now?

The gate is an ordered table of guard clauses. The first guard that fires
names the denial reason; the decision also reports every flag it saw so
callers and the audit log can explain it.

Order: agent disabled, opted out, label forbids replies, human takeover,
cooldown, low confidence.
"""
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db.repositories import audit as audit_repo
from db.repositories import conversations as conversations_repo
from db.repositories import followups as followups_repo
from db.repositories import settings as settings_repo
from db.repositories import takeovers as takeovers_repo
from engine.labels import get_label_behavior, should_block_reply
from schemas.config import AgentConfig
from schemas.policy import ConfidenceUpdate, OptOutMatch, SafetyDecision

logger = logging.getLogger(__name__)


DEFAULT_OPT_OUT_PHRASES = (
    "stop messaging",
    "stop texting",
    "unsubscribe",
    "stop sending",
    "leave me alone",
    "do not contact",
    "remove me",
    "opt out",
)

UNCERTAINTY_PHRASES = (
    "i'm not sure", "i don't know", "i'm unsure", "i cannot help", "i can't help",
    "unable to", "please contact", "reach out to", "speak to someone",
    "i apologize", "sorry, i", "unfortunately",
)
GENERIC_PHRASES = (
    "how can i help you today",
    "is there anything else",
    "thank you for reaching out",
)


# ---------------------------------------------------------------------------
# Gate (pure)
# ---------------------------------------------------------------------------


def takeover_active(conversation, now: datetime) -> bool:
    """A takeover with a past expiry no longer counts, even if the flag is still set."""
    if not conversation.human_takeover:
        return False
    return conversation.takeover_until is None or conversation.takeover_until > now


def _confidence(conversation) -> float:
    return 1.0 if conversation.confidence is None else conversation.confidence


def _agent_disabled(conversation, config, now):
    return None if conversation.agent_enabled else "agent_disabled"


def _opted_out(conversation, config, now):
    return "opted_out" if conversation.opt_out else None


def _label_forbids(conversation, config, now):
    if conversation.label and should_block_reply(conversation.label):
        return f"label_{conversation.label}"
    return None


def _human_takeover(conversation, config, now):
    return "human_takeover" if takeover_active(conversation, now) else None


def _cooldown(conversation, config, now):
    if conversation.cooldown_until is not None and conversation.cooldown_until > now:
        return "cooldown"
    return None


def _low_confidence(conversation, config, now):
    if config.auto_takeover_on_low_confidence and _confidence(conversation) < config.min_confidence_threshold:
        return "low_confidence"
    return None


SAFETY_GUARDS = (
    _agent_disabled,
    _opted_out,
    _label_forbids,
    _human_takeover,
    _cooldown,
    _low_confidence,
)


def evaluate_safety(conversation, config: AgentConfig, now: Optional[datetime] = None) -> SafetyDecision:
    """Run the guard table over a conversation snapshot."""
    now = now or datetime.now(timezone.utc)
    reason = None
    for guard in SAFETY_GUARDS:
        reason = guard(conversation, config, now)
        if reason is not None:
            break

    in_takeover = takeover_active(conversation, now)
    in_cooldown = conversation.cooldown_until is not None and conversation.cooldown_until > now
    return SafetyDecision(
        allowed=reason is None,
        reason=reason,
        human_takeover=in_takeover,
        opted_out=bool(conversation.opt_out),
        in_cooldown=in_cooldown,
        confidence=_confidence(conversation),
        label=conversation.label,
        faq_only=get_label_behavior(conversation.label).mode == "faq_only",
        cooldown_ends_at=conversation.cooldown_until if in_cooldown else None,
        takeover_ends_at=conversation.takeover_until if in_takeover else None,
    )


def evaluate_confidence(response: str, *, has_context: bool = True) -> float:
    """Heuristic confidence of a generated reply, in [0, 1]."""
    text = (response or "").lower()
    score = 1.0

    for phrase in UNCERTAINTY_PHRASES:
        if phrase in text:
            score -= 0.15

    if not has_context:
        score -= 0.2

    words = len(text.split())
    if words < 5:
        score -= 0.3
    elif words > 500:
        score -= 0.1

    for phrase in GENERIC_PHRASES:
        if phrase in text:
            score -= 0.1

    return max(0.0, min(1.0, score))


def detect_opt_out(text: str, phrases: Optional[Iterable] = None) -> OptOutMatch:
    """Match `text` against opt-out phrases.

    `phrases` holds objects with .phrase and .is_regex (stored rows); None
    means use the built-in defaults. Broken regex patterns are skipped.
    """
    lowered = (text or "").strip().lower()
    if not lowered:
        return OptOutMatch(opted_out=False)

    if lowered.strip(".! ") == "stop":
        return OptOutMatch(opted_out=True, matched_phrase="stop")

    if phrases is None:
        for phrase in DEFAULT_OPT_OUT_PHRASES:
            if phrase in lowered:
                return OptOutMatch(opted_out=True, matched_phrase=phrase)
        return OptOutMatch(opted_out=False)

    for entry in phrases:
        if entry.is_regex:
            try:
                if re.search(entry.phrase, lowered, re.IGNORECASE):
                    return OptOutMatch(opted_out=True, matched_phrase=entry.phrase)
            except re.error:
                logger.warning("Invalid opt-out pattern skipped: %r", entry.phrase)
        elif entry.phrase.lower() in lowered:
            return OptOutMatch(opted_out=True, matched_phrase=entry.phrase)
    return OptOutMatch(opted_out=False)


# ---------------------------------------------------------------------------
# Gate (stored state)
# ---------------------------------------------------------------------------


async def check_safety_status(
    session: AsyncSession,
    conversation_id: UUID,
    config: AgentConfig,
    now: Optional[datetime] = None,
) -> SafetyDecision:
    """Evaluate the gate against freshly read state."""
    now = now or datetime.now(timezone.utc)
    conversation = await conversations_repo.require(session, conversation_id)
    if conversation.human_takeover and not takeover_active(conversation, now):
        await conversations_repo.clear_expired_takeover(session, conversation_id, now)
        conversation = await conversations_repo.require(session, conversation_id)
    return evaluate_safety(conversation, config, now)


async def activate_takeover(
    session: AsyncSession,
    conversation_id: UUID,
    reason: str,
    *,
    duration_hours: float = 24,
    triggered_by: str = "system",
    user_id: Optional[str] = None,
    reason_detail: Optional[str] = None,
    confidence: Optional[float] = None,
    message_context: Optional[str] = None,
    now: Optional[datetime] = None,
):
    """Hand the conversation to a human for `duration_hours`."""
    now = now or datetime.now(timezone.utc)
    conversation = await conversations_repo.require(session, conversation_id, for_update=True)
    takeover_until = now + timedelta(hours=duration_hours)

    conversation = await conversations_repo.update_fields(
        session, conversation_id, human_takeover=True, takeover_until=takeover_until
    )
    await takeovers_repo.add(
        session,
        conversation_id,
        reason,
        triggered_by=triggered_by,
        triggered_by_user_id=user_id,
        reason_detail=reason_detail,
        confidence=confidence,
        message_context=message_context,
        duration_hours=duration_hours,
    )
    await audit_repo.log_action(
        session,
        "takeover_activated",
        conversation_id=conversation_id,
        account_id=conversation.account_id,
        action_data={
            "reason": reason,
            "triggered_by": triggered_by,
            "user_id": user_id,
            "takeover_until": takeover_until.isoformat(),
        },
        explanation=f"Human takeover activated: {reason}",
        confidence=confidence,
    )
    logger.info("Takeover activated for %s until %s (%s)", conversation_id, takeover_until, reason)
    return conversation


async def deactivate_takeover(
    session: AsyncSession,
    conversation_id: UUID,
    *,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
):
    """Return the conversation to the agent and reset its confidence."""
    now = now or datetime.now(timezone.utc)
    await conversations_repo.require(session, conversation_id, for_update=True)
    conversation = await conversations_repo.update_fields(
        session, conversation_id, human_takeover=False, takeover_until=None, confidence=1.0
    )
    resolved = await takeovers_repo.resolve_open(session, conversation_id, user_id, now)
    await audit_repo.log_action(
        session,
        "takeover_deactivated",
        conversation_id=conversation_id,
        account_id=conversation.account_id,
        action_data={"user_id": user_id, "resolved_entries": resolved},
        explanation="Human takeover ended, agent re-enabled",
    )
    logger.info("Takeover deactivated for %s", conversation_id)
    return conversation


async def update_confidence(
    session: AsyncSession,
    conversation_id: UUID,
    confidence: float,
    config: AgentConfig,
    *,
    message_context: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ConfidenceUpdate:
    """Store the latest confidence; hand over to a human when it drops too low."""
    now = now or datetime.now(timezone.utc)
    confidence = max(0.0, min(1.0, confidence))
    conversation = await conversations_repo.require(session, conversation_id, for_update=True)
    await conversations_repo.update_fields(session, conversation_id, confidence=confidence)

    below = config.auto_takeover_on_low_confidence and confidence < config.min_confidence_threshold
    if not below or takeover_active(conversation, now):
        return ConfidenceUpdate(confidence=confidence)

    await activate_takeover(
        session,
        conversation_id,
        "low_confidence",
        duration_hours=config.takeover_duration_hours,
        triggered_by="system",
        reason_detail=f"Confidence {confidence:.2f} below threshold {config.min_confidence_threshold:.2f}",
        confidence=confidence,
        message_context=message_context,
        now=now,
    )
    await audit_repo.log_action(
        session,
        "confidence_low",
        conversation_id=conversation_id,
        account_id=conversation.account_id,
        action_data={"threshold": config.min_confidence_threshold},
        explanation="Confidence fell below threshold",
        confidence=confidence,
    )
    return ConfidenceUpdate(confidence=confidence, takeover_activated=True)


async def set_cooldown(
    session: AsyncSession,
    conversation_id: UUID,
    hours: float,
    now: Optional[datetime] = None,
):
    now = now or datetime.now(timezone.utc)
    return await conversations_repo.update_fields(
        session,
        conversation_id,
        cooldown_until=now + timedelta(hours=hours),
        last_agent_message_at=now,
    )


async def load_opt_out_phrases(session: AsyncSession, account_id: Optional[str]) -> Optional[list]:
    """Stored phrases, or None (use defaults) if there are none or they can't be read."""
    try:
        async with session.begin_nested():
            phrases = await settings_repo.active_opt_out_phrases(session, account_id)
    except SQLAlchemyError:
        logger.warning("Could not load opt-out phrases, using defaults", exc_info=True)
        return None
    return phrases or None


async def mark_opted_out(
    session: AsyncSession,
    conversation_id: UUID,
    *,
    matched_phrase: Optional[str] = None,
    message_context: Optional[str] = None,
    now: Optional[datetime] = None,
):
    """Record an opt-out: flag it, disable the agent, drop pending follow-ups."""
    now = now or datetime.now(timezone.utc)
    await conversations_repo.require(session, conversation_id, for_update=True)
    conversation = await conversations_repo.update_fields(
        session, conversation_id, opt_out=True, opt_out_at=now, agent_enabled=False
    )
    cancelled = await followups_repo.cancel_pending(session, conversation_id, "Cancelled: contact opted out")
    await takeovers_repo.add(
        session,
        conversation_id,
        "opt_out",
        triggered_by="contact",
        reason_detail=f"Matched phrase: {matched_phrase}" if matched_phrase else None,
        message_context=message_context,
    )
    await audit_repo.log_action(
        session,
        "opt_out_detected",
        conversation_id=conversation_id,
        account_id=conversation.account_id,
        action_data={"matched_phrase": matched_phrase, "cancelled_follow_ups": cancelled},
        explanation="Contact opted out of messages",
    )
    logger.info("Conversation %s opted out (%s)", conversation_id, matched_phrase)
    return conversation


async def toggle_agent(
    session: AsyncSession,
    conversation_id: UUID,
    enabled: bool,
    *,
    user_id: Optional[str] = None,
):
    await conversations_repo.require(session, conversation_id, for_update=True)
    conversation = await conversations_repo.update_fields(session, conversation_id, agent_enabled=enabled)
    await audit_repo.log_action(
        session,
        "agent_enabled" if enabled else "agent_disabled",
        conversation_id=conversation_id,
        account_id=conversation.account_id,
        action_data={"user_id": user_id},
    )
    return conversation


async def get_takeover_history(session: AsyncSession, conversation_id: UUID, limit: int = 10) -> Sequence:
    return await takeovers_repo.history(session, conversation_id, limit=limit)
