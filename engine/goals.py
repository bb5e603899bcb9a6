"""Conversation goals: prompt shaping and progress tracking.

At most one goal is active per conversation. Setting a new goal abandons the
old one. Completed and abandoned goals are final; progress is only ever
raised, never lowered.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from db.repositories import audit as audit_repo
from db.repositories import conversations as conversations_repo
from db.repositories import followups as followups_repo
from db.repositories import goals as goals_repo
from engine.errors import GoalNotFound, SchedulingValidationError
from schemas.goals import GoalProgress, GoalSuggestion
from schemas.messages import ChatMessage

logger = logging.getLogger(__name__)


GOAL_TYPES = {
    "book_call": {
        "name": "Book a Call",
        "description": "Guide the conversation toward scheduling a call or meeting.",
        "success_indicators": ["meeting confirmed", "call scheduled", "booking confirmed", "see you", "confirmed for"],
    },
    "close_sale": {
        "name": "Close Sale",
        "description": "Move the contact toward completing a purchase.",
        "success_indicators": ["payment received", "order placed", "deal closed", "purchase complete", "invoice sent"],
    },
    "re_engage": {
        "name": "Re-engage",
        "description": "Reopen a conversation that has gone quiet.",
        "success_indicators": ["responded", "showed interest", "asked question", "wants to know more"],
    },
    "qualify_lead": {
        "name": "Qualify Lead",
        "description": "Learn the contact's needs, budget, timeline and decision authority.",
        "success_indicators": ["budget confirmed", "timeline known", "decision maker", "ready to proceed"],
    },
    "provide_info": {
        "name": "Provide Information",
        "description": "Answer the contact's questions clearly and completely.",
        "success_indicators": ["question answered", "information provided", "understood", "makes sense"],
    },
    "custom": {
        "name": "Custom Goal",
        "description": "Follow the custom instructions provided.",
        "success_indicators": [],
    },
}

POSITIVE_SENTIMENT = ("yes", "sure", "okay", "sounds good", "interested", "tell me more", "great")

SCHEDULING_WORDS = ("meeting", "call", "schedule", "available")
PURCHASE_WORDS = ("price", "cost", "buy", "purchase", "package", "plan")
QUESTION_WORDS = ("how", "what", "tell me", "explain")


def _definition(goal_type: str) -> dict:
    if goal_type not in GOAL_TYPES:
        raise SchedulingValidationError(f"Unknown goal type: {goal_type!r}")
    return GOAL_TYPES[goal_type]


def shape_prompt_for_goal(
    base_prompt: str,
    goal_type: str,
    *,
    directive: Optional[str] = None,
    context: Optional[dict] = None,
    progress: int = 0,
) -> str:
    """Append the goal's directive, context, progress and success indicators."""
    definition = _definition(goal_type)
    parts = [
        base_prompt,
        "",
        f"## Current Conversation Goal: {definition['name']}",
        directive or definition["description"],
        "",
        "Keep this goal in mind, but stay natural and helpful. Never be pushy.",
    ]
    if context:
        parts.append("")
        parts.append("### Goal Context:")
        parts.extend(f"- {key}: {value}" for key, value in context.items())
    parts.append("")
    parts.append(f"Current progress toward goal: {progress}%")
    if definition["success_indicators"]:
        parts.append(f"Success indicators to watch for: {', '.join(definition['success_indicators'])}")
    return "\n".join(parts)


def evaluate_goal_progress(goal_type: str, messages: Sequence[ChatMessage]) -> GoalProgress:
    """Score progress 0-100 from the conversation so far.

    Every term only grows as messages are appended, so a strictly growing
    history never scores lower.
    """
    definition = _definition(goal_type)
    indicators = definition["success_indicators"]
    text = " ".join(m.text for m in messages).lower()

    found = [i for i in indicators if i in text]
    indicator_progress = (len(found) / len(indicators) * 100) if indicators else 0.0
    message_progress = float(min(len(messages) * 5, 30))
    sentiment_bonus = float(min(5 * sum(1 for w in POSITIVE_SENTIMENT if w in text), 20))

    total = min(round(indicator_progress + message_progress + sentiment_bonus), 100)
    return GoalProgress(
        progress=total,
        completed=indicator_progress >= 50 or len(found) >= 2,
        indicators_found=found,
        indicator_progress=indicator_progress,
        message_progress=message_progress,
        sentiment_bonus=sentiment_bonus,
    )


def suggest_next_goal(messages: Sequence[ChatMessage], now: Optional[datetime] = None) -> GoalSuggestion:
    if not messages:
        return GoalSuggestion(goal_type="qualify_lead", reason="New conversation")

    now = now or datetime.now(timezone.utc)
    recent = messages[-10:]
    text = " ".join(m.text for m in recent).lower()

    if any(w in text for w in SCHEDULING_WORDS):
        return GoalSuggestion(goal_type="book_call", reason="Contact mentioned scheduling")
    if any(w in text for w in PURCHASE_WORDS):
        return GoalSuggestion(goal_type="close_sale", reason="Contact asked about pricing or buying")
    if any(w in text for w in QUESTION_WORDS):
        return GoalSuggestion(goal_type="provide_info", reason="Contact is asking questions")
    if (now - recent[-1].sent_at).total_seconds() > 48 * 3600:
        return GoalSuggestion(goal_type="re_engage", reason="Conversation has gone quiet")
    return GoalSuggestion(goal_type="qualify_lead", reason="Default")


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


async def set_conversation_goal(
    session: AsyncSession,
    conversation_id: UUID,
    goal_type: str,
    *,
    directive: Optional[str] = None,
    context: Optional[dict] = None,
    priority: int = 1,
    user_id: Optional[str] = None,
):
    """Replace the conversation's active goal with a new one."""
    _definition(goal_type)
    conversation = await conversations_repo.require(session, conversation_id, for_update=True)

    abandoned = await goals_repo.abandon_active(session, conversation_id, "Replaced by new goal")
    goal = await goals_repo.create(
        session,
        conversation_id,
        goal_type,
        directive=directive,
        context=context,
        priority=priority,
        created_by=user_id,
    )
    await conversations_repo.update_fields(session, conversation_id, active_goal_id=goal.id)
    await audit_repo.log_action(
        session,
        "goal_set",
        conversation_id=conversation_id,
        account_id=conversation.account_id,
        goal_id=goal.id,
        action_data={"goal_type": goal_type, "priority": priority, "replaced": abandoned},
        explanation=f"Goal set: {GOAL_TYPES[goal_type]['name']}",
    )
    logger.info("Goal %s (%s) set on conversation %s", goal.id, goal_type, conversation_id)
    return goal


async def get_active_goal(session: AsyncSession, conversation_id: UUID):
    return await goals_repo.get_active(session, conversation_id)


async def update_goal_progress(
    session: AsyncSession,
    goal_id: UUID,
    messages: Sequence[ChatMessage],
    now: Optional[datetime] = None,
) -> Optional[GoalProgress]:
    """Evaluate and store progress; complete the goal when indicators say so.

    Returns None for a goal that is already completed or abandoned.
    """
    goal = await goals_repo.get(session, goal_id)
    if goal is None:
        raise GoalNotFound(goal_id)
    if goal.status != "active":
        return None

    # lock order: conversation row, then goal row
    conversation = await conversations_repo.require(session, goal.conversation_id, for_update=True)
    progress = evaluate_goal_progress(goal.goal_type, messages)
    stored = await goals_repo.record_progress(session, goal_id, progress.progress)
    if stored is None:
        return None

    if progress.completed:
        await complete_goal(session, goal, progress, now=now, conversation=conversation)
    return progress.model_copy(update={"progress": 100 if progress.completed else stored.progress_score})


async def complete_goal(
    session: AsyncSession,
    goal,
    progress: GoalProgress,
    now: Optional[datetime] = None,
    conversation=None,
) -> int:
    """Finish the goal and drop now-pointless follow-ups. The agent stays enabled.

    `conversation` is the already row-locked conversation, when the caller holds it.
    """
    if conversation is None:
        conversation = await conversations_repo.require(session, goal.conversation_id, for_update=True)
    finished = await goals_repo.finish(session, goal.id, "completed", now=now)
    if finished is None:
        return 0

    if conversation.active_goal_id == goal.id:
        await conversations_repo.update_fields(session, goal.conversation_id, active_goal_id=None)
    cancelled = await followups_repo.cancel_pending(
        session, goal.conversation_id, "Goal completed - follow-ups no longer needed"
    )
    await audit_repo.log_action(
        session,
        "goal_completed",
        conversation_id=goal.conversation_id,
        account_id=conversation.account_id,
        goal_id=goal.id,
        action_data={"indicators_found": progress.indicators_found, "cancelled_follow_ups": cancelled},
        explanation=f"Goal completed: {GOAL_TYPES[goal.goal_type]['name']}",
    )
    logger.info("Goal %s completed, %d follow-ups cancelled", goal.id, cancelled)
    return cancelled


async def abandon_goal(session: AsyncSession, goal_id: UUID, reason: str = "Manually abandoned"):
    goal = await goals_repo.get(session, goal_id)
    if goal is None:
        raise GoalNotFound(goal_id)

    conversation = await conversations_repo.require(session, goal.conversation_id, for_update=True)
    finished = await goals_repo.finish(session, goal_id, "abandoned", reason=reason)
    if finished is None:
        return None

    if conversation.active_goal_id == goal_id:
        await conversations_repo.update_fields(session, goal.conversation_id, active_goal_id=None)
    await audit_repo.log_action(
        session,
        "goal_abandoned",
        conversation_id=goal.conversation_id,
        account_id=conversation.account_id,
        goal_id=goal_id,
        action_data={"reason": reason},
    )
    return finished


async def get_goal_history(
    session: AsyncSession, conversation_id: UUID, limit: int = 10, include_active: bool = False
):
    return await goals_repo.history(session, conversation_id, limit=limit, include_active=include_active)
