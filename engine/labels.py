"""Conversation labels: keyword classification and guarded transitions.

Each label carries a behavior (does it stop follow-ups, how may the agent
respond). Label changes go through a transition-guard matrix keyed by
(from_label, to_label, actor_kind) so automatic classification can never
downgrade a label a contact earned by refusing contact.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from db.repositories import audit as audit_repo
from db.repositories import conversations as conversations_repo
from db.repositories import followups as followups_repo
from db.repositories import labels as labels_repo
from engine.errors import SchedulingValidationError
from schemas.messages import ChatMessage
from schemas.policy import ActorKind, LabelBehavior, LabelDetection, LabelResult

logger = logging.getLogger(__name__)


LABELS: dict[str, LabelBehavior] = {
    "not_interested": LabelBehavior(
        display="Not Interested",
        stops_follow_ups=True,
        mode="none",
        keywords=[
            "not interested", "no thanks", "no thank you", "pass on this", "not for me",
            "don't want", "dont want", "no need", "not looking", "not right now thank you",
            "hard pass",
        ],
    ),
    "already_bought": LabelBehavior(
        display="Already Bought",
        stops_follow_ups=True,
        mode="faq_only",
        keywords=[
            "already bought", "already purchased", "already signed up", "already subscribed",
            "already have it", "already got it", "already a customer", "already using",
            "already enrolled",
        ],
    ),
    "do_not_message": LabelBehavior(
        display="Do Not Message",
        stops_follow_ups=True,
        mode="silent",
        keywords=[
            "stop messaging", "don't message", "dont message", "leave me alone",
            "stop contacting", "don't contact", "dont contact", "block", "unsubscribe",
            "stop sending", "remove me", "opt out", "stop texting",
        ],
    ),
    "agent_handling": LabelBehavior(display="Agent Handling", stops_follow_ups=True, mode="faq_only"),
    "message_later": LabelBehavior(
        display="Message Later",
        keywords=[
            "message me later", "call back", "reach out later", "contact me next",
            "message me next", "try again later", "not now but later", "maybe next week",
            "maybe next month", "get back to me", "follow up later", "remind me later",
        ],
    ),
    "interested": LabelBehavior(
        display="Interested",
        keywords=[
            "interested", "tell me more", "how much", "pricing", "sounds good", "i'm in",
            "sign me up", "let's do it", "want to know more", "send me details", "more info",
            "what are your packages", "how does it work",
        ],
    ),
    "booked": LabelBehavior(
        display="Booked",
        stops_follow_ups=True,
        mode="faq_only",
        keywords=[
            "booked", "meeting scheduled", "appointment set", "see you then",
            "confirmed the meeting", "calendar invite",
        ],
    ),
    "hot_lead": LabelBehavior(
        display="Hot Lead",
        keywords=[
            "ready to start", "when can we begin", "ready to buy", "take my money",
            "let's get started", "ready to go", "how do i pay", "where do i sign",
        ],
    ),
    "cold_lead": LabelBehavior(display="Cold Lead"),
    "needs_info": LabelBehavior(
        display="Needs Info",
        keywords=[
            "what is", "how does", "can you explain", "i have a question", "what are the",
            "tell me about", "do you offer", "what's included", "what services",
        ],
    ),
    "price_sensitive": LabelBehavior(
        display="Price Sensitive",
        keywords=[
            "too expensive", "too much", "budget", "cheaper", "discount", "can't afford",
            "cost less", "lower price", "out of my range", "promo", "deal",
        ],
    ),
    "competitor_mention": LabelBehavior(display="Competitor Mention"),
    "follow_up_sent": LabelBehavior(display="Follow-up Sent"),
    "no_response": LabelBehavior(display="No Response"),
    "converted": LabelBehavior(
        display="Converted",
        stops_follow_ups=True,
        mode="faq_only",
        keywords=[
            "deal closed", "payment received", "paid", "completed purchase",
            "transaction complete", "receipt", "order confirmed",
        ],
    ),
}

# Checked in this order; the first label with a keyword hit wins.
DETECTION_PRIORITY = (
    "do_not_message",
    "not_interested",
    "already_bought",
    "converted",
    "booked",
    "hot_lead",
    "interested",
    "message_later",
    "price_sensitive",
    "needs_info",
)

CRITICAL_LABELS = frozenset({"do_not_message", "not_interested", "already_bought"})

_NORMAL = LabelBehavior(display="None")

_PROMPT_CONTEXT = {
    "not_interested": (
        "## CRITICAL LABEL: NOT INTERESTED\n"
        "The contact said they are not interested. Do not pitch, do not follow up. "
        "Only respond if they ask a direct question, and keep it brief and polite."
    ),
    "do_not_message": (
        "## CRITICAL LABEL: DO NOT MESSAGE\n"
        "The contact asked not to be contacted. Do not send any message."
    ),
    "already_bought": (
        "## LABEL: ALREADY A CUSTOMER\n"
        "The contact already purchased. Answer support or FAQ questions only. "
        "Do not try to sell again."
    ),
    "booked": (
        "## LABEL: MEETING BOOKED\n"
        "A meeting is already booked. Answer questions and confirm details. "
        "Do not push for another booking."
    ),
    "converted": (
        "## LABEL: CONVERTED\n"
        "The contact is a paying customer. Provide support and answer questions only."
    ),
    "agent_handling": (
        "## LABEL: AGENT HANDLING\n"
        "A human agent owns this conversation. Answer only simple factual questions."
    ),
    "hot_lead": (
        "## LABEL: HOT LEAD\n"
        "The contact is ready to move forward. Make the next step easy and concrete."
    ),
    "price_sensitive": (
        "## LABEL: PRICE SENSITIVE\n"
        "The contact is concerned about cost. Lead with value and mention flexible options."
    ),
    "message_later": (
        "## LABEL: MESSAGE LATER\n"
        "The contact asked to be contacted later. Acknowledge and do not press now."
    ),
}


def get_label_behavior(label: Optional[str]) -> LabelBehavior:
    """Behavior of `label`; unknown or missing labels behave normally."""
    if label is None:
        return _NORMAL
    return LABELS.get(label, _NORMAL)


def should_block_follow_up(label: Optional[str]) -> bool:
    return get_label_behavior(label).stops_follow_ups


def should_block_reply(label: Optional[str]) -> bool:
    return get_label_behavior(label).mode in ("silent", "none")


def get_label_prompt_context(label: Optional[str]) -> str:
    return _PROMPT_CONTEXT.get(label or "", "")


def _keyword_in(keyword: str, text: str) -> bool:
    return re.search(r"(?<!\w)" + re.escape(keyword) + r"(?!\w)", text) is not None


def detect_label(messages: Sequence[ChatMessage]) -> LabelDetection:
    """Classify the last five inbound messages by keyword, in priority order."""
    inbound = [m for m in messages if m.direction == "inbound"][-5:]
    if not inbound:
        return LabelDetection()

    text = " ".join(m.text for m in inbound).lower()
    for label in DETECTION_PRIORITY:
        for keyword in LABELS[label].keywords:
            if _keyword_in(keyword, text):
                return LabelDetection(label=label, confidence=0.8, matched_keyword=keyword)
    return LabelDetection()


# ---------------------------------------------------------------------------
# Transition guards
# ---------------------------------------------------------------------------


def _build_transition_guards() -> dict[tuple[Optional[str], str, str], bool]:
    """(from_label, to_label, actor_kind) -> allowed.

    Automatic classification may move a critical label only to another
    critical label. A human may set any label.
    """
    guards = {}
    sources = [None, *LABELS]
    for source in sources:
        for target in LABELS:
            for actor in ("system", "manual"):
                allowed = True
                if actor == "system" and source in CRITICAL_LABELS and target not in CRITICAL_LABELS:
                    allowed = False
                guards[(source, target, actor)] = allowed
    return guards


TRANSITION_GUARDS = _build_transition_guards()


def is_transition_allowed(from_label: Optional[str], to_label: str, actor: ActorKind) -> bool:
    return TRANSITION_GUARDS.get((from_label, to_label, actor), actor == "manual")


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


async def apply_label(
    session: AsyncSession,
    conversation_id: UUID,
    label: str,
    *,
    actor: ActorKind = "system",
    set_by: str = "system",
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> LabelResult:
    """Set the conversation's label under a row lock.

    Returns the outcome as data: unchanged, refused by the guard matrix,
    or applied (with the number of pending follow-ups it cancelled).
    """
    if label not in LABELS:
        raise SchedulingValidationError(f"Unknown label: {label!r}")

    conversation = await conversations_repo.require(session, conversation_id, for_update=True)
    previous = conversation.label

    if previous == label:
        return LabelResult(label=label, previous_label=previous, reason="unchanged")

    if not is_transition_allowed(previous, label, actor):
        logger.info(
            "Kept critical label %s on conversation %s (refused %s from %s)",
            previous, conversation_id, label, actor,
        )
        return LabelResult(label=previous, previous_label=previous, reason="critical_label_preserved")

    now = now or datetime.now(timezone.utc)
    await conversations_repo.update_fields(
        session, conversation_id, label=label, label_set_at=now, label_set_by=set_by
    )
    await labels_repo.add_history(
        session,
        conversation_id,
        label,
        previous_label=previous,
        set_by=set_by,
        actor_kind=actor,
        reason=reason or f"Auto-detected label: {label}",
    )

    cancelled = 0
    behavior = LABELS[label]
    if behavior.stops_follow_ups:
        cancelled = await followups_repo.cancel_pending(
            session, conversation_id, f'Cancelled: label changed to "{label}"'
        )

    await audit_repo.log_action(
        session,
        "label_applied",
        conversation_id=conversation_id,
        account_id=conversation.account_id,
        action_data={
            "label": label,
            "previous_label": previous,
            "actor": actor,
            "set_by": set_by,
            "cancelled_follow_ups": cancelled,
        },
        explanation=f"Label changed from {previous or 'none'} to {label}",
    )
    logger.info("Conversation %s labelled %s (was %s)", conversation_id, label, previous)
    return LabelResult(
        label=label,
        previous_label=previous,
        changed=True,
        cancelled_follow_ups=cancelled,
    )


async def get_label_history(session: AsyncSession, conversation_id: UUID, limit: int = 20):
    return await labels_repo.history(session, conversation_id, limit=limit)
