"""Event handlers: inbound messages, replies and due follow-ups.

The session-level functions (handle_inbound, generate_reply,
process_follow_up) run inside one caller-owned transaction. The run_*
functions own their sessions: one per event, so a failure in one
conversation rolls back only that conversation's work.
"""
import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from db.connection import get_db
from db.repositories import audit as audit_repo
from db.repositories import conversations as conversations_repo
from db.repositories import followups as followups_repo
from db.repositories import messages as messages_repo
from engine import best_time, followups, goals, labels, safety
from engine.config import ConfigService
from engine.dispatch import dispatch_reply
from engine.errors import CompletionError
from engine.policy import build_policy
from engine.signals import detect_urgency
from engine.splitter import decide_message_split, split_message
from schemas.config import AgentConfig
from schemas.messages import ChatMessage, InboundEvent, InboundOutcome
from schemas.replies import DispatchResult, ReplyDraft
from schemas.scheduling import FollowUpOutcome
from tools.completion_tools import complete as default_complete
from tools.messenger_tools import send_message

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20

CompleteFn = Callable[..., Awaitable[str]]

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant replying to customers in a business chat on behalf of the page. "
    "Be concise, friendly and accurate. Never invent prices, dates or policies you were not given."
)

FOLLOW_UP_INSTRUCTIONS = (
    "## Follow-up Message\n"
    "Write one short, friendly follow-up message to re-open the conversation. "
    "Do not repeat earlier messages verbatim and do not pressure the contact."
)


async def _history(session: AsyncSession, conversation_id: UUID, limit: int = HISTORY_LIMIT) -> list[ChatMessage]:
    return [ChatMessage.model_validate(m) for m in await messages_repo.recent(session, conversation_id, limit=limit)]


def build_system_prompt(
    config: AgentConfig,
    conversation,
    *,
    base_prompt: Optional[str] = None,
    knowledge_context: Optional[str] = None,
    extra_instructions: Optional[str] = None,
) -> str:
    """Base instructions plus knowledge, label context and caller extras."""
    parts = [base_prompt or config.system_prompt or DEFAULT_SYSTEM_PROMPT]
    if conversation.participant_name:
        parts.append(f"You are talking with {conversation.participant_name}.")
    knowledge = "\n\n".join(k for k in (config.knowledge_base, knowledge_context) if k)
    if knowledge:
        parts.append(f"## Knowledge Base\n{knowledge}")
    if config.booking_url:
        parts.append(f"When the contact wants to book a call, share this link: {config.booking_url}")
    label_context = labels.get_label_prompt_context(conversation.label)
    if label_context:
        parts.append(label_context)
    if extra_instructions:
        parts.append(extra_instructions)
    return "\n\n".join(parts)


def _completion_messages(system_prompt: str, history: list[ChatMessage]) -> list[dict]:
    messages = [{"role": "system", "content": system_prompt}]
    for message in history:
        role = "user" if message.direction == "inbound" else "assistant"
        messages.append({"role": role, "content": message.text})
    return messages


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------


async def handle_inbound(
    session: AsyncSession,
    event: InboundEvent,
    config: AgentConfig,
) -> InboundOutcome:
    """Record an inbound message and update the conversation's state from it."""
    conversation = await conversations_repo.get_or_create(
        session, event.account_id, event.sender_id, event.sender_name
    )
    outcome = InboundOutcome(conversation_id=conversation.id)

    if event.is_echo:
        # sent from the page inbox by a person, not by the agent
        await messages_repo.add(
            session, conversation.id, "outbound", event.text,
            sent_at=event.timestamp, external_message_id=event.message_id,
        )
        await conversations_repo.update_fields(session, conversation.id, last_message_at=event.timestamp)
        return outcome.model_copy(update={"echo": True})

    await messages_repo.add(
        session, conversation.id, "inbound", event.text,
        sent_at=event.timestamp, external_message_id=event.message_id,
    )
    await best_time.record_engagement(
        session, conversation, config, direction="inbound", message_at=event.timestamp
    )
    conversation = await conversations_repo.update_fields(
        session, conversation.id, last_inbound_at=event.timestamp, last_message_at=event.timestamp
    )

    phrases = await safety.load_opt_out_phrases(session, event.account_id)
    opt_out = safety.detect_opt_out(event.text, phrases)
    if opt_out.opted_out:
        if not conversation.opt_out:
            await safety.mark_opted_out(
                session, conversation.id, matched_phrase=opt_out.matched_phrase, message_context=event.text
            )
        result = await labels.apply_label(
            session, conversation.id, "do_not_message", reason=f"Opt-out phrase: {opt_out.matched_phrase}"
        )
        return outcome.model_copy(update={
            "opted_out": True,
            "opt_out_phrase": opt_out.matched_phrase,
            "label": result.label,
            "label_changed": result.changed,
            "label_reason": result.reason,
        })

    updates = {}
    cancelled = await followups_repo.cancel_pending(
        session, conversation.id, "Cancelled: contact replied", types=("intuition",)
    )
    updates["cancelled_follow_ups"] = cancelled

    history = await _history(session, conversation.id)
    detection = labels.detect_label(history)
    if detection.label:
        result = await labels.apply_label(
            session,
            conversation.id,
            detection.label,
            reason=f"Auto-detected label: {detection.label} (matched '{detection.matched_keyword}')",
        )
        updates.update(label=result.label, label_changed=result.changed, label_reason=result.reason)
    else:
        updates["label"] = conversation.label

    conversation = await conversations_repo.require(session, conversation.id)
    policy = build_policy(conversation, config)
    if not policy.label_behavior.stops_follow_ups and policy.safety.reason not in ("opted_out", "agent_disabled"):
        scheduled = await followups.schedule_based_on_availability(
            session, conversation.id, event.text, config, now=event.timestamp
        )
        if scheduled is not None and scheduled.scheduled:
            updates["availability_follow_up_id"] = scheduled.follow_up_id

    goal = await goals.get_active_goal(session, conversation.id)
    if goal is not None:
        progress = await goals.update_goal_progress(session, goal.id, history)
        if progress is not None:
            updates.update(goal_progress=progress.progress, goal_completed=progress.completed)

    return outcome.model_copy(update=updates)


# ---------------------------------------------------------------------------
# Replies
# ---------------------------------------------------------------------------


async def generate_reply(
    session: AsyncSession,
    conversation_id: UUID,
    config: AgentConfig,
    *,
    complete: CompleteFn = default_complete,
    base_prompt: Optional[str] = None,
    knowledge_context: Optional[str] = None,
    extra_instructions: Optional[str] = None,
) -> ReplyDraft:
    """Draft a reply if the gate allows it. Completion failures propagate."""
    decision = await safety.check_safety_status(session, conversation_id, config)
    if not decision.allowed:
        logger.info("Reply for %s not generated: %s", conversation_id, decision.reason)
        return ReplyDraft(conversation_id=conversation_id, allowed=False, safety=decision)

    conversation = await conversations_repo.require(session, conversation_id)
    history = await _history(session, conversation_id)
    goal = await goals.get_active_goal(session, conversation_id)

    prompt = build_system_prompt(
        config,
        conversation,
        base_prompt=base_prompt,
        knowledge_context=knowledge_context,
        extra_instructions=extra_instructions,
    )
    if goal is not None:
        prompt = goals.shape_prompt_for_goal(
            prompt, goal.goal_type, directive=goal.directive, context=goal.context, progress=goal.progress_score
        )

    text = await complete(
        _completion_messages(prompt, history),
        temperature=config.temperature,
        max_tokens=config.max_tokens,
    )

    score = safety.evaluate_confidence(text, has_context=bool(knowledge_context or config.knowledge_base))
    last_inbound = next((m.text for m in reversed(history) if m.direction == "inbound"), None)
    confidence = await safety.update_confidence(
        session, conversation_id, score, config, message_context=last_inbound
    )

    progress = None
    if goal is not None:
        progress = await goals.update_goal_progress(
            session, goal.id, history + [ChatMessage(direction="outbound", text=text, sent_at=datetime.now(timezone.utc))]
        )

    split = decide_message_split(
        text,
        conversation_length=len(history),
        is_urgent=detect_urgency(history),
        threshold=config.default_message_split_threshold,
    )
    chunks = split_message(text, split)

    await audit_repo.log_action(
        session,
        "message_generated",
        conversation_id=conversation_id,
        account_id=conversation.account_id,
        goal_id=goal.id if goal is not None else None,
        action_data={
            "length": len(text),
            "chunks": len(chunks),
            "split_strategy": split.strategy,
            "takeover_activated": confidence.takeover_activated,
        },
        explanation="Reply generated",
        confidence=confidence.confidence,
    )
    return ReplyDraft(
        conversation_id=conversation_id,
        allowed=True,
        safety=decision,
        text=text,
        chunks=chunks,
        split=split,
        confidence=confidence.confidence,
        takeover_activated=confidence.takeover_activated,
        goal_progress=progress,
    )


async def respond(
    conversation_id: UUID,
    config_service: ConfigService,
    *,
    complete: CompleteFn = default_complete,
    send: Callable[..., dict] = send_message,
    knowledge_context: Optional[str] = None,
) -> tuple[ReplyDraft, Optional[DispatchResult]]:
    """Generate and send a reply, committing the draft before dispatch.

    The draft's own transaction is committed first so a takeover written by
    another process while chunks are going out is visible to the dispatch's
    per-chunk safety re-check.
    """
    async with get_db() as session:
        conversation = await conversations_repo.require(session, conversation_id)
    snapshot = await config_service.snapshot(conversation.account_id)

    async with get_db() as session:
        draft = await generate_reply(
            session, conversation_id, snapshot.config, complete=complete, knowledge_context=knowledge_context
        )
    if not draft.allowed or not draft.chunks:
        return draft, None

    async with get_db() as session:
        result = await dispatch_reply(session, conversation_id, draft.chunks, snapshot.config, send=send)
    return draft, result


async def run_inbound(event: InboundEvent, config_service: ConfigService) -> InboundOutcome:
    snapshot = await config_service.snapshot(event.account_id)
    async with get_db() as session:
        return await handle_inbound(session, event, snapshot.config)


# ---------------------------------------------------------------------------
# Scheduled follow-ups
# ---------------------------------------------------------------------------


async def _follow_up_text(session, follow_up, conversation, config: AgentConfig, complete: CompleteFn) -> str:
    if follow_up.message_template:
        return follow_up.message_template

    history = await _history(session, conversation.id)
    extra = FOLLOW_UP_INSTRUCTIONS
    if follow_up.reason:
        extra += f"\nReason for this follow-up: {follow_up.reason}"
    prompt = build_system_prompt(config, conversation, extra_instructions=extra)
    goal = await goals.get_active_goal(session, conversation.id)
    if goal is not None:
        prompt = goals.shape_prompt_for_goal(
            prompt, goal.goal_type, directive=goal.directive, context=goal.context, progress=goal.progress_score
        )
    return await complete(
        _completion_messages(prompt, history),
        temperature=config.temperature,
        max_tokens=min(config.max_tokens, 300),
    )


async def process_follow_up(
    session: AsyncSession,
    follow_up_id: UUID,
    config: AgentConfig,
    *,
    complete: CompleteFn = default_complete,
    send: Callable[..., dict] = send_message,
    now: Optional[datetime] = None,
) -> FollowUpOutcome:
    """Deliver one due follow-up, or defer, cancel or fail it.

    The follow-up row stays locked until the session commits so two pollers
    never deliver the same entry.
    """
    now = now or datetime.now(timezone.utc)
    follow_up = await followups_repo.get(session, follow_up_id, for_update=True)
    if follow_up is None or follow_up.status != "pending":
        return FollowUpOutcome(follow_up_id=follow_up_id, outcome="skipped", reason="not_pending")

    conversation = await conversations_repo.require(session, follow_up.conversation_id)
    outcome = FollowUpOutcome(follow_up_id=follow_up_id, conversation_id=conversation.id, outcome="skipped")
    policy = build_policy(conversation, config, now=now)

    if not policy.safety.allowed:
        if policy.safety.reason == "cooldown" and policy.safety.cooldown_ends_at is not None:
            await followups_repo.reschedule(session, follow_up_id, policy.safety.cooldown_ends_at)
            return outcome.model_copy(update={"outcome": "deferred", "reason": "cooldown"})
        await followups.cancel_follow_up(session, follow_up_id, f"Blocked: {policy.safety.reason}")
        return outcome.model_copy(update={"outcome": "cancelled", "reason": policy.safety.reason})

    if not policy.may_schedule_proactive:
        reason = f"Proactive follow-ups suppressed for label {conversation.label}"
        await followups.cancel_follow_up(session, follow_up_id, reason)
        return outcome.model_copy(update={"outcome": "cancelled", "reason": "proactive_suppressed"})

    if config.max_messages_per_day == 0:
        await followups.cancel_follow_up(session, follow_up_id, "Proactive follow-ups disabled: daily cap is 0")
        return outcome.model_copy(update={"outcome": "cancelled", "reason": "daily_cap"})

    recent_sends = await messages_repo.outbound_since(session, conversation.id, now - timedelta(days=1))
    if recent_sends and len(recent_sends) >= config.max_messages_per_day:
        next_slot = recent_sends[0] + timedelta(days=1)
        await followups_repo.reschedule(session, follow_up_id, next_slot)
        return outcome.model_copy(update={"outcome": "deferred", "reason": "daily_cap"})

    try:
        text = await _follow_up_text(session, follow_up, conversation, config, complete)
    except CompletionError as exc:
        retry = await followups.mark_follow_up_failed(
            session, follow_up_id, f"Completion failed: {exc}", now, retryable=exc.retryable
        )
        return outcome.model_copy(update={
            "outcome": "retrying" if retry.will_retry else "failed",
            "reason": "completion_error",
        })

    chunks = split_message(
        text,
        decide_message_split(
            text, conversation_length=HISTORY_LIMIT, threshold=config.default_message_split_threshold
        ),
    )
    result = await dispatch_reply(session, conversation.id, chunks, config, proactive=True, send=send, now=now)

    if result.sent_message_ids:
        await followups.mark_follow_up_sent(session, follow_up_id, result.sent_message_ids[0], now)
        return outcome.model_copy(update={"outcome": "sent", "message_ids": result.sent_message_ids})
    if result.blocked_reason:
        await followups.cancel_follow_up(session, follow_up_id, f"Blocked: {result.blocked_reason}")
        return outcome.model_copy(update={"outcome": "cancelled", "reason": result.blocked_reason})

    retry = await followups.mark_follow_up_failed(
        session, follow_up_id, result.error or "Delivery failed", now, retryable=result.retryable
    )
    return outcome.model_copy(update={
        "outcome": "retrying" if retry.will_retry else "failed",
        "reason": result.error_reason,
    })


async def _process_conversation_batch(
    follow_up_ids: list[UUID],
    account_id: str,
    config_service: ConfigService,
    complete: CompleteFn,
    send: Callable[..., dict],
    now: datetime,
) -> list[FollowUpOutcome]:
    snapshot = await config_service.snapshot(account_id)
    outcomes = []
    for follow_up_id in follow_up_ids:
        try:
            async with get_db() as session:
                outcomes.append(
                    await process_follow_up(
                        session, follow_up_id, snapshot.config, complete=complete, send=send, now=now
                    )
                )
        except Exception:
            logger.exception("Processing follow-up %s failed", follow_up_id)
            outcomes.append(FollowUpOutcome(follow_up_id=follow_up_id, outcome="skipped", reason="error"))
    return outcomes


async def process_due_follow_ups(
    config_service: ConfigService,
    *,
    complete: CompleteFn = default_complete,
    send: Callable[..., dict] = send_message,
    now: Optional[datetime] = None,
    limit: int = 50,
) -> list[FollowUpOutcome]:
    """Process every due follow-up.

    Entries of one conversation go in order; different conversations run
    concurrently.
    """
    now = now or datetime.now(timezone.utc)
    async with get_db() as session:
        due = await followups.get_due_follow_ups(session, now, limit=limit)
        batches = defaultdict(list)
        accounts = {}
        for follow_up in due:
            batches[follow_up.conversation_id].append(follow_up.id)
            accounts[follow_up.conversation_id] = follow_up.account_id

    results = await asyncio.gather(*(
        _process_conversation_batch(ids, accounts[conversation_id], config_service, complete, send, now)
        for conversation_id, ids in batches.items()
    ))
    outcomes = [o for batch in results for o in batch]
    logger.info("Processed %d due follow-ups across %d conversations", len(outcomes), len(batches))
    return outcomes


async def scan_silent_conversations(
    config_service: ConfigService,
    *,
    now: Optional[datetime] = None,
    min_silence_hours: float = 24,
    account_id: Optional[str] = None,
    limit: int = 100,
) -> dict:
    """Trigger intuition follow-ups for conversations that have gone quiet."""
    now = now or datetime.now(timezone.utc)
    async with get_db() as session:
        candidates = await conversations_repo.find_silent(
            session,
            silent_before=now - timedelta(hours=min_silence_hours),
            now=now,
            account_id=account_id,
            limit=limit,
        )
        candidates = [(c.id, c.account_id, c.last_message_at) for c in candidates]

    summary = {"checked": len(candidates), "scheduled": 0, "skipped": 0, "errors": 0}
    for conversation_id, conversation_account, last_message_at in candidates:
        snapshot = await config_service.snapshot(conversation_account)
        if now - last_message_at < timedelta(hours=snapshot.config.intuition_silence_hours):
            summary["skipped"] += 1
            continue
        try:
            async with get_db() as session:
                result = await followups.trigger_intuition_follow_up(
                    session, conversation_id, snapshot.config, now=now
                )
        except Exception:
            logger.exception("Silence scan failed for conversation %s", conversation_id)
            summary["errors"] += 1
            continue
        summary["scheduled" if result.scheduled else "skipped"] += 1
    logger.info("Silence scan: %s", summary)
    return summary
