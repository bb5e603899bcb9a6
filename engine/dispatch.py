"""Chunked reply delivery.

Chunks of one reply go out in order with a pause between them. The safety
gate is re-read before every chunk, so a takeover or opt-out committed
while a reply is in flight stops the remaining chunks. Each dispatch
sequences only itself; other conversations are never blocked.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from db.repositories import audit as audit_repo
from db.repositories import conversations as conversations_repo
from db.repositories import messages as messages_repo
from engine.safety import check_safety_status, set_cooldown
from schemas.config import AgentConfig
from schemas.replies import DispatchResult
from tools.messenger_tools import booking_quick_replies, send_message

logger = logging.getLogger(__name__)

MESSAGING_WINDOW = timedelta(hours=24)
NO_BOOKING_LABELS = ("booked", "converted")


def _messaging_type(conversation, proactive: bool, now: datetime) -> tuple[str, Optional[str]]:
    if not proactive:
        return "RESPONSE", None
    last_inbound = conversation.last_inbound_at
    if last_inbound is None or now - last_inbound > MESSAGING_WINDOW:
        return "MESSAGE_TAG", "ACCOUNT_UPDATE"
    return "UPDATE", None


async def dispatch_reply(
    session: AsyncSession,
    conversation_id: UUID,
    chunks: Sequence[str],
    config: AgentConfig,
    *,
    proactive: bool = False,
    send: Callable[..., dict] = send_message,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    now: Optional[datetime] = None,
) -> DispatchResult:
    """Send `chunks` in order; stop at the first denial or delivery failure."""
    conversation = await conversations_repo.require(session, conversation_id)
    result = DispatchResult(conversation_id=conversation_id, chunks_total=len(chunks))
    messaging_type, tag = _messaging_type(conversation, proactive, now or datetime.now(timezone.utc))

    for index, chunk in enumerate(chunks):
        if index > 0:
            await sleep(config.inter_chunk_delay_seconds)

        decision = await check_safety_status(session, conversation_id, config)
        if not decision.allowed:
            result.blocked_reason = decision.reason
            logger.info(
                "Dispatch to %s stopped before chunk %d/%d: %s",
                conversation_id, index + 1, len(chunks), decision.reason,
            )
            break

        quick_replies = None
        is_last = index == len(chunks) - 1
        if is_last and config.booking_url and decision.label not in NO_BOOKING_LABELS:
            quick_replies = booking_quick_replies(config.booking_url)

        response = await asyncio.to_thread(
            send,
            conversation.account_id,
            conversation.participant_id,
            chunk,
            quick_replies,
            messaging_type,
            tag,
        )
        if response.get("error"):
            result.error = response["error"]
            result.error_reason = response.get("reason")
            result.retryable = bool(response.get("retryable"))
            logger.warning(
                "Delivery to %s failed on chunk %d/%d (%s): %s",
                conversation_id, index + 1, len(chunks), result.error_reason, result.error,
            )
            break

        message_id = response.get("message_id") or ""
        result.sent_message_ids.append(message_id)
        await messages_repo.add(
            session,
            conversation_id,
            "outbound",
            chunk,
            sent_at=datetime.now(timezone.utc),
            external_message_id=message_id or None,
        )

    if result.sent_message_ids:
        sent_at = datetime.now(timezone.utc)
        await set_cooldown(session, conversation_id, config.default_cooldown_hours, now=sent_at)
        await conversations_repo.update_fields(session, conversation_id, last_message_at=sent_at)
        await audit_repo.log_action(
            session,
            "message_sent",
            conversation_id=conversation_id,
            account_id=conversation.account_id,
            goal_id=conversation.active_goal_id,
            action_data={
                "chunks_sent": len(result.sent_message_ids),
                "chunks_total": len(chunks),
                "message_ids": result.sent_message_ids,
                "proactive": proactive,
                "blocked_reason": result.blocked_reason,
                "error_reason": result.error_reason,
            },
            explanation=f"Sent {len(result.sent_message_ids)} of {len(chunks)} message(s)",
        )
    return result
