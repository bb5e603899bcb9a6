"""Conversation repository: lookup, row locking and policy field updates."""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Conversation
from engine.errors import ConversationNotFound

logger = logging.getLogger(__name__)


async def get(
    session: AsyncSession, conversation_id: UUID, *, for_update: bool = False
) -> Optional[Conversation]:
    """Return the conversation, re-read from the database, or None.

    for_update=True takes a row lock held until the session's transaction ends,
    serializing concurrent writers on the same conversation.
    """
    stmt = select(Conversation).where(Conversation.id == conversation_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    return result.scalar_one_or_none()


async def require(
    session: AsyncSession, conversation_id: UUID, *, for_update: bool = False
) -> Conversation:
    """Like get(), but raises ConversationNotFound instead of returning None."""
    conversation = await get(session, conversation_id, for_update=for_update)
    if conversation is None:
        raise ConversationNotFound(conversation_id)
    return conversation


async def get_by_participant(
    session: AsyncSession, account_id: str, participant_id: str
) -> Optional[Conversation]:
    result = await session.execute(
        select(Conversation)
        .where(Conversation.account_id == account_id)
        .where(Conversation.participant_id == participant_id)
    )
    return result.scalar_one_or_none()


async def get_or_create(
    session: AsyncSession,
    account_id: str,
    participant_id: str,
    participant_name: Optional[str] = None,
) -> Conversation:
    """Return the conversation for (account, participant), inserting it if new.

    Only the inbound webhook path creates conversations; every other
    operation addresses an existing conversation by id.
    """
    stmt = (
        pg_insert(Conversation)
        .values(
            account_id=account_id,
            participant_id=participant_id,
            participant_name=participant_name,
        )
        .on_conflict_do_nothing(index_elements=["account_id", "participant_id"])
    )
    await session.execute(stmt)
    await session.flush()
    conversation = await get_by_participant(session, account_id, participant_id)
    if participant_name and conversation.participant_name != participant_name:
        conversation.participant_name = participant_name
        await session.flush()
    return conversation


async def update_fields(session: AsyncSession, conversation_id: UUID, **values) -> Optional[Conversation]:
    """Write the given columns and return the refreshed conversation."""
    result = await session.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(updated_at=func.now(), **values)
        .returning(Conversation),
        execution_options={"populate_existing": True},
    )
    await session.flush()
    return result.scalar_one_or_none()


async def clear_expired_takeover(session: AsyncSession, conversation_id: UUID, now: datetime) -> bool:
    """Clear a takeover flag whose expiry has passed. Returns True if cleared."""
    result = await session.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .where(Conversation.human_takeover.is_(True))
        .where(Conversation.takeover_until.is_not(None))
        .where(Conversation.takeover_until <= now)
        .values(human_takeover=False, takeover_until=None, updated_at=func.now())
        .returning(Conversation.id)
    )
    await session.flush()
    cleared = result.first() is not None
    if cleared:
        logger.info("Expired takeover cleared for conversation %s", conversation_id)
    return cleared


async def find_silent(
    session: AsyncSession,
    *,
    silent_before: datetime,
    now: datetime,
    account_id: Optional[str] = None,
    limit: int = 100,
) -> list[Conversation]:
    """Return agent-enabled conversations with no message since silent_before.

    Opted-out, taken-over and cooling-down conversations are excluded.
    """
    stmt = (
        select(Conversation)
        .where(Conversation.agent_enabled.is_(True))
        .where(Conversation.opt_out.is_(False))
        .where(
            or_(
                Conversation.human_takeover.is_(False),
                Conversation.takeover_until <= now,
            )
        )
        .where(or_(Conversation.cooldown_until.is_(None), Conversation.cooldown_until <= now))
        .where(Conversation.last_message_at.is_not(None))
        .where(Conversation.last_message_at < silent_before)
        .order_by(Conversation.last_message_at)
        .limit(limit)
    )
    if account_id is not None:
        stmt = stmt.where(Conversation.account_id == account_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())
