"""ConversationPolicy: one value object per decision.

Safety flags, the label's behavior and the active goal are read together
from the same conversation snapshot, so a decision never mixes state from
two different reads.
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from db.repositories import conversations as conversations_repo
from engine.labels import get_label_behavior
from engine.safety import evaluate_safety
from schemas.config import AgentConfig
from schemas.policy import ConversationPolicy

logger = logging.getLogger(__name__)


def build_policy(
    conversation,
    config: AgentConfig,
    *,
    now: Optional[datetime] = None,
    config_version: int = 0,
) -> ConversationPolicy:
    now = now or datetime.now(timezone.utc)
    return ConversationPolicy(
        conversation_id=conversation.id,
        safety=evaluate_safety(conversation, config, now),
        label_behavior=get_label_behavior(conversation.label),
        active_goal_id=conversation.active_goal_id,
        config_version=config_version,
    )


async def load_policy(
    session: AsyncSession,
    conversation_id: UUID,
    config: AgentConfig,
    *,
    now: Optional[datetime] = None,
    config_version: int = 0,
) -> ConversationPolicy:
    """Read the conversation fresh and compute its policy."""
    conversation = await conversations_repo.require(session, conversation_id)
    return build_policy(conversation, config, now=now, config_version=config_version)
