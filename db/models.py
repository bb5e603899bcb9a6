"""SQLAlchemy 2.0 ORM models for the conversation policy engine.

Covers 10 tables across 2 schemas:
  - chat: conversations, messages, goals, follow_ups, engagement_records,
          label_history, takeover_log, opt_out_phrases, account_settings
  - obs: action_log
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    UUID,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Integer,
    JSON,
    Text,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


# ---------------------------------------------------------------------------
# Shared base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


def _in_check(column: str, values: tuple) -> str:
    return f"{column} IN (" + ", ".join(f"'{v}'" for v in values) + ")"


# ---------------------------------------------------------------------------
# Enumerated values used in CHECK constraints
# ---------------------------------------------------------------------------

CONVERSATION_LABELS = (
    "do_not_message",
    "not_interested",
    "already_bought",
    "agent_handling",
    "message_later",
    "interested",
    "booked",
    "hot_lead",
    "cold_lead",
    "needs_info",
    "price_sensitive",
    "competitor_mention",
    "follow_up_sent",
    "no_response",
    "converted",
)

GOAL_TYPES = ("book_call", "close_sale", "re_engage", "qualify_lead", "provide_info", "custom")
GOAL_STATUSES = ("active", "completed", "abandoned", "paused")

FOLLOW_UP_TYPES = (
    "manual",
    "intuition",
    "intuition_quick",
    "customer_availability",
    "reminder",
)
FOLLOW_UP_STATUSES = ("pending", "sent", "cancelled", "failed")

MESSAGE_DIRECTIONS = ("inbound", "outbound")


# ===========================================================================
# Schema: chat
# ===========================================================================


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("account_id", "participant_id", name="uq_conversation_participant"),
        CheckConstraint(
            "label IS NULL OR " + _in_check("label", CONVERSATION_LABELS),
            name="ck_conversation_label",
        ),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_conversation_confidence"),
        {"schema": "chat"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[str] = mapped_column(Text, nullable=False)
    participant_id: Mapped[str] = mapped_column(Text, nullable=False)
    participant_name: Mapped[Optional[str]] = mapped_column(Text)

    agent_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    human_takeover: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    takeover_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    opt_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    opt_out_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cooldown_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0, server_default="1.0")

    label: Mapped[Optional[str]] = mapped_column(Text)
    label_set_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    label_set_by: Mapped[Optional[str]] = mapped_column(Text)

    # Loose reference, goals already point back at the conversation
    active_goal_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    last_agent_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_inbound_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    messages: Mapped[list["Message"]] = relationship(back_populates="conversation")
    goals: Mapped[list["Goal"]] = relationship(back_populates="conversation")
    follow_ups: Mapped[list["FollowUp"]] = relationship(back_populates="conversation")


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(_in_check("direction", MESSAGE_DIRECTIONS), name="ck_message_direction"),
        {"schema": "chat"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("chat.conversations.id", ondelete="CASCADE"), nullable=False
    )
    direction: Mapped[str] = mapped_column(Text, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    external_message_id: Mapped[Optional[str]] = mapped_column(Text)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")


class Goal(Base):
    __tablename__ = "goals"
    __table_args__ = (
        CheckConstraint(_in_check("goal_type", GOAL_TYPES), name="ck_goal_type"),
        CheckConstraint(_in_check("status", GOAL_STATUSES), name="ck_goal_status"),
        CheckConstraint("progress_score >= 0 AND progress_score <= 100", name="ck_goal_progress"),
        {"schema": "chat"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("chat.conversations.id", ondelete="CASCADE"), nullable=False
    )
    goal_type: Mapped[str] = mapped_column(Text, nullable=False)
    directive: Mapped[Optional[str]] = mapped_column(Text)
    context: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="active", server_default="active")
    progress_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    abandoned_reason: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[Optional[str]] = mapped_column(Text)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    conversation: Mapped["Conversation"] = relationship(back_populates="goals")


class FollowUp(Base):
    __tablename__ = "follow_ups"
    __table_args__ = (
        CheckConstraint(_in_check("follow_up_type", FOLLOW_UP_TYPES), name="ck_follow_up_type"),
        CheckConstraint(_in_check("status", FOLLOW_UP_STATUSES), name="ck_follow_up_status"),
        CheckConstraint("retry_count >= 0", name="ck_follow_up_retry_count"),
        {"schema": "chat"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("chat.conversations.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[str] = mapped_column(Text, nullable=False)
    goal_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    follow_up_type: Mapped[str] = mapped_column(Text, nullable=False, default="manual")
    reason: Mapped[Optional[str]] = mapped_column(Text)
    message_template: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending", server_default="pending")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3, server_default="3")
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sent_message_id: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    conversation: Mapped["Conversation"] = relationship(back_populates="follow_ups")


class EngagementRecord(Base):
    __tablename__ = "engagement_records"
    __table_args__ = (
        CheckConstraint(_in_check("direction", MESSAGE_DIRECTIONS), name="ck_engagement_direction"),
        CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_engagement_day"),
        CheckConstraint("hour_of_day BETWEEN 0 AND 23", name="ck_engagement_hour"),
        {"schema": "chat"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("chat.conversations.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[str] = mapped_column(Text, nullable=False)
    participant_id: Mapped[str] = mapped_column(Text, nullable=False)
    direction: Mapped[str] = mapped_column(Text, nullable=False)
    message_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)   # 0 = Monday
    hour_of_day: Mapped[int] = mapped_column(Integer, nullable=False)
    response_latency_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    engagement_score: Mapped[float] = mapped_column(Float, nullable=False, default=1.0, server_default="1.0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class LabelHistory(Base):
    __tablename__ = "label_history"
    __table_args__ = (
        CheckConstraint(_in_check("actor_kind", ("system", "manual")), name="ck_label_history_actor"),
        {"schema": "chat"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("chat.conversations.id", ondelete="CASCADE"), nullable=False
    )
    label: Mapped[str] = mapped_column(Text, nullable=False)
    previous_label: Mapped[Optional[str]] = mapped_column(Text)
    set_by: Mapped[str] = mapped_column(Text, nullable=False, default="system")
    actor_kind: Mapped[str] = mapped_column(Text, nullable=False, default="system")
    reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class TakeoverLog(Base):
    __tablename__ = "takeover_log"
    __table_args__ = {"schema": "chat"}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("chat.conversations.id", ondelete="CASCADE"), nullable=False
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    reason_detail: Mapped[Optional[str]] = mapped_column(Text)
    triggered_by: Mapped[str] = mapped_column(Text, nullable=False, default="system")
    triggered_by_user_id: Mapped[Optional[str]] = mapped_column(Text)
    confidence: Mapped[Optional[float]] = mapped_column(Float)
    message_context: Mapped[Optional[str]] = mapped_column(Text)
    duration_hours: Mapped[Optional[float]] = mapped_column(Float)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class OptOutPhrase(Base):
    __tablename__ = "opt_out_phrases"
    __table_args__ = {"schema": "chat"}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[Optional[str]] = mapped_column(Text)  # NULL = applies to every account
    phrase: Mapped[str] = mapped_column(Text, nullable=False)
    is_regex: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AccountSettings(Base):
    __tablename__ = "account_settings"
    __table_args__ = {"schema": "chat"}

    account_id: Mapped[str] = mapped_column(Text, primary_key=True)
    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    updated_by: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


# ===========================================================================
# Schema: obs
# ===========================================================================


class ActionLog(Base):
    __tablename__ = "action_log"
    __table_args__ = {"schema": "obs"}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))  # loose ref
    account_id: Mapped[Optional[str]] = mapped_column(Text)
    goal_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    action_type: Mapped[str] = mapped_column(Text, nullable=False)
    action_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    explanation: Mapped[Optional[str]] = mapped_column(Text)
    confidence: Mapped[Optional[float]] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
