"""Chat message and inbound event schemas."""
from datetime import datetime, timezone
from typing import Literal, Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict, field_validator


Direction = Literal["inbound", "outbound"]


def _as_utc(value: datetime) -> datetime:
    # naive timestamps are read as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ChatMessage(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    direction: Direction
    text: str = ""
    sent_at: datetime

    @field_validator("sent_at")
    @classmethod
    def sent_at_is_aware(cls, v):
        return _as_utc(v)

    @property
    def is_inbound(self) -> bool:
        return self.direction == "inbound"


class InboundEvent(BaseModel):
    """A normalized webhook message event."""
    account_id: str
    sender_id: str
    text: str = ""
    timestamp: datetime
    is_echo: bool = False  # sent from the page inbox by a human operator
    message_id: Optional[str] = None
    sender_name: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def timestamp_is_aware(cls, v):
        return _as_utc(v)


class InboundOutcome(BaseModel):
    conversation_id: UUID
    echo: bool = False
    opted_out: bool = False
    opt_out_phrase: Optional[str] = None
    label: Optional[str] = None
    label_changed: bool = False
    label_reason: Optional[str] = None
    availability_follow_up_id: Optional[UUID] = None
    goal_progress: Optional[int] = None
    goal_completed: bool = False
    cancelled_follow_ups: int = 0
