"""Best-time estimation and follow-up scheduling schemas."""
from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID
from pydantic import BaseModel, Field


BestTimeSource = Literal["contact", "peers", "default"]
FollowUpType = Literal["manual", "intuition", "intuition_quick", "customer_availability", "reminder"]


class BestTimeSlot(BaseModel):
    day_of_week: int = Field(ge=0, le=6)  # 0 = Monday
    hour_of_day: int = Field(ge=0, le=23)
    score: float
    count: int = 0
    next_occurrence: datetime


class BestTimeResult(BaseModel):
    slots: List[BestTimeSlot]
    next_best_time: datetime
    confidence: float = Field(ge=0.0, le=1.0)
    data_points: int = 0
    source: BestTimeSource = "default"

    @property
    def used_peer_data(self) -> bool:
        return self.source == "peers"


class ScheduleResult(BaseModel):
    scheduled: bool
    follow_up_id: Optional[UUID] = None
    scheduled_at: Optional[datetime] = None
    follow_up_type: Optional[FollowUpType] = None
    reason: Optional[str] = None  # refusal reason when not scheduled
    cancelled_existing: int = 0
    best_time_confidence: Optional[float] = None


class QuickFollowUpRefusal(BaseModel):
    reason: Literal["opted_out", "human_takeover", "quick_cooldown", "too_many_pending", "proactive_suppressed"]
    wait_minutes: Optional[int] = None
    pending_count: Optional[int] = None


class RetryOutcome(BaseModel):
    follow_up_id: UUID
    retry_count: int
    will_retry: bool
    next_attempt_at: Optional[datetime] = None
    status: str


class AvailabilityMention(BaseModel):
    target_time: datetime
    matched_text: str
    pattern: str


FollowUpStatusOutcome = Literal["sent", "deferred", "cancelled", "failed", "retrying", "skipped"]


class FollowUpOutcome(BaseModel):
    follow_up_id: UUID
    conversation_id: Optional[UUID] = None
    outcome: FollowUpStatusOutcome
    reason: Optional[str] = None
    message_ids: List[str] = []
