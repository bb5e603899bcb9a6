"""Reply generation, splitting and dispatch schemas."""
from typing import List, Literal, Optional
from uuid import UUID
from pydantic import BaseModel

from schemas.goals import GoalProgress
from schemas.policy import SafetyDecision


SplitStrategy = Literal["none", "paragraphs", "sentences", "points", "pacing", "length"]


class SplitDecision(BaseModel):
    should_split: bool = False
    strategy: SplitStrategy = "none"
    reason: Optional[str] = None
    max_chars: Optional[int] = None
    delay_ms: Optional[int] = None


class ReplyDraft(BaseModel):
    conversation_id: UUID
    allowed: bool
    safety: SafetyDecision
    text: Optional[str] = None
    chunks: List[str] = []
    split: Optional[SplitDecision] = None
    confidence: Optional[float] = None
    takeover_activated: bool = False
    goal_progress: Optional[GoalProgress] = None


class DispatchResult(BaseModel):
    conversation_id: UUID
    sent_message_ids: List[str] = []
    chunks_total: int = 0
    blocked_reason: Optional[str] = None
    error: Optional[str] = None
    error_reason: Optional[str] = None
    retryable: bool = False

    @property
    def complete(self) -> bool:
        return len(self.sent_message_ids) == self.chunks_total and self.error is None
