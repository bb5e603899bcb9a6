"""Safety gate, label and per-decision policy schemas."""
from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict


LabelMode = Literal["normal", "faq_only", "silent", "none"]
ActorKind = Literal["system", "manual"]


class LabelBehavior(BaseModel):
    model_config = ConfigDict(frozen=True)

    display: str
    stops_follow_ups: bool = False
    mode: LabelMode = "normal"
    keywords: List[str] = []


class LabelDetection(BaseModel):
    label: Optional[str] = None
    confidence: float = 0.0
    matched_keyword: Optional[str] = None


class LabelResult(BaseModel):
    label: Optional[str]
    previous_label: Optional[str] = None
    changed: bool = False
    reason: Optional[str] = None  # e.g. unchanged, critical_label_preserved
    cancelled_follow_ups: int = 0


class SafetyDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: Optional[str] = None
    human_takeover: bool = False
    opted_out: bool = False
    in_cooldown: bool = False
    confidence: float = 1.0
    label: Optional[str] = None
    faq_only: bool = False
    cooldown_ends_at: Optional[datetime] = None
    takeover_ends_at: Optional[datetime] = None


class ConversationPolicy(BaseModel):
    """Everything one decision needs to know about a conversation, computed fresh."""
    model_config = ConfigDict(frozen=True)

    conversation_id: UUID
    safety: SafetyDecision
    label_behavior: LabelBehavior
    active_goal_id: Optional[UUID] = None
    config_version: int = 0

    @property
    def may_reply(self) -> bool:
        return self.safety.allowed

    @property
    def may_schedule_proactive(self) -> bool:
        # cooldown only delays proactive sends, it never forbids scheduling them
        if not self.safety.allowed and self.safety.reason != "cooldown":
            return False
        return self.label_behavior.mode == "normal" and not self.label_behavior.stops_follow_ups


class ConfidenceUpdate(BaseModel):
    confidence: float
    takeover_activated: bool = False


class OptOutMatch(BaseModel):
    opted_out: bool
    matched_phrase: Optional[str] = None
