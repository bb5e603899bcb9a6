"""Behavioral signal schemas."""
from typing import List, Literal, Optional
from pydantic import BaseModel, Field


SignalType = Literal[
    "silence",
    "partial_reply",
    "question_unanswered",
    "positive_tone",
    "negative_tone",
    "interest_expressed",
    "hesitation",
    "urgency",
]


class Signal(BaseModel):
    type: SignalType
    significant: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reason: str = ""
    hours_since_last: Optional[float] = None
    patterns: List[str] = []


class SignalReport(BaseModel):
    signals: List[Signal] = []
    failed_detectors: List[str] = []

    def significant(self) -> List[Signal]:
        return [s for s in self.signals if s.significant]


class FollowUpRecommendation(BaseModel):
    trigger: bool = False
    reason: Optional[str] = None
    delay_hours: Optional[float] = None
    signal_type: Optional[SignalType] = None
