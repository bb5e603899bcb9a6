from .config import AgentConfig, ConfigSnapshot
from .messages import ChatMessage, InboundEvent, InboundOutcome
from .policy import (
    LabelBehavior,
    LabelDetection,
    LabelResult,
    SafetyDecision,
    ConversationPolicy,
    ConfidenceUpdate,
    OptOutMatch,
)
from .signals import Signal, SignalReport, FollowUpRecommendation
from .goals import GoalProgress, GoalSuggestion
from .scheduling import (
    BestTimeSlot,
    BestTimeResult,
    ScheduleResult,
    QuickFollowUpRefusal,
    RetryOutcome,
    AvailabilityMention,
    FollowUpOutcome,
)
from .replies import SplitDecision, ReplyDraft, DispatchResult

__all__ = [
    "AgentConfig", "ConfigSnapshot",
    "ChatMessage", "InboundEvent", "InboundOutcome",
    "LabelBehavior", "LabelDetection", "LabelResult", "SafetyDecision",
    "ConversationPolicy", "ConfidenceUpdate", "OptOutMatch",
    "Signal", "SignalReport", "FollowUpRecommendation",
    "GoalProgress", "GoalSuggestion",
    "BestTimeSlot", "BestTimeResult", "ScheduleResult", "QuickFollowUpRefusal",
    "RetryOutcome", "AvailabilityMention", "FollowUpOutcome",
    "SplitDecision", "ReplyDraft", "DispatchResult",
]
