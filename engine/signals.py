"""Behavioral signal extraction over a conversation's recent history.

Every detector is a pure function of the message list (oldest first) and
`now`. extract_signals() runs them all; a detector that raises is logged
and skipped so one bad input never hides the other signals.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

from schemas.messages import ChatMessage
from schemas.signals import FollowUpRecommendation, Signal, SignalReport

logger = logging.getLogger(__name__)


POSITIVE_WORDS = (
    "great", "awesome", "love", "perfect", "thanks", "thank you", "amazing",
    "excellent", "good", "nice", "wonderful", "happy", "excited", "cool",
    "😊", "👍", "❤️", "🙏", "😀", "🔥",
)
NEGATIVE_WORDS = (
    "not interested", "no thanks", "annoying", "stop", "spam", "bad",
    "terrible", "hate", "angry", "frustrated", "disappointed", "waste",
    "scam", "😠", "👎", "😡", "🙄",
)
VAGUE_REPLIES = {"ok", "okay", "sure", "yes", "maybe", "hmm", "idk", "k"}

INTEREST_PATTERNS = (
    r"\bhow much\b",
    r"\bpric(?:e|es|ing)\b",
    r"\bwhen can\b",
    r"\bhow do i\b",
    r"\btell me more\b",
    r"\binterested\b",
    r"\bsign (?:me )?up\b",
    r"\bavailab(?:le|ility)\b",
    r"\bbook(?:ing)?\b",
    r"\bdemo\b",
)
HESITATION_PATTERNS = (
    r"\bmaybe\b",
    r"\bnot sure\b",
    r"\bi'?ll think\b",
    r"\bthink about it\b",
    r"\blet me (?:check|see|think)\b",
    r"\bperhaps\b",
    r"\bi don'?t know\b",
    r"\bidk\b",
    r"\bhm+\b",
    r"\blater\b",
)
URGENCY_KEYWORDS = (
    "urgent", "asap", "emergency", "immediately", "now",
    "deadline", "today", "quick", "fast", "hurry",
)

HIGH_PRIORITY = {"silence": 24, "question_unanswered": 2, "interest_expressed": 4}
MEDIUM_PRIORITY = ("partial_reply", "hesitation")


def _inbound(messages: Sequence[ChatMessage], last: int) -> list[ChatMessage]:
    return [m for m in messages if m.direction == "inbound"][-last:]


def _hours_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 3600


def _count_phrases(text: str, phrases: Iterable[str]) -> list[str]:
    found = []
    for phrase in phrases:
        if phrase.isascii():
            if re.search(r"\b" + re.escape(phrase) + r"\b", text):
                found.append(phrase)
        elif phrase in text:
            found.append(phrase)
    return found


# ---------------------------------------------------------------------------
# Detectors
# ---------------------------------------------------------------------------


def detect_silence(
    messages: Sequence[ChatMessage], now: datetime, silence_hours: float = 24
) -> Signal:
    """Silence is significant when we are waiting past `silence_hours`,
    or when nobody has written for twice that long."""
    if not messages:
        return Signal(type="silence", reason="No messages")

    last = messages[-1]
    hours = _hours_between(last.sent_at, now)
    waiting = last.direction == "outbound"

    if waiting and hours > silence_hours:
        return Signal(
            type="silence",
            significant=True,
            confidence=min(0.4 + hours / 72 * 0.4, 0.8),
            hours_since_last=hours,
            reason=f"No reply for {int(hours)} hours after our last message",
        )
    if hours > silence_hours * 2:
        return Signal(
            type="silence",
            significant=True,
            confidence=min(0.3 + hours / 96 * 0.3, 0.6),
            hours_since_last=hours,
            reason=f"Conversation idle for {int(hours)} hours",
        )
    return Signal(type="silence", hours_since_last=hours, reason="Recent activity")


def detect_partial_reply(messages: Sequence[ChatMessage]) -> Signal:
    recent = _inbound(messages, 3)
    if not recent:
        return Signal(type="partial_reply")

    score = 0.0
    patterns = []
    for message in recent:
        text = message.text.strip()
        if len(text) < 10:
            score += 0.15
            patterns.append("short")
        if text.endswith(".."):
            score += 0.25
            patterns.append("trailing_off")
        if text.lower().strip(".!") in VAGUE_REPLIES:
            score += 0.2
            patterns.append("vague")

    # asked something earlier, then went quiet on it
    if any("?" in m.text for m in recent[:-1]) and "?" not in recent[-1].text:
        score += 0.1
        patterns.append("dropped_question")

    score = min(score, 0.7)
    return Signal(
        type="partial_reply",
        significant=score > 0.3,
        confidence=score,
        patterns=patterns,
        reason="Short or trailing replies" if patterns else "",
    )


def detect_tone(messages: Sequence[ChatMessage]) -> list[Signal]:
    recent = _inbound(messages, 5)
    text = " ".join(m.text for m in recent).lower()
    positive = _count_phrases(text, POSITIVE_WORDS)
    negative = _count_phrases(text, NEGATIVE_WORDS)
    p, n = len(positive), len(negative)

    if p > n + 1:
        return [Signal(
            type="positive_tone",
            significant=p >= 2,
            confidence=min(0.3 + 0.15 * p, 0.7),
            patterns=positive,
            reason="Positive language",
        )]
    if n > p + 1:
        return [Signal(
            type="negative_tone",
            significant=True,
            confidence=min(0.4 + 0.15 * n, 0.8),
            patterns=negative,
            reason="Negative language",
        )]
    return []


def detect_unanswered_question(messages: Sequence[ChatMessage]) -> Signal:
    score = 0.0
    patterns = []
    for i, message in enumerate(messages):
        if message.direction != "inbound" or "?" not in message.text:
            continue
        reply = next((m for m in messages[i + 1:] if m.direction == "outbound"), None)
        if reply is None:
            score += 0.25
            patterns.append("no_reply")
        elif len(reply.text.strip()) < 20:
            score += 0.15
            patterns.append("brief_reply")

    if messages and messages[-1].direction == "inbound" and "?" in messages[-1].text:
        score += 0.35
        patterns.append("ends_with_question")

    score = min(score, 0.8)
    return Signal(
        type="question_unanswered",
        significant=score > 0.3,
        confidence=score,
        patterns=patterns,
        reason="Contact question may be unanswered" if patterns else "",
    )


def _pattern_signal(messages, signal_type, patterns, step, cap, threshold) -> Signal:
    text = " ".join(m.text for m in _inbound(messages, 5)).lower()
    matched = [p for p in patterns if re.search(p, text)]
    score = min(step * len(matched), cap)
    return Signal(
        type=signal_type,
        significant=score > threshold,
        confidence=score,
        patterns=matched,
        reason=f"{len(matched)} pattern(s) matched" if matched else "",
    )


def detect_interest(messages: Sequence[ChatMessage]) -> Signal:
    return _pattern_signal(messages, "interest_expressed", INTEREST_PATTERNS, 0.2, 0.85, 0.3)


def detect_hesitation(messages: Sequence[ChatMessage]) -> Signal:
    return _pattern_signal(messages, "hesitation", HESITATION_PATTERNS, 0.15, 0.7, 0.25)


def detect_urgency(messages: Sequence[ChatMessage]) -> bool:
    """True if any of the last three messages uses urgency language."""
    text = " ".join(m.text for m in messages[-3:]).lower()
    return bool(_count_phrases(text, URGENCY_KEYWORDS))


def _urgency_signal(messages: Sequence[ChatMessage]) -> Signal:
    urgent = detect_urgency(_inbound(messages, 3))
    return Signal(
        type="urgency",
        significant=urgent,
        confidence=0.6 if urgent else 0.0,
        reason="Urgent language" if urgent else "",
    )


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def extract_signals(
    messages: Sequence[ChatMessage],
    now: Optional[datetime] = None,
    silence_hours: float = 24,
) -> SignalReport:
    """Run every detector over `messages` (oldest first)."""
    now = now or datetime.now(timezone.utc)
    detectors: list[tuple[str, Callable[[], object]]] = [
        ("silence", lambda: detect_silence(messages, now, silence_hours)),
        ("partial_reply", lambda: detect_partial_reply(messages)),
        ("tone", lambda: detect_tone(messages)),
        ("question_unanswered", lambda: detect_unanswered_question(messages)),
        ("interest_expressed", lambda: detect_interest(messages)),
        ("hesitation", lambda: detect_hesitation(messages)),
        ("urgency", lambda: _urgency_signal(messages)),
    ]

    report = SignalReport()
    for name, detector in detectors:
        try:
            result = detector()
        except Exception:
            logger.exception("Signal detector %s failed", name)
            report.failed_detectors.append(name)
            continue
        if isinstance(result, list):
            report.signals.extend(result)
        else:
            report.signals.append(result)
    return report


def should_trigger_follow_up(signals: Sequence[Signal]) -> FollowUpRecommendation:
    """Decide whether the extracted signals warrant a proactive follow-up."""
    significant = [s for s in signals if s.significant]

    high = [s for s in significant if s.type in HIGH_PRIORITY and s.confidence > 0.5]
    if high:
        best = max(high, key=lambda s: s.confidence)
        return FollowUpRecommendation(
            trigger=True,
            reason=best.reason or best.type,
            delay_hours=HIGH_PRIORITY[best.type],
            signal_type=best.type,
        )

    medium = [s for s in significant if s.type in MEDIUM_PRIORITY and s.confidence > 0.4]
    if len(medium) >= 2:
        return FollowUpRecommendation(
            trigger=True,
            reason="Multiple hesitation signals",
            delay_hours=12,
            signal_type=medium[0].type,
        )

    negative = next((s for s in significant if s.type == "negative_tone" and s.confidence > 0.6), None)
    if negative is not None:
        return FollowUpRecommendation(
            trigger=True,
            reason="Negative tone, check in",
            delay_hours=1,
            signal_type="negative_tone",
        )

    return FollowUpRecommendation(trigger=False)
