"""Splitting generated replies into chat-sized chunks.

decide_message_split() picks a strategy, split_message() applies it. Every
strategy keeps all of the input's non-whitespace text, in order, and always
returns at least one chunk.
"""
import logging
import re
from typing import Optional

from schemas.replies import SplitDecision

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 500
URGENT_CEILING = 800
PARAGRAPH_GROUP_CHARS = 400
POINT_GROUP_CHARS = 400
POINTS_PER_GROUP = 3
MIN_INTRO_CHARS = 10
PACING_MIN_WORDS = 50
PACING_DELAY_MS = 1000
YOUNG_CONVERSATION = 3

_BULLET = re.compile(r"^\s*(?:[-•*]\s|\d+[.)]\s)")
_BULLETS_ANYWHERE = re.compile(r"^\s*(?:[-•*]\s|\d+\.)", re.MULTILINE)
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE = re.compile(r"[^.!?]*[.!?]+|[^.!?]+$")


def count_sentences(text: str) -> int:
    return len([s for s in _SENTENCE.findall(text) if s.strip()])


def decide_message_split(
    message: str,
    *,
    conversation_length: int = 0,
    is_urgent: bool = False,
    threshold: int = DEFAULT_THRESHOLD,
) -> SplitDecision:
    text = message or ""
    length = len(text)

    if is_urgent and length < URGENT_CEILING:
        return SplitDecision(should_split=False, strategy="none", reason="urgent")

    if length > threshold:
        if _BULLETS_ANYWHERE.search(text):
            return SplitDecision(should_split=True, strategy="points", reason="long_with_points", max_chars=threshold)
        paragraphs = [p for p in _PARAGRAPH_BREAK.split(text) if p.strip()]
        if len(paragraphs) > 1:
            return SplitDecision(
                should_split=True, strategy="paragraphs", reason="long_with_paragraphs", max_chars=threshold
            )
        return SplitDecision(should_split=True, strategy="sentences", reason="long", max_chars=threshold)

    if conversation_length < YOUNG_CONVERSATION and len(text.split()) > PACING_MIN_WORDS:
        return SplitDecision(
            should_split=True, strategy="pacing", reason="new_conversation", delay_ms=PACING_DELAY_MS
        )

    return SplitDecision(should_split=False, strategy="none")


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def split_by_length(text: str, max_chars: int) -> list[str]:
    """Break at the last space before max_chars; words longer than that are cut."""
    chunks = []
    remaining = text.strip()
    while len(remaining) > max_chars:
        cut = remaining.rfind(" ", 0, max_chars + 1)
        if cut <= 0:
            cut = max_chars
        chunks.append(remaining[:cut].strip())
        remaining = remaining[cut:].strip()
    if remaining:
        chunks.append(remaining)
    return chunks or [text]


def split_by_sentences(text: str, max_chars: int) -> list[str]:
    sentences = [s.strip() for s in _SENTENCE.findall(text) if s.strip()]
    chunks = []
    current = ""
    for sentence in sentences:
        if len(sentence) > max_chars:
            if current:
                chunks.append(current)
                current = ""
            chunks.extend(split_by_length(sentence, max_chars))
            continue
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= max_chars:
            current = candidate
        else:
            chunks.append(current)
            current = sentence
    if current:
        chunks.append(current)
    return chunks or [text]


def split_by_paragraphs(text: str, max_chars: int = PARAGRAPH_GROUP_CHARS) -> list[str]:
    paragraphs = [p.strip() for p in _PARAGRAPH_BREAK.split(text) if p.strip()]
    chunks = []
    current = ""
    for paragraph in paragraphs:
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if not current or len(candidate) < max_chars:
            current = candidate
        else:
            chunks.append(current)
            current = paragraph
    if current:
        chunks.append(current)
    return chunks or [text]


def split_by_points(text: str, max_chars: int = POINT_GROUP_CHARS) -> list[str]:
    """Intro first, then the list items in groups of up to three.

    Lines that are not list items stay attached to the item above them, so
    wrapped items and closing remarks are kept.
    """
    intro_lines = []
    points: list[list[str]] = []
    for line in text.splitlines():
        if _BULLET.match(line):
            points.append([line.rstrip()])
        elif points:
            if line.strip():
                points[-1].append(line.rstrip())
        elif line.strip():
            intro_lines.append(line.strip())

    if not points:
        return split_by_sentences(text, max_chars)

    groups = []
    current: list[str] = []
    for point in points:
        block = "\n".join(point)
        if current and (len(current) >= POINTS_PER_GROUP or len("\n".join(current + [block])) > max_chars):
            groups.append("\n".join(current))
            current = []
        current.append(block)
    if current:
        groups.append("\n".join(current))

    intro = "\n".join(intro_lines)
    if intro and len(intro) > MIN_INTRO_CHARS:
        return [intro, *groups]
    if intro:
        groups[0] = f"{intro}\n{groups[0]}"
    return groups


def split_for_pacing(text: str) -> list[str]:
    sentences = [s.strip() for s in _SENTENCE.findall(text) if s.strip()]
    if len(sentences) <= 2:
        return [text.strip() or text]
    return [" ".join(sentences[:2]), " ".join(sentences[2:])]


def split_message(text: str, decision: Optional[SplitDecision] = None) -> list[str]:
    """Apply `decision` (or decide with defaults) and return the chunks."""
    if decision is None:
        decision = decide_message_split(text)
    if not decision.should_split or not (text or "").strip():
        return [text]

    max_chars = decision.max_chars or DEFAULT_THRESHOLD
    if decision.strategy == "points":
        chunks = split_by_points(text, min(max_chars, POINT_GROUP_CHARS))
    elif decision.strategy == "paragraphs":
        chunks = split_by_paragraphs(text)
    elif decision.strategy == "sentences":
        chunks = split_by_sentences(text, max_chars)
    elif decision.strategy == "pacing":
        chunks = split_for_pacing(text)
    elif decision.strategy == "length":
        chunks = split_by_length(text, max_chars)
    else:
        chunks = [text]

    chunks = [c for c in chunks if c.strip()]
    return chunks or [text]
