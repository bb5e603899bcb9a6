"""Unit tests for engine.splitter: split decisions and text preservation."""
import random

import pytest

from engine.splitter import (
    count_sentences,
    decide_message_split,
    split_by_length,
    split_by_paragraphs,
    split_by_points,
    split_by_sentences,
    split_for_pacing,
    split_message,
)
from schemas.replies import SplitDecision


WORDS = (
    "our", "plan", "includes", "weekly", "calls", "and", "a", "private", "community",
    "pricing", "starts", "at", "$49", "per", "month", "you", "can", "cancel", "anytime",
    "3.5", "e.g.", "support", "is", "available", "on", "weekdays",
)


def _non_ws(text):
    return "".join(text.split())


def _random_text(rng: random.Random) -> str:
    blocks = []
    for _ in range(rng.randint(1, 6)):
        kind = rng.random()
        if kind < 0.3:
            blocks.append("\n".join(
                f"{rng.choice(['-', '*', '•', f'{i + 1}.'])} " + " ".join(rng.choices(WORDS, k=rng.randint(3, 20)))
                for i in range(rng.randint(1, 7))
            ))
        else:
            sentences = [
                " ".join(rng.choices(WORDS, k=rng.randint(2, 25))).capitalize() + rng.choice([".", "!", "?", "..."])
                for _ in range(rng.randint(1, 8))
            ]
            blocks.append(" ".join(sentences))
    return rng.choice(["\n\n", "\n", " "]).join(blocks)


class TestDecideMessageSplit:
    def test_short_message_not_split(self):
        assert decide_message_split("Sure, see you then!").should_split is False

    def test_urgent_under_ceiling_not_split(self):
        decision = decide_message_split("x " * 350, is_urgent=True)
        assert decision.should_split is False
        assert decision.reason == "urgent"

    def test_urgent_over_ceiling_still_split(self):
        assert decide_message_split("word. " * 150, is_urgent=True).should_split is True

    def test_long_with_points(self):
        text = "Here are the options:\n" + "\n".join(f"- option {i} " + "detail " * 12 for i in range(6))
        decision = decide_message_split(text)
        assert decision.strategy == "points"

    def test_long_with_paragraphs(self):
        text = ("First paragraph. " * 20) + "\n\n" + ("Second paragraph. " * 20)
        assert decide_message_split(text).strategy == "paragraphs"

    def test_long_plain(self):
        decision = decide_message_split("A sentence here. " * 40)
        assert decision.strategy == "sentences"
        assert decision.max_chars == 500

    def test_custom_threshold(self):
        assert decide_message_split("A sentence here. " * 10, threshold=100).should_split is True

    def test_pacing_for_young_conversations(self):
        text = " ".join(["word"] * 60) + "."
        decision = decide_message_split(text, conversation_length=1)
        assert decision.strategy == "pacing"
        assert decision.delay_ms == 1000
        assert decide_message_split(text, conversation_length=5).should_split is False


class TestStrategies:
    def test_sentences_respect_limit(self):
        text = "One two three. Four five six! Seven eight nine? Ten."
        chunks = split_by_sentences(text, 20)
        assert chunks == ["One two three.", "Four five six!", "Seven eight nine?", "Ten."]

    def test_overlong_sentence_cut_by_length(self):
        chunks = split_by_sentences("word " * 30, 40)
        assert all(len(c) <= 40 for c in chunks)

    def test_length_cuts_unbroken_words(self):
        assert split_by_length("x" * 25, 10) == ["x" * 10, "x" * 10, "x" * 5]

    def test_paragraph_grouping(self):
        text = "Short one.\n\nShort two.\n\n" + "Long " * 100
        chunks = split_by_paragraphs(text)
        assert chunks[0] == "Short one.\n\nShort two."
        assert len(chunks) == 2

    def test_points_intro_and_groups_of_three(self):
        text = "Here is what we offer:\n- Coaching\n- Community\n- Templates\n- Reviews\n- Support"
        chunks = split_by_points(text)
        assert chunks[0] == "Here is what we offer:"
        assert chunks[1] == "- Coaching\n- Community\n- Templates"
        assert chunks[2] == "- Reviews\n- Support"

    def test_short_intro_merged_into_first_group(self):
        chunks = split_by_points("Options:\n1. Basic\n2. Pro")
        assert chunks == ["Options:\n1. Basic\n2. Pro"]

    def test_trailing_text_kept_with_last_point(self):
        chunks = split_by_points("- one\n- two\nLet me know which you prefer!")
        assert chunks[-1].endswith("Let me know which you prefer!")

    def test_pacing_two_parts(self):
        assert split_for_pacing("One. Two. Three. Four.") == ["One. Two.", "Three. Four."]
        assert split_for_pacing("Just one.") == ["Just one."]

    def test_count_sentences(self):
        assert count_sentences("Hi. How are you? Great!") == 3
        assert count_sentences("") == 0


class TestSplitMessage:
    def test_no_split_returns_original(self):
        assert split_message("hello", SplitDecision()) == ["hello"]

    def test_empty_text(self):
        assert split_message("", SplitDecision(should_split=True, strategy="sentences")) == [""]

    def test_long_bulleted_reply(self):
        intro = "Thanks for asking about our programs! Here is a quick overview of everything included:"
        points = [
            f"- Program {i}: weekly live sessions, recorded lessons and direct feedback from coaches"
            for i in range(1, 7)
        ]
        text = intro + "\n" + "\n".join(points)
        assert len(text) > 500

        chunks = split_message(text, decide_message_split(text))

        assert chunks[0] == intro
        assert len(chunks) == 3
        for chunk in chunks[1:]:
            assert len(chunk.splitlines()) <= 3
            assert len(chunk) <= 400
        assert _non_ws("".join(chunks)) == _non_ws(text)

    @pytest.mark.parametrize("seed", range(40))
    def test_text_is_preserved(self, seed):
        rng = random.Random(seed)
        text = _random_text(rng)
        for decision in (
            decide_message_split(text, conversation_length=rng.randint(0, 5), threshold=rng.choice([100, 250, 500])),
            SplitDecision(should_split=True, strategy="points", max_chars=400),
            SplitDecision(should_split=True, strategy="paragraphs"),
            SplitDecision(should_split=True, strategy="sentences", max_chars=rng.randint(20, 300)),
            SplitDecision(should_split=True, strategy="pacing"),
            SplitDecision(should_split=True, strategy="length", max_chars=rng.randint(5, 200)),
        ):
            chunks = split_message(text, decision)
            assert len(chunks) >= 1
            assert _non_ws("".join(chunks)) == _non_ws(text), decision.strategy
