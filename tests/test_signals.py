"""Unit tests for engine.signals: behavioral signal detectors."""
from datetime import timedelta
from unittest.mock import patch

import pytest

from engine.signals import (
    detect_hesitation,
    detect_interest,
    detect_partial_reply,
    detect_silence,
    detect_tone,
    detect_unanswered_question,
    detect_urgency,
    extract_signals,
    should_trigger_follow_up,
)
from factories import NOW, chat
from schemas.signals import Signal


SIGNALS_MODULE = "engine.signals"


class TestDetectSilence:
    def test_no_messages_is_not_significant(self):
        assert detect_silence([], NOW).significant is False

    def test_waiting_on_contact_past_threshold(self):
        history = chat(("in", "hi"), ("out", "Hello! How can I help?"), now=NOW - timedelta(hours=30))
        signal = detect_silence(history, NOW, silence_hours=24)
        assert signal.significant is True
        assert signal.confidence == pytest.approx(0.4 + 30 / 72 * 0.4)
        assert signal.hours_since_last == pytest.approx(30)

    def test_idle_conversation_needs_twice_the_threshold(self):
        history = chat(("out", "Hello!"), ("in", "thanks"), now=NOW - timedelta(hours=30))
        assert detect_silence(history, NOW, silence_hours=24).significant is False

        history = chat(("out", "Hello!"), ("in", "thanks"), now=NOW - timedelta(hours=50))
        signal = detect_silence(history, NOW, silence_hours=24)
        assert signal.significant is True
        assert signal.confidence == pytest.approx(0.3 + 50 / 96 * 0.3)

    def test_recent_activity(self):
        history = chat(("in", "hi"), ("out", "hello"))
        assert detect_silence(history, NOW).significant is False


class TestDetectPartialReply:
    def test_vague_short_replies(self):
        history = chat(("in", "ok"), ("out", "Anything else?"), ("in", "sure"), ("out", "Great"), ("in", "k"))
        signal = detect_partial_reply(history)
        assert signal.significant is True
        assert signal.confidence == pytest.approx(0.7)
        assert "vague" in signal.patterns

    def test_full_sentences_are_not_partial(self):
        history = chat(("in", "I would like to know more about the premium package please"))
        assert detect_partial_reply(history).significant is False


class TestDetectTone:
    def test_positive(self):
        signals = detect_tone(chat(("in", "That's great, thanks! I love it")))
        assert len(signals) == 1
        assert signals[0].type == "positive_tone"
        assert signals[0].significant is True

    def test_negative(self):
        signals = detect_tone(chat(("in", "This is spam and annoying, stop")))
        assert signals[0].type == "negative_tone"
        assert signals[0].confidence == pytest.approx(0.8)

    def test_mixed_tone_yields_nothing(self):
        assert detect_tone(chat(("in", "good but bad"))) == []

    def test_words_match_on_boundaries(self):
        # "goodbye" must not count as "good"
        assert detect_tone(chat(("in", "goodbye goodness"))) == []


class TestDetectUnansweredQuestion:
    def test_trailing_question(self):
        signal = detect_unanswered_question(chat(("out", "Hi there"), ("in", "How much is it?")))
        assert signal.significant is True
        assert set(signal.patterns) == {"no_reply", "ends_with_question"}
        assert signal.confidence == pytest.approx(0.6)

    def test_answered_question(self):
        history = chat(
            ("in", "How much is it?"),
            ("out", "The basic plan is $49 per month and includes everything you need."),
        )
        assert detect_unanswered_question(history).significant is False


class TestPatternDetectors:
    def test_interest(self):
        signal = detect_interest(chat(("in", "How much is the pricing? I'm interested")))
        assert signal.significant is True
        assert signal.confidence == pytest.approx(0.6)

    def test_hesitation(self):
        signal = detect_hesitation(chat(("in", "Hmm not sure, let me think, maybe later")))
        assert signal.significant is True

    def test_outbound_text_is_ignored(self):
        assert detect_interest(chat(("out", "Are you interested in a demo? Pricing is great"))).confidence == 0


class TestDetectUrgency:
    def test_urgent(self):
        assert detect_urgency(chat(("in", "I need this asap"))) is True

    def test_substring_is_not_urgent(self):
        assert detect_urgency(chat(("in", "nowhere to be found"))) is False

    def test_only_last_three_messages(self):
        history = chat(("in", "urgent!"), ("out", "ok"), ("in", "fine"), ("out", "sure"))
        assert detect_urgency(history) is False


class TestExtractSignals:
    def test_runs_every_detector(self):
        report = extract_signals(chat(("in", "How much is it?")), now=NOW)
        types = {s.type for s in report.signals}
        assert {"silence", "partial_reply", "question_unanswered", "interest_expressed", "hesitation", "urgency"} <= types
        assert report.failed_detectors == []

    def test_failing_detector_is_isolated(self):
        with patch(f"{SIGNALS_MODULE}.detect_interest", side_effect=RuntimeError("boom")):
            report = extract_signals(chat(("in", "How much is it?")), now=NOW)
        assert report.failed_detectors == ["interest_expressed"]
        assert any(s.type == "question_unanswered" and s.significant for s in report.signals)


class TestShouldTriggerFollowUp:
    def test_strongest_high_priority_wins(self):
        result = should_trigger_follow_up([
            Signal(type="silence", significant=True, confidence=0.55, reason="silent"),
            Signal(type="interest_expressed", significant=True, confidence=0.8, reason="interest"),
        ])
        assert result.trigger is True
        assert result.delay_hours == 4
        assert result.signal_type == "interest_expressed"

    def test_question_delay(self):
        result = should_trigger_follow_up([Signal(type="question_unanswered", significant=True, confidence=0.6)])
        assert result.delay_hours == 2

    def test_weak_high_priority_signal_does_not_trigger(self):
        result = should_trigger_follow_up([Signal(type="silence", significant=True, confidence=0.45)])
        assert result.trigger is False

    def test_two_medium_signals(self):
        result = should_trigger_follow_up([
            Signal(type="partial_reply", significant=True, confidence=0.5),
            Signal(type="hesitation", significant=True, confidence=0.45),
        ])
        assert result.trigger is True
        assert result.delay_hours == 12

    def test_single_medium_signal_does_not_trigger(self):
        result = should_trigger_follow_up([Signal(type="hesitation", significant=True, confidence=0.6)])
        assert result.trigger is False

    def test_negative_tone_checks_in_quickly(self):
        result = should_trigger_follow_up([Signal(type="negative_tone", significant=True, confidence=0.7)])
        assert result.trigger is True
        assert result.delay_hours == 1

    def test_insignificant_signals_are_ignored(self):
        assert should_trigger_follow_up([Signal(type="interest_expressed", confidence=0.9)]).trigger is False
