"""Unit tests for engine.conversation: the event handlers, with repositories patched."""
from contextlib import asynccontextmanager
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from engine.config import StaticConfigService
from engine.conversation import (
    build_system_prompt,
    generate_reply,
    handle_inbound,
    process_due_follow_ups,
    process_follow_up,
    scan_silent_conversations,
)
from engine.errors import CompletionError
from factories import NOW, chat, make_conversation
from schemas.config import AgentConfig
from schemas.messages import InboundEvent
from schemas.policy import ConfidenceUpdate, LabelResult, SafetyDecision
from schemas.replies import DispatchResult
from schemas.scheduling import FollowUpOutcome, RetryOutcome, ScheduleResult


CONVERSATION_MODULE = "engine.conversation"
CONFIG = AgentConfig()


def _event(text, **overrides):
    values = {"account_id": "page-1", "sender_id": "psid-1", "text": text, "timestamp": NOW, "message_id": "mid.1"}
    values.update(overrides)
    return InboundEvent(**values)


def _follow_up(conversation, **overrides):
    values = {
        "id": uuid4(),
        "conversation_id": conversation.id,
        "account_id": conversation.account_id,
        "status": "pending",
        "message_template": "Hi! Just checking in.",
        "reason": None,
        "follow_up_type": "manual",
    }
    values.update(overrides)
    return SimpleNamespace(**values)


@asynccontextmanager
async def _fake_db():
    yield MagicMock()


class TestBuildSystemPrompt:
    def test_sections(self):
        config = AgentConfig(knowledge_base="We sell coaching.", booking_url="https://cal.example/book")
        conversation = make_conversation(participant_name="Sam", label="price_sensitive")

        prompt = build_system_prompt(
            config, conversation, knowledge_context="Plans start at $49.", extra_instructions="Keep it short."
        )

        assert "You are talking with Sam." in prompt
        assert "## Knowledge Base\nWe sell coaching.\n\nPlans start at $49." in prompt
        assert "https://cal.example/book" in prompt
        assert prompt.endswith("Keep it short.")

    def test_base_prompt_override(self):
        prompt = build_system_prompt(AgentConfig(system_prompt="Stored."), make_conversation(), base_prompt="Given.")
        assert prompt.startswith("Given.")
        assert "Stored." not in prompt


class TestHandleInbound:
    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.best_time.record_engagement", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.update_fields", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.messages_repo.add", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.get_or_create", new_callable=AsyncMock)
    async def test_echo_is_stored_as_outbound(self, mock_get, mock_add, mock_update, mock_engagement):
        conversation = make_conversation()
        mock_get.return_value = conversation

        outcome = await handle_inbound(MagicMock(), _event("Sent from the inbox", is_echo=True), CONFIG)

        assert outcome.echo is True
        assert mock_add.call_args.args[2] == "outbound"
        mock_engagement.assert_not_awaited()

    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.followups_repo.cancel_pending", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.labels.apply_label", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.safety.mark_opted_out", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.safety.load_opt_out_phrases", new_callable=AsyncMock, return_value=[])
    @patch(f"{CONVERSATION_MODULE}.best_time.record_engagement", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.update_fields", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.messages_repo.add", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.get_or_create", new_callable=AsyncMock)
    async def test_opt_out(
        self, mock_get, mock_add, mock_update, mock_engagement, mock_phrases, mock_mark, mock_label, mock_cancel
    ):
        conversation = make_conversation()
        mock_get.return_value = conversation
        mock_update.return_value = conversation
        mock_label.return_value = LabelResult(label="do_not_message", previous_label=None, changed=True)

        outcome = await handle_inbound(MagicMock(), _event("STOP"), CONFIG)

        assert outcome.opted_out is True
        assert outcome.opt_out_phrase == "stop"
        assert outcome.label == "do_not_message"
        mock_mark.assert_awaited_once()
        assert mock_label.call_args.args[2] == "do_not_message"
        mock_cancel.assert_not_awaited()

    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.labels.apply_label", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.safety.mark_opted_out", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.safety.load_opt_out_phrases", new_callable=AsyncMock, return_value=[])
    @patch(f"{CONVERSATION_MODULE}.best_time.record_engagement", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.update_fields", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.messages_repo.add", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.get_or_create", new_callable=AsyncMock)
    async def test_repeat_opt_out_not_marked_twice(
        self, mock_get, mock_add, mock_update, mock_engagement, mock_phrases, mock_mark, mock_label
    ):
        conversation = make_conversation(opt_out=True, agent_enabled=False, label="do_not_message")
        mock_get.return_value = conversation
        mock_update.return_value = conversation
        mock_label.return_value = LabelResult(label="do_not_message", previous_label="do_not_message", reason="unchanged")

        outcome = await handle_inbound(MagicMock(), _event("unsubscribe"), CONFIG)

        assert outcome.opted_out is True
        mock_mark.assert_not_awaited()

    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.goals.get_active_goal", new_callable=AsyncMock, return_value=None)
    @patch(f"{CONVERSATION_MODULE}.followups.schedule_based_on_availability", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.require", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.labels.apply_label", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.messages_repo.recent", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.followups_repo.cancel_pending", new_callable=AsyncMock, return_value=1)
    @patch(f"{CONVERSATION_MODULE}.safety.load_opt_out_phrases", new_callable=AsyncMock, return_value=[])
    @patch(f"{CONVERSATION_MODULE}.best_time.record_engagement", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.update_fields", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.messages_repo.add", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.get_or_create", new_callable=AsyncMock)
    async def test_reply_cancels_intuition_and_labels(
        self, mock_get, mock_add, mock_update, mock_engagement, mock_phrases, mock_cancel,
        mock_recent, mock_label, mock_require, mock_availability, mock_goal,
    ):
        conversation = make_conversation()
        mock_get.return_value = conversation
        mock_update.return_value = conversation
        mock_recent.return_value = chat(("out", "Hi! Any questions?"), ("in", "How much is it? Call me tomorrow"))
        mock_label.return_value = LabelResult(label="interested", changed=True)
        mock_require.return_value = make_conversation(id=conversation.id, label="interested")
        follow_up_id = uuid4()
        mock_availability.return_value = ScheduleResult(scheduled=True, follow_up_id=follow_up_id)

        outcome = await handle_inbound(MagicMock(), _event("How much is it? Call me tomorrow"), CONFIG)

        assert mock_add.call_args.args[2] == "inbound"
        assert mock_cancel.call_args.args[2] == "Cancelled: contact replied"
        assert mock_cancel.call_args.kwargs["types"] == ("intuition",)
        assert outcome.cancelled_follow_ups == 1
        assert mock_label.call_args.args[2] == "interested"
        assert outcome.label == "interested"
        assert outcome.label_changed is True
        assert outcome.availability_follow_up_id == follow_up_id
        assert mock_update.call_args.kwargs == {"last_inbound_at": NOW, "last_message_at": NOW}

    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.goals.get_active_goal", new_callable=AsyncMock, return_value=None)
    @patch(f"{CONVERSATION_MODULE}.followups.schedule_based_on_availability", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.require", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.messages_repo.recent", new_callable=AsyncMock, return_value=[])
    @patch(f"{CONVERSATION_MODULE}.followups_repo.cancel_pending", new_callable=AsyncMock, return_value=0)
    @patch(f"{CONVERSATION_MODULE}.safety.load_opt_out_phrases", new_callable=AsyncMock, return_value=[])
    @patch(f"{CONVERSATION_MODULE}.best_time.record_engagement", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.update_fields", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.messages_repo.add", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.get_or_create", new_callable=AsyncMock)
    async def test_stopping_label_skips_availability(
        self, mock_get, mock_add, mock_update, mock_engagement, mock_phrases, mock_cancel,
        mock_recent, mock_require, mock_availability, mock_goal,
    ):
        conversation = make_conversation(label="booked")
        mock_get.return_value = conversation
        mock_update.return_value = conversation
        mock_require.return_value = conversation

        outcome = await handle_inbound(MagicMock(), _event("thanks, talk tomorrow"), CONFIG)

        assert outcome.label == "booked"
        mock_availability.assert_not_awaited()


class TestGenerateReply:
    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.safety.check_safety_status", new_callable=AsyncMock)
    async def test_blocked_reply_skips_completion(self, mock_gate):
        mock_gate.return_value = SafetyDecision(allowed=False, reason="human_takeover", human_takeover=True)
        complete = AsyncMock()

        draft = await generate_reply(MagicMock(), uuid4(), CONFIG, complete=complete)

        assert draft.allowed is False
        assert draft.safety.reason == "human_takeover"
        complete.assert_not_awaited()

    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.audit_repo.log_action", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.safety.update_confidence", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.goals.get_active_goal", new_callable=AsyncMock, return_value=None)
    @patch(f"{CONVERSATION_MODULE}.messages_repo.recent", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.require", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.safety.check_safety_status", new_callable=AsyncMock)
    async def test_generates_and_scores(
        self, mock_gate, mock_require, mock_recent, mock_goal, mock_confidence, mock_audit
    ):
        conversation = make_conversation()
        mock_gate.return_value = SafetyDecision(allowed=True)
        mock_require.return_value = conversation
        mock_recent.return_value = chat(("in", "How much is the plan?"))
        mock_confidence.return_value = ConfidenceUpdate(confidence=1.0)
        complete = AsyncMock(return_value="The plan is $49 per month and includes weekly calls.")

        draft = await generate_reply(MagicMock(), conversation.id, CONFIG, complete=complete)

        assert draft.allowed is True
        assert draft.chunks == ["The plan is $49 per month and includes weekly calls."]
        messages = complete.call_args.args[0]
        assert messages[0]["role"] == "system"
        assert messages[1] == {"role": "user", "content": "How much is the plan?"}
        assert complete.call_args.kwargs == {"temperature": CONFIG.temperature, "max_tokens": CONFIG.max_tokens}
        assert mock_confidence.call_args.kwargs["message_context"] == "How much is the plan?"
        assert mock_audit.call_args.args[1] == "message_generated"

    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.goals.get_active_goal", new_callable=AsyncMock, return_value=None)
    @patch(f"{CONVERSATION_MODULE}.messages_repo.recent", new_callable=AsyncMock, return_value=[])
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.require", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.safety.check_safety_status", new_callable=AsyncMock)
    async def test_completion_failure_propagates(self, mock_gate, mock_require, mock_recent, mock_goal):
        mock_gate.return_value = SafetyDecision(allowed=True)
        mock_require.return_value = make_conversation()
        complete = AsyncMock(side_effect=CompletionError("provider down", retryable=True))

        with pytest.raises(CompletionError):
            await generate_reply(MagicMock(), uuid4(), CONFIG, complete=complete)


class TestProcessFollowUp:
    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.followups_repo.get", new_callable=AsyncMock)
    async def test_not_pending_is_skipped(self, mock_get):
        mock_get.return_value = SimpleNamespace(status="sent")
        outcome = await process_follow_up(MagicMock(), uuid4(), CONFIG, now=NOW)
        assert outcome.outcome == "skipped"
        assert outcome.reason == "not_pending"
        assert mock_get.call_args.kwargs == {"for_update": True}

    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.followups_repo.reschedule", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.require", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.followups_repo.get", new_callable=AsyncMock)
    async def test_cooldown_defers_to_cooldown_end(self, mock_get, mock_require, mock_reschedule):
        ends = NOW + timedelta(hours=2)
        conversation = make_conversation(cooldown_until=ends)
        follow_up = _follow_up(conversation)
        mock_get.return_value = follow_up
        mock_require.return_value = conversation

        outcome = await process_follow_up(MagicMock(), follow_up.id, CONFIG, now=NOW)

        assert outcome.outcome == "deferred"
        assert outcome.reason == "cooldown"
        assert mock_reschedule.call_args.args[1:] == (follow_up.id, ends)

    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.followups.cancel_follow_up", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.require", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.followups_repo.get", new_callable=AsyncMock)
    async def test_opted_out_is_cancelled(self, mock_get, mock_require, mock_cancel):
        conversation = make_conversation(opt_out=True)
        follow_up = _follow_up(conversation)
        mock_get.return_value = follow_up
        mock_require.return_value = conversation

        outcome = await process_follow_up(MagicMock(), follow_up.id, CONFIG, now=NOW)

        assert outcome.outcome == "cancelled"
        assert outcome.reason == "opted_out"
        mock_cancel.assert_awaited_once()

    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.followups.cancel_follow_up", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.require", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.followups_repo.get", new_callable=AsyncMock)
    async def test_faq_only_label_suppresses_proactive(self, mock_get, mock_require, mock_cancel):
        conversation = make_conversation(label="already_bought")
        follow_up = _follow_up(conversation)
        mock_get.return_value = follow_up
        mock_require.return_value = conversation

        outcome = await process_follow_up(MagicMock(), follow_up.id, CONFIG, now=NOW)

        assert outcome.outcome == "cancelled"
        assert outcome.reason == "proactive_suppressed"

    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.followups_repo.reschedule", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.messages_repo.outbound_since", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.require", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.followups_repo.get", new_callable=AsyncMock)
    async def test_daily_cap_defers_a_day_after_oldest_send(
        self, mock_get, mock_require, mock_outbound, mock_reschedule
    ):
        conversation = make_conversation()
        follow_up = _follow_up(conversation)
        mock_get.return_value = follow_up
        mock_require.return_value = conversation
        sends = [NOW - timedelta(hours=h) for h in (20, 10, 5, 3, 1)]
        mock_outbound.return_value = sends

        outcome = await process_follow_up(MagicMock(), follow_up.id, CONFIG, now=NOW)

        assert outcome.outcome == "deferred"
        assert outcome.reason == "daily_cap"
        assert mock_reschedule.call_args.args[2] == sends[0] + timedelta(days=1)

    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.followups.cancel_follow_up", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.messages_repo.outbound_since", new_callable=AsyncMock, return_value=[])
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.require", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.followups_repo.get", new_callable=AsyncMock)
    async def test_zero_daily_cap_cancels(self, mock_get, mock_require, mock_outbound, mock_cancel):
        conversation = make_conversation()
        follow_up = _follow_up(conversation)
        mock_get.return_value = follow_up
        mock_require.return_value = conversation

        outcome = await process_follow_up(
            MagicMock(), follow_up.id, AgentConfig(max_messages_per_day=0), now=NOW
        )

        assert outcome.outcome == "cancelled"
        assert outcome.reason == "daily_cap"
        assert mock_cancel.call_args.args[1] == follow_up.id
        mock_outbound.assert_not_awaited()

    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.followups.mark_follow_up_sent", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.dispatch_reply", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.messages_repo.outbound_since", new_callable=AsyncMock, return_value=[])
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.require", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.followups_repo.get", new_callable=AsyncMock)
    async def test_template_is_sent_proactively(
        self, mock_get, mock_require, mock_outbound, mock_dispatch, mock_sent
    ):
        conversation = make_conversation()
        follow_up = _follow_up(conversation)
        mock_get.return_value = follow_up
        mock_require.return_value = conversation
        mock_dispatch.return_value = DispatchResult(
            conversation_id=conversation.id, sent_message_ids=["m1"], chunks_total=1
        )
        complete = AsyncMock()

        outcome = await process_follow_up(MagicMock(), follow_up.id, CONFIG, complete=complete, now=NOW)

        assert outcome.outcome == "sent"
        assert outcome.message_ids == ["m1"]
        complete.assert_not_awaited()
        assert mock_dispatch.call_args.args[2] == ["Hi! Just checking in."]
        assert mock_dispatch.call_args.kwargs["proactive"] is True
        assert mock_sent.call_args.args[2] == "m1"

    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.followups.mark_follow_up_failed", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.goals.get_active_goal", new_callable=AsyncMock, return_value=None)
    @patch(f"{CONVERSATION_MODULE}.messages_repo.recent", new_callable=AsyncMock, return_value=[])
    @patch(f"{CONVERSATION_MODULE}.messages_repo.outbound_since", new_callable=AsyncMock, return_value=[])
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.require", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.followups_repo.get", new_callable=AsyncMock)
    async def test_completion_failure_retries(
        self, mock_get, mock_require, mock_outbound, mock_recent, mock_goal, mock_failed
    ):
        conversation = make_conversation()
        follow_up = _follow_up(conversation, message_template=None, reason="No reply in 2 days")
        mock_get.return_value = follow_up
        mock_require.return_value = conversation
        mock_failed.return_value = RetryOutcome(
            follow_up_id=follow_up.id, retry_count=1, will_retry=True, status="pending"
        )
        complete = AsyncMock(side_effect=CompletionError("timeout", retryable=True))

        outcome = await process_follow_up(MagicMock(), follow_up.id, CONFIG, complete=complete, now=NOW)

        assert outcome.outcome == "retrying"
        assert mock_failed.call_args.kwargs == {"retryable": True}
        assert complete.call_args.kwargs["max_tokens"] == 300
        assert "No reply in 2 days" in complete.call_args.args[0][0]["content"]

    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.followups.mark_follow_up_failed", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.dispatch_reply", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.messages_repo.outbound_since", new_callable=AsyncMock, return_value=[])
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.require", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.followups_repo.get", new_callable=AsyncMock)
    async def test_rejected_delivery_fails(self, mock_get, mock_require, mock_outbound, mock_dispatch, mock_failed):
        conversation = make_conversation()
        follow_up = _follow_up(conversation)
        mock_get.return_value = follow_up
        mock_require.return_value = conversation
        mock_dispatch.return_value = DispatchResult(
            conversation_id=conversation.id, chunks_total=1,
            error="outside allowed window", error_reason="outside_messaging_window", retryable=False,
        )
        mock_failed.return_value = RetryOutcome(follow_up_id=follow_up.id, retry_count=1, will_retry=False, status="failed")

        outcome = await process_follow_up(MagicMock(), follow_up.id, CONFIG, now=NOW)

        assert outcome.outcome == "failed"
        assert outcome.reason == "outside_messaging_window"
        assert mock_failed.call_args.kwargs == {"retryable": False}


class TestProcessDueFollowUps:
    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.process_follow_up", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.followups.get_due_follow_ups", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.get_db", _fake_db)
    async def test_groups_by_conversation_in_order(self, mock_due, mock_process):
        first, second = make_conversation(), make_conversation(account_id="page-2")
        entries = [_follow_up(first), _follow_up(second), _follow_up(first)]
        mock_due.return_value = entries
        mock_process.side_effect = lambda session, follow_up_id, config, **kw: FollowUpOutcome(
            follow_up_id=follow_up_id, outcome="sent"
        )

        outcomes = await process_due_follow_ups(StaticConfigService(), now=NOW)

        assert len(outcomes) == 3
        processed = [c.args[1] for c in mock_process.call_args_list]
        first_entries = [e.id for e in entries if e.conversation_id == first.id]
        assert [p for p in processed if p in first_entries] == first_entries

    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.process_follow_up", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.followups.get_due_follow_ups", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.get_db", _fake_db)
    async def test_one_failure_does_not_stop_the_batch(self, mock_due, mock_process):
        conversation = make_conversation()
        entries = [_follow_up(conversation), _follow_up(conversation)]
        mock_due.return_value = entries
        mock_process.side_effect = [
            RuntimeError("db hiccup"),
            FollowUpOutcome(follow_up_id=entries[1].id, outcome="sent"),
        ]

        outcomes = await process_due_follow_ups(StaticConfigService(), now=NOW)

        assert [o.outcome for o in outcomes] == ["skipped", "sent"]
        assert outcomes[0].reason == "error"


class TestScanSilentConversations:
    @pytest.mark.asyncio
    @patch(f"{CONVERSATION_MODULE}.followups.trigger_intuition_follow_up", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.conversations_repo.find_silent", new_callable=AsyncMock)
    @patch(f"{CONVERSATION_MODULE}.get_db", _fake_db)
    async def test_summary(self, mock_silent, mock_trigger):
        quiet = make_conversation(last_message_at=NOW - timedelta(hours=72))
        recent = make_conversation(last_message_at=NOW - timedelta(hours=30))
        broken = make_conversation(last_message_at=NOW - timedelta(hours=96))
        mock_silent.return_value = [quiet, recent, broken]
        mock_trigger.side_effect = [ScheduleResult(scheduled=True), RuntimeError("lock timeout")]
        config_service = StaticConfigService(AgentConfig(intuition_silence_hours=48))

        summary = await scan_silent_conversations(config_service, now=NOW)

        assert summary == {"checked": 3, "scheduled": 1, "skipped": 1, "errors": 1}
        assert mock_trigger.call_args_list[0].args[1] == quiet.id
