"""Builders for chat histories and ORM-like stand-ins used across the tests."""
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from schemas.messages import ChatMessage


NOW = datetime(2026, 3, 4, 15, 0, tzinfo=timezone.utc)  # a Wednesday


def chat(*turns, now=NOW, spacing_minutes=10):
    """Build a history from ("in"|"out", text) pairs, oldest first, ending at `now`."""
    start = now - timedelta(minutes=spacing_minutes * (len(turns) - 1))
    return [
        ChatMessage(
            direction="inbound" if who == "in" else "outbound",
            text=text,
            sent_at=start + timedelta(minutes=spacing_minutes * i),
        )
        for i, (who, text) in enumerate(turns)
    ]


def make_conversation(**overrides):
    """A plain object with the Conversation columns the engine reads."""
    values = {
        "id": uuid.uuid4(),
        "account_id": "page-1",
        "participant_id": "psid-1",
        "participant_name": None,
        "agent_enabled": True,
        "human_takeover": False,
        "takeover_until": None,
        "opt_out": False,
        "opt_out_at": None,
        "cooldown_until": None,
        "confidence": 1.0,
        "label": None,
        "active_goal_id": None,
        "last_agent_message_at": None,
        "last_inbound_at": None,
        "last_message_at": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)
