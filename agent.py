"""Conversation agent: command-line entry point for the event handlers.

Usage:
  # Record an inbound message (and optionally answer it)
  python agent.py inbound --account 1234 --sender 5678 --text "Hi, what are your prices?" --reply

  # Generate and send a reply for a conversation
  python agent.py respond --conversation-id <uuid>

  # Deliver due follow-ups / schedule intuition follow-ups for silent conversations
  python agent.py tick --limit 50
  python agent.py scan --silence-hours 24

  # Human operator controls
  python agent.py takeover --conversation-id <uuid> --reason "Complex pricing question" --hours 12
  python agent.py release --conversation-id <uuid>
  python agent.py goal --conversation-id <uuid> --type book_call --directive "Offer Tuesday slots"
  python agent.py agent --conversation-id <uuid> --disable
  python agent.py history --conversation-id <uuid> --kind labels
  python agent.py follow-up --conversation-id <uuid> --at "2026-03-03T10:00:00+00:00"
"""
import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from uuid import UUID

from dateutil import parser as date_parser

from db.connection import dispose_engine, get_db
from db.repositories import audit as audit_repo
from db.repositories import conversations as conversations_repo
from db.repositories import engagement as engagement_repo
from db.repositories import messages as messages_repo
from engine import followups, goals, labels, safety
from engine.config import ConfigService
from engine.conversation import process_due_follow_ups, respond, run_inbound, scan_silent_conversations
from engine.policy import load_policy
from model_config import init_provider
from schemas.messages import ChatMessage, InboundEvent

logger = logging.getLogger(__name__)


def _print(value) -> None:
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    print(json.dumps(value, indent=2, default=str))


def _row(obj) -> dict:
    return {column.key: getattr(obj, column.key) for column in obj.__table__.columns}


def _parse_time(value: str) -> datetime:
    """ISO 8601 timestamp; naive values are read as UTC."""
    parsed = date_parser.isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def _account_for(conversation_id: UUID) -> str:
    async with get_db() as session:
        conversation = await conversations_repo.require(session, conversation_id)
        return conversation.account_id


async def run_inbound_command(args, config_service: ConfigService) -> None:
    event = InboundEvent(
        account_id=args.account,
        sender_id=args.sender,
        sender_name=args.name,
        text=args.text,
        timestamp=_parse_time(args.at) if args.at else datetime.now(timezone.utc),
        is_echo=args.echo,
    )
    outcome = await run_inbound(event, config_service)
    print(f"\n[Inbound] conversation {outcome.conversation_id}")
    _print(outcome)

    if args.reply and not outcome.echo and not outcome.opted_out:
        await run_respond_command(outcome.conversation_id, config_service)


async def run_respond_command(conversation_id: UUID, config_service: ConfigService) -> None:
    init_provider()
    draft, result = await respond(conversation_id, config_service)
    if not draft.allowed:
        print(f"\n[Respond] Not replying: {draft.safety.reason}")
        return
    print(f"\n[Respond] {len(draft.chunks)} chunk(s), confidence {draft.confidence:.2f}")
    if draft.takeover_activated:
        print("  Confidence too low: handed over to a human")
    if result is not None:
        print(f"  Sent {len(result.sent_message_ids)}/{result.chunks_total}")
        if result.blocked_reason:
            print(f"  Stopped: {result.blocked_reason}")
        if result.error:
            print(f"  Delivery failed ({result.error_reason}): {result.error}")


async def run_tick(config_service: ConfigService, limit: int) -> None:
    init_provider()
    outcomes = await process_due_follow_ups(config_service, limit=limit)
    print(f"\n[Tick] Processed {len(outcomes)} follow-up(s)")
    for outcome in outcomes:
        print(f"  {outcome.follow_up_id}: {outcome.outcome}" + (f" ({outcome.reason})" if outcome.reason else ""))


async def run_scan(config_service: ConfigService, silence_hours: float, account_id, limit: int) -> None:
    summary = await scan_silent_conversations(
        config_service, min_silence_hours=silence_hours, account_id=account_id, limit=limit
    )
    print(f"\n[Scan] Checked {summary['checked']}, scheduled {summary['scheduled']}, "
          f"skipped {summary['skipped']}, errors {summary['errors']}")


async def run_takeover(conversation_id: UUID, reason: str, hours: float, user_id: str) -> None:
    async with get_db() as session:
        conversation = await safety.activate_takeover(
            session, conversation_id, reason, duration_hours=hours, triggered_by="user", user_id=user_id
        )
        print(f"\n[Takeover] Agent paused until {conversation.takeover_until}")


async def run_release(conversation_id: UUID, user_id: str) -> None:
    async with get_db() as session:
        await safety.deactivate_takeover(session, conversation_id, user_id=user_id)
    print("\n[Release] Agent re-enabled")


async def run_goal(args) -> None:
    async with get_db() as session:
        if args.abandon:
            conversation = await conversations_repo.require(session, args.conversation_id)
            if conversation.active_goal_id is None:
                print("\n[Goal] No active goal")
                return
            await goals.abandon_goal(session, conversation.active_goal_id, reason=f"Abandoned by {args.user}")
            print(f"\n[Goal] {conversation.active_goal_id} abandoned")
            return

        goal_type = args.type
        if goal_type is None:
            history = [ChatMessage.model_validate(m) for m in await messages_repo.recent(session, args.conversation_id)]
            suggestion = goals.suggest_next_goal(history)
            print(f"\n[Goal] Suggested {suggestion.goal_type}: {suggestion.reason}")
            goal_type = suggestion.goal_type
        goal = await goals.set_conversation_goal(
            session, args.conversation_id, goal_type, directive=args.directive or None, user_id=args.user
        )
        print(f"\n[Goal] {goal.goal_type} set ({goal.id})")


async def run_agent_toggle(conversation_id: UUID, enabled: bool, user_id: str) -> None:
    async with get_db() as session:
        await safety.toggle_agent(session, conversation_id, enabled, user_id=user_id)
    print(f"\n[Agent] {'enabled' if enabled else 'disabled'}")


async def run_history(conversation_id: UUID, kind: str, limit: int) -> None:
    async with get_db() as session:
        if kind == "labels":
            rows = await labels.get_label_history(session, conversation_id, limit=limit)
        elif kind == "takeovers":
            rows = await safety.get_takeover_history(session, conversation_id, limit=limit)
        elif kind == "goals":
            rows = await goals.get_goal_history(session, conversation_id, limit=limit, include_active=True)
        else:
            rows = await audit_repo.recent_actions(session, conversation_id, limit=limit)
        _print([_row(r) for r in rows])


async def run_label(conversation_id: UUID, label: str, user_id: str) -> None:
    async with get_db() as session:
        result = await labels.apply_label(
            session, conversation_id, label, actor="manual", set_by=user_id, reason="Set by operator"
        )
    _print(result)


async def run_follow_up(args, config_service: ConfigService) -> None:
    account_id = await _account_for(args.conversation_id)
    snapshot = await config_service.snapshot(account_id)
    async with get_db() as session:
        result = await followups.schedule_follow_up(
            session,
            args.conversation_id,
            snapshot.config,
            follow_up_type=args.type,
            scheduled_at=_parse_time(args.at) if args.at else None,
            use_best_time=args.best_time,
            delay_hours=args.delay_hours,
            reason=args.reason,
            message_template=args.template,
            user_id=args.user,
        )
    _print(result)


async def run_status(conversation_id: UUID, config_service: ConfigService) -> None:
    account_id = await _account_for(conversation_id)
    snapshot = await config_service.snapshot(account_id)
    async with get_db() as session:
        policy = await load_policy(session, conversation_id, snapshot.config, config_version=snapshot.version)
        pending = await followups.get_scheduled_follow_ups(session, conversation_id)
        pending = [
            {"id": str(f.id), "type": f.follow_up_type, "scheduled_at": f.scheduled_at.isoformat()}
            for f in pending
        ]
        since = datetime.now(timezone.utc) - timedelta(days=snapshot.config.best_time_lookback_days)
        engagement = await engagement_repo.analytics(session, conversation_id, since)
    _print({
        "policy": policy.model_dump(mode="json"),
        "may_reply": policy.may_reply,
        "may_schedule_proactive": policy.may_schedule_proactive,
        "pending_follow_ups": pending,
        "engagement": engagement,
    })


async def run_config(args, config_service: ConfigService) -> None:
    if args.set:
        changes = {}
        for item in args.set:
            key, _, raw = item.partition("=")
            try:
                changes[key] = json.loads(raw)
            except json.JSONDecodeError:
                changes[key] = raw
        snapshot = await config_service.update(args.account, changes, args.expected_version, updated_by=args.user)
    else:
        snapshot = await config_service.snapshot(args.account)
    _print(snapshot)


async def _run(coro) -> None:
    try:
        await coro
    finally:
        await dispose_engine()


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Conversational messaging agent")
    sub = parser.add_subparsers(dest="command")

    inbound = sub.add_parser("inbound", help="Record an inbound message")
    inbound.add_argument("--account", required=True, help="Page/account id the message was sent to")
    inbound.add_argument("--sender", required=True, help="Page-scoped id of the contact")
    inbound.add_argument("--text", required=True)
    inbound.add_argument("--name", default=None, help="Contact display name (optional)")
    inbound.add_argument("--at", default=None, help="Message time in ISO 8601 (default: now)")
    inbound.add_argument("--echo", action="store_true", default=False, help="Message was sent by a human from the page inbox")
    inbound.add_argument("--reply", action="store_true", default=False, help="Generate and send a reply afterwards")

    respond_cmd = sub.add_parser("respond", help="Generate and send a reply")
    respond_cmd.add_argument("--conversation-id", required=True, type=UUID)

    tick = sub.add_parser("tick", help="Deliver due follow-ups")
    tick.add_argument("--limit", type=int, default=50)

    scan = sub.add_parser("scan", help="Schedule intuition follow-ups for silent conversations")
    scan.add_argument("--silence-hours", type=float, default=24)
    scan.add_argument("--account", default=None)
    scan.add_argument("--limit", type=int, default=100)

    takeover = sub.add_parser("takeover", help="Pause the agent for a conversation")
    takeover.add_argument("--conversation-id", required=True, type=UUID)
    takeover.add_argument("--reason", default="manual")
    takeover.add_argument("--hours", type=float, default=24)
    takeover.add_argument("--user", default=os.environ.get("USER", "operator"))

    release = sub.add_parser("release", help="End a human takeover")
    release.add_argument("--conversation-id", required=True, type=UUID)
    release.add_argument("--user", default=os.environ.get("USER", "operator"))

    goal = sub.add_parser("goal", help="Set or abandon the conversation goal")
    goal.add_argument("--conversation-id", required=True, type=UUID)
    goal.add_argument("--type", default=None, choices=sorted(goals.GOAL_TYPES), help="Omit to use the suggested goal")
    goal.add_argument("--directive", default="")
    goal.add_argument("--abandon", action="store_true", default=False, help="Abandon the active goal instead")
    goal.add_argument("--user", default=os.environ.get("USER", "operator"))

    agent_cmd = sub.add_parser("agent", help="Enable or disable the agent for a conversation")
    agent_cmd.add_argument("--conversation-id", required=True, type=UUID)
    toggle = agent_cmd.add_mutually_exclusive_group(required=True)
    toggle.add_argument("--enable", dest="enabled", action="store_true")
    toggle.add_argument("--disable", dest="enabled", action="store_false")
    agent_cmd.add_argument("--user", default=os.environ.get("USER", "operator"))

    history = sub.add_parser("history", help="Show label, takeover, goal or action history")
    history.add_argument("--conversation-id", required=True, type=UUID)
    history.add_argument("--kind", default="actions", choices=["labels", "takeovers", "goals", "actions"])
    history.add_argument("--limit", type=int, default=20)

    label = sub.add_parser("label", help="Set the conversation label")
    label.add_argument("--conversation-id", required=True, type=UUID)
    label.add_argument("--label", required=True, choices=sorted(labels.LABELS))
    label.add_argument("--user", default=os.environ.get("USER", "operator"))

    follow_up = sub.add_parser("follow-up", help="Schedule a follow-up")
    follow_up.add_argument("--conversation-id", required=True, type=UUID)
    follow_up.add_argument("--type", default="manual", choices=["manual", "customer_availability", "reminder"])
    follow_up.add_argument("--at", default=None, help="ISO 8601 time")
    follow_up.add_argument("--delay-hours", type=float, default=None)
    follow_up.add_argument("--best-time", action="store_true", default=False)
    follow_up.add_argument("--reason", default=None)
    follow_up.add_argument("--template", default=None, help="Fixed message text instead of a generated one")
    follow_up.add_argument("--user", default=os.environ.get("USER", "operator"))

    status = sub.add_parser("status", help="Show the current policy for a conversation")
    status.add_argument("--conversation-id", required=True, type=UUID)

    config = sub.add_parser("config", help="Show or update account configuration")
    config.add_argument("--account", required=True)
    config.add_argument("--set", action="append", default=[], metavar="KEY=VALUE")
    config.add_argument("--expected-version", type=int, default=0)
    config.add_argument("--user", default=os.environ.get("USER", "operator"))

    return parser


if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    parser = _build_arg_parser()
    args = parser.parse_args()
    config_service = ConfigService()

    if args.command == "inbound":
        asyncio.run(_run(run_inbound_command(args, config_service)))

    elif args.command == "respond":
        asyncio.run(_run(run_respond_command(args.conversation_id, config_service)))

    elif args.command == "tick":
        asyncio.run(_run(run_tick(config_service, args.limit)))

    elif args.command == "scan":
        asyncio.run(_run(run_scan(config_service, args.silence_hours, args.account, args.limit)))

    elif args.command == "takeover":
        asyncio.run(_run(run_takeover(args.conversation_id, args.reason, args.hours, args.user)))

    elif args.command == "release":
        asyncio.run(_run(run_release(args.conversation_id, args.user)))

    elif args.command == "goal":
        asyncio.run(_run(run_goal(args)))

    elif args.command == "agent":
        asyncio.run(_run(run_agent_toggle(args.conversation_id, args.enabled, args.user)))

    elif args.command == "history":
        asyncio.run(_run(run_history(args.conversation_id, args.kind, args.limit)))

    elif args.command == "label":
        asyncio.run(_run(run_label(args.conversation_id, args.label, args.user)))

    elif args.command == "follow-up":
        asyncio.run(_run(run_follow_up(args, config_service)))

    elif args.command == "status":
        asyncio.run(_run(run_status(args.conversation_id, config_service)))

    elif args.command == "config":
        asyncio.run(_run(run_config(args, config_service)))

    else:
        parser.print_help()
        sys.exit(1)
