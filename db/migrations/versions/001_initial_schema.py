"""Initial schema: chat and obs tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


_LABELS = (
    "'do_not_message','not_interested','already_bought','agent_handling',"
    "'message_later','interested','booked','hot_lead','cold_lead','needs_info',"
    "'price_sensitive','competitor_mention','follow_up_sent','no_response','converted'"
)


def _uuid_pk():
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def _conversation_fk():
    return sa.Column(
        "conversation_id",
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey("chat.conversations.id", ondelete="CASCADE"),
        nullable=False,
    )


def _created_at():
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))


def _updated_at():
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS chat")
    op.execute("CREATE SCHEMA IF NOT EXISTS obs")

    # ─── Chat Schema ─────────────────────────────────────────────────────────

    op.create_table(
        "conversations",
        _uuid_pk(),
        sa.Column("account_id", sa.Text, nullable=False),
        sa.Column("participant_id", sa.Text, nullable=False),
        sa.Column("participant_name", sa.Text, nullable=True),
        sa.Column("agent_enabled", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("human_takeover", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("takeover_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("opt_out", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("opt_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cooldown_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confidence", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("label", sa.Text, nullable=True),
        sa.Column("label_set_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("label_set_by", sa.Text, nullable=True),
        sa.Column("active_goal_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("last_agent_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_inbound_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint(f"label IS NULL OR label IN ({_LABELS})", name="ck_conversation_label"),
        sa.CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_conversation_confidence"),
        sa.UniqueConstraint("account_id", "participant_id", name="uq_conversation_participant"),
        schema="chat",
    )
    op.create_index(
        "ix_conversations_silence", "conversations", ["account_id", "last_message_at"], schema="chat"
    )

    op.create_table(
        "messages",
        _uuid_pk(),
        _conversation_fk(),
        sa.Column("direction", sa.Text, nullable=False),
        sa.Column("text", sa.Text, nullable=False, server_default=""),
        sa.Column("external_message_id", sa.Text, nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        _created_at(),
        sa.CheckConstraint("direction IN ('inbound','outbound')", name="ck_message_direction"),
        schema="chat",
    )
    op.create_index("ix_messages_conversation_sent", "messages", ["conversation_id", "sent_at"], schema="chat")

    op.create_table(
        "goals",
        _uuid_pk(),
        _conversation_fk(),
        sa.Column("goal_type", sa.Text, nullable=False),
        sa.Column("directive", sa.Text, nullable=True),
        sa.Column("context", sa.JSON, nullable=True),
        sa.Column("priority", sa.Integer, nullable=False, server_default="1"),
        sa.Column("status", sa.Text, nullable=False, server_default="active"),
        sa.Column("progress_score", sa.Integer, nullable=False, server_default="0"),
        sa.Column("abandoned_reason", sa.Text, nullable=True),
        sa.Column("created_by", sa.Text, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint(
            "goal_type IN ('book_call','close_sale','re_engage','qualify_lead','provide_info','custom')",
            name="ck_goal_type",
        ),
        sa.CheckConstraint("status IN ('active','completed','abandoned','paused')", name="ck_goal_status"),
        sa.CheckConstraint("progress_score >= 0 AND progress_score <= 100", name="ck_goal_progress"),
        schema="chat",
    )

    op.create_table(
        "follow_ups",
        _uuid_pk(),
        _conversation_fk(),
        sa.Column("account_id", sa.Text, nullable=False),
        sa.Column("goal_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("follow_up_type", sa.Text, nullable=False, server_default="manual"),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("message_template", sa.Text, nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_message_id", sa.Text, nullable=True),
        sa.Column("created_by", sa.Text, nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint(
            "follow_up_type IN ('manual','intuition','intuition_quick','customer_availability','reminder')",
            name="ck_follow_up_type",
        ),
        sa.CheckConstraint("status IN ('pending','sent','cancelled','failed')", name="ck_follow_up_status"),
        sa.CheckConstraint("retry_count >= 0", name="ck_follow_up_retry_count"),
        schema="chat",
    )
    op.create_index("ix_follow_ups_due", "follow_ups", ["status", "scheduled_at"], schema="chat")

    op.create_table(
        "engagement_records",
        _uuid_pk(),
        _conversation_fk(),
        sa.Column("account_id", sa.Text, nullable=False),
        sa.Column("participant_id", sa.Text, nullable=False),
        sa.Column("direction", sa.Text, nullable=False),
        sa.Column("message_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("day_of_week", sa.Integer, nullable=False),
        sa.Column("hour_of_day", sa.Integer, nullable=False),
        sa.Column("response_latency_seconds", sa.Integer, nullable=True),
        sa.Column("engagement_score", sa.Float, nullable=False, server_default="1.0"),
        _created_at(),
        sa.CheckConstraint("direction IN ('inbound','outbound')", name="ck_engagement_direction"),
        sa.CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_engagement_day"),
        sa.CheckConstraint("hour_of_day BETWEEN 0 AND 23", name="ck_engagement_hour"),
        schema="chat",
    )
    op.create_index(
        "ix_engagement_account_message_at", "engagement_records", ["account_id", "message_at"], schema="chat"
    )

    op.create_table(
        "label_history",
        _uuid_pk(),
        _conversation_fk(),
        sa.Column("label", sa.Text, nullable=False),
        sa.Column("previous_label", sa.Text, nullable=True),
        sa.Column("set_by", sa.Text, nullable=False, server_default="system"),
        sa.Column("actor_kind", sa.Text, nullable=False, server_default="system"),
        sa.Column("reason", sa.Text, nullable=True),
        _created_at(),
        sa.CheckConstraint("actor_kind IN ('system','manual')", name="ck_label_history_actor"),
        schema="chat",
    )

    op.create_table(
        "takeover_log",
        _uuid_pk(),
        _conversation_fk(),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("reason_detail", sa.Text, nullable=True),
        sa.Column("triggered_by", sa.Text, nullable=False, server_default="system"),
        sa.Column("triggered_by_user_id", sa.Text, nullable=True),
        sa.Column("confidence", sa.Float, nullable=True),
        sa.Column("message_context", sa.Text, nullable=True),
        sa.Column("duration_hours", sa.Float, nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.Text, nullable=True),
        _created_at(),
        schema="chat",
    )

    op.create_table(
        "opt_out_phrases",
        _uuid_pk(),
        sa.Column("account_id", sa.Text, nullable=True),
        sa.Column("phrase", sa.Text, nullable=False),
        sa.Column("is_regex", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
        _created_at(),
        schema="chat",
    )

    op.create_table(
        "account_settings",
        sa.Column("account_id", sa.Text, primary_key=True),
        sa.Column("config", sa.JSON, nullable=False),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("updated_by", sa.Text, nullable=True),
        _updated_at(),
        schema="chat",
    )

    # ─── Obs Schema ──────────────────────────────────────────────────────────

    op.create_table(
        "action_log",
        _uuid_pk(),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("account_id", sa.Text, nullable=True),
        sa.Column("goal_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("action_type", sa.Text, nullable=False),
        sa.Column("action_data", sa.JSON, nullable=True),
        sa.Column("explanation", sa.Text, nullable=True),
        sa.Column("confidence", sa.Float, nullable=True),
        _created_at(),
        schema="obs",
    )
    op.create_index("ix_action_log_conversation", "action_log", ["conversation_id", "created_at"], schema="obs")


def downgrade() -> None:
    op.drop_table("action_log", schema="obs")
    for table in (
        "account_settings",
        "opt_out_phrases",
        "takeover_log",
        "label_history",
        "engagement_records",
        "follow_ups",
        "goals",
        "messages",
        "conversations",
    ):
        op.drop_table(table, schema="chat")
