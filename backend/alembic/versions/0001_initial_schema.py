"""initial_schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Creates all tables for the Tabletop scheduler:
events, time_slots, participants, votes, webhook_events, login_tokens.
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLAlchemy Enum columns store member names
event_status = sa.Enum("draft", "finalized", "cancelled", name="eventstatus")
participant_status = sa.Enum("pending", "accepted", "waitlist", name="participantstatus")
vote_preference = sa.Enum("yes", "maybe", "no", name="votepreference")
webhook_status = sa.Enum("pending", "sent", "failed", name="webhookstatus")


def upgrade() -> None:
    # --- events ---
    op.create_table(
        "events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("slug", sa.String(32), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("status", event_status, nullable=False, server_default="draft"),
        sa.Column("min_players", sa.Integer, nullable=False, server_default="1"),
        sa.Column("max_players", sa.Integer, nullable=True),
        sa.Column("finalized_slot_id", sa.Integer, nullable=True),
        sa.Column("finalized_host_id", sa.Integer, nullable=True),
        sa.Column("location", sa.String(500), nullable=True),
        sa.Column("telegram_chat_id", sa.String(64), nullable=True),
        sa.Column("telegram_message_id", sa.String(64), nullable=True),
        sa.Column("telegram_announcement_id", sa.String(64), nullable=True),
        sa.Column("telegram_link", sa.String(255), nullable=True),
        sa.Column("discord_guild_id", sa.String(64), nullable=True),
        sa.Column("discord_channel_id", sa.String(64), nullable=True),
        sa.Column("discord_message_id", sa.String(64), nullable=True),
        sa.Column("discord_announcement_id", sa.String(64), nullable=True),
        sa.Column("manager_telegram", sa.String(100), nullable=True),
        sa.Column("manager_chat_id", sa.String(64), nullable=True),
        sa.Column("manager_discord_username", sa.String(100), nullable=True),
        sa.Column("manager_discord_id", sa.String(64), nullable=True),
        sa.Column("admin_token_hash", sa.String(64), nullable=False),
        sa.Column("recovery_token_hash", sa.String(64), nullable=True, unique=True),
        sa.Column("recovery_token_expires", sa.DateTime(timezone=True), nullable=True),
        sa.Column("quorum_viable_notified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("quorum_perfect_notified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("reminder_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("reminder_time", sa.String(8), nullable=True),
        sa.Column("reminder_days", sa.String(32), nullable=True),
        sa.Column("last_reminder_sent", sa.DateTime(timezone=True), nullable=True),
        sa.Column("from_url", sa.String(1000), nullable=True),
        sa.Column("from_url_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_events_slug", "events", ["slug"], unique=True)

    # --- time_slots ---
    op.create_table(
        "time_slots",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_time_slots_event_id", "time_slots", ["event_id"])

    # --- participants ---
    op.create_table(
        "participants",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("telegram_id", sa.String(100), nullable=True),
        sa.Column("chat_id", sa.String(64), nullable=True),
        sa.Column("discord_username", sa.String(100), nullable=True),
        sa.Column("discord_id", sa.String(64), nullable=True),
        sa.Column("status", participant_status, nullable=False, server_default="pending"),
        sa.Column("waitlist_position", sa.Integer, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_participants_event_id", "participants", ["event_id"])

    # --- votes ---
    op.create_table(
        "votes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("participant_id", sa.Integer, sa.ForeignKey("participants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("time_slot_id", sa.Integer, sa.ForeignKey("time_slots.id", ondelete="CASCADE"), nullable=False),
        sa.Column("preference", vote_preference, nullable=False),
        sa.Column("can_host", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("participant_id", "time_slot_id", name="uq_vote_participant_slot"),
    )
    op.create_index("ix_votes_participant_id", "votes", ["participant_id"])
    op.create_index("ix_votes_time_slot_id", "votes", ["time_slot_id"])

    # --- webhook_events ---
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id", ondelete="SET NULL"), nullable=True),
        sa.Column("url", sa.String(1000), nullable=False),
        sa.Column("payload", sa.Text, nullable=False),
        sa.Column("status", webhook_status, nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("next_attempt", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_error", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_events_event_id", "webhook_events", ["event_id"])
    op.create_index("ix_webhook_events_status", "webhook_events", ["status"])

    # --- login_tokens ---
    op.create_table(
        "login_tokens",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("token_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("chat_id", sa.String(64), nullable=True),
        sa.Column("discord_id", sa.String(64), nullable=True),
        sa.Column("discord_username", sa.String(100), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_login_tokens_chat_id", "login_tokens", ["chat_id"])
    op.create_index("ix_login_tokens_discord_id", "login_tokens", ["discord_id"])


def downgrade() -> None:
    op.drop_table("login_tokens")
    op.drop_table("webhook_events")
    op.drop_table("votes")
    op.drop_table("participants")
    op.drop_table("time_slots")
    op.drop_table("events")
    for enum_type in (webhook_status, vote_preference, participant_status, event_status):
        enum_type.drop(op.get_bind(), checkfirst=True)
