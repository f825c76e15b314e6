"""Initial progression schema

Revision ID: 3f9c2a7d1e08
Revises:
Create Date: 2026-10-19 09:12:41.518204

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '3f9c2a7d1e08'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Create progression state, XP ledger, quests, adapted targets and daily logs."""

    # --- user_progression ---
    op.create_table(
        "user_progression",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column("level", sa.Integer, nullable=False, server_default="1"),
        sa.Column("total_xp", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("current_streak", sa.Integer, nullable=False, server_default="0"),
        sa.Column("longest_streak", sa.Integer, nullable=False, server_default="0"),
        sa.Column("debuff_active_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "return_protocol_state", sa.String(16), nullable=False, server_default="INACTIVE"
        ),
        sa.Column("return_protocol_day", sa.Integer, nullable=False, server_default="0"),
        sa.Column("return_protocol_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("return_protocol_offered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("return_protocol_advanced_on", sa.Date, nullable=True),
        sa.Column("streak_at_departure", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint("total_xp >= 0", name="ck_user_progression_total_xp_nonneg"),
    )

    # --- xp_events (append-only ledger) ---
    op.create_table(
        "xp_events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.String(64),
            sa.ForeignKey("user_progression.user_id"),
            nullable=False,
        ),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("source_id", sa.String(128), nullable=True),
        sa.Column("base_amount", sa.Integer, nullable=False),
        sa.Column("final_amount", sa.Integer, nullable=False),
        sa.Column("level_before", sa.Integer, nullable=False),
        sa.Column("level_after", sa.Integer, nullable=False),
        sa.Column("total_xp_before", sa.BigInteger, nullable=False),
        sa.Column("total_xp_after", sa.BigInteger, nullable=False),
        sa.Column("floor_clamped", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("hash", sa.String(64), nullable=False, unique=True),
        sa.Column("previous_hash", sa.String(64), nullable=False),
        sa.Column("description", sa.Text, nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "sequence", name="uq_xp_events_user_sequence"),
        sa.UniqueConstraint(
            "user_id", "previous_hash", name="uq_xp_events_user_previous_hash"
        ),
        sa.CheckConstraint("total_xp_after >= 0", name="ck_xp_events_total_nonneg"),
    )
    op.create_index("ix_xp_events_user_created", "xp_events", ["user_id", "created_at"])
    op.create_index("ix_xp_events_source", "xp_events", ["user_id", "source", "source_id"])

    # --- xp_event_modifiers ---
    op.create_table(
        "xp_event_modifiers",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.BigInteger,
            sa.ForeignKey("xp_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("multiplier", sa.Float, nullable=False),
        sa.Column("order", sa.Integer, nullable=False, server_default="0"),
        sa.Column("position", sa.Integer, nullable=False),
        sa.Column("description", sa.Text, nullable=False, server_default=""),
    )
    op.create_index("ix_xp_event_modifiers_event_id", "xp_event_modifiers", ["event_id"])

    # --- quest_templates ---
    op.create_table(
        "quest_templates",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=False, server_default=""),
        sa.Column("category", sa.String(32), nullable=False, server_default="general"),
        sa.Column("period", sa.String(16), nullable=False, server_default="DAILY"),
        sa.Column("requirement", postgresql.JSONB, nullable=False),
        sa.Column("base_xp", sa.Integer, nullable=False),
        sa.Column("allow_partial", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("min_partial_percent", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_core", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _created_at(),
    )

    # --- quest_instances ---
    op.create_table(
        "quest_instances",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.String(64),
            sa.ForeignKey("user_progression.user_id"),
            nullable=False,
        ),
        sa.Column(
            "template_id",
            sa.String(64),
            sa.ForeignKey("quest_templates.id"),
            nullable=False,
        ),
        sa.Column("period_key", sa.String(16), nullable=False),
        sa.Column("local_date", sa.Date, nullable=False),
        sa.Column("is_core", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(16), nullable=False, server_default="ACTIVE"),
        sa.Column("current_value", sa.Float, nullable=False, server_default="0"),
        sa.Column("target_value", sa.Float, nullable=True),
        sa.Column("completion_percent", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_partial", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("xp_awarded", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "xp_event_id", sa.BigInteger, sa.ForeignKey("xp_events.id"), nullable=True
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint(
            "user_id", "template_id", "period_key", name="uq_quest_instance_period"
        ),
    )
    op.create_index(
        "ix_quest_instances_user_period", "quest_instances", ["user_id", "period_key"]
    )

    # --- adapted_targets ---
    op.create_table(
        "adapted_targets",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.String(64),
            sa.ForeignKey("user_progression.user_id"),
            nullable=False,
        ),
        sa.Column(
            "template_id",
            sa.String(64),
            sa.ForeignKey("quest_templates.id"),
            nullable=False,
        ),
        sa.Column("base_target", sa.Float, nullable=False),
        sa.Column("adapted_target", sa.Float, nullable=False),
        sa.Column("manual_override", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("completion_rate", sa.Float, nullable=True),
        sa.Column("average_achievement", sa.Float, nullable=True),
        sa.Column("last_adapted_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "user_id", "template_id", name="uq_adapted_target_user_template"
        ),
    )

    # --- daily_logs ---
    op.create_table(
        "daily_logs",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.String(64),
            sa.ForeignKey("user_progression.user_id"),
            nullable=False,
        ),
        sa.Column("log_date", sa.Date, nullable=False),
        sa.Column("core_total", sa.Integer, nullable=False, server_default="0"),
        sa.Column("core_required", sa.Integer, nullable=False, server_default="0"),
        sa.Column("core_completed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("bonus_completed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("xp_earned", sa.Integer, nullable=False, server_default="0"),
        sa.Column("streak_before", sa.Integer, nullable=False, server_default="0"),
        sa.Column("streak_after", sa.Integer, nullable=False, server_default="0"),
        sa.Column("debuff_applied", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("debuff_cleared", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("return_protocol_day", sa.Integer, nullable=True),
        sa.Column(
            "return_protocol_completed", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "log_date", name="uq_daily_log_user_date"),
    )


def downgrade() -> None:
    """Drop all progression tables."""
    op.drop_table("daily_logs")
    op.drop_table("adapted_targets")
    op.drop_index("ix_quest_instances_user_period", table_name="quest_instances")
    op.drop_table("quest_instances")
    op.drop_table("quest_templates")
    op.drop_index("ix_xp_event_modifiers_event_id", table_name="xp_event_modifiers")
    op.drop_table("xp_event_modifiers")
    op.drop_index("ix_xp_events_source", table_name="xp_events")
    op.drop_index("ix_xp_events_user_created", table_name="xp_events")
    op.drop_table("xp_events")
    op.drop_table("user_progression")
