"""
arise.database.models: SQLAlchemy 2.0 Data Models
==================================================

Tables:
- user_progression: Materialized per-user state (level, XP, streak, debuff, protocol)
- xp_events: Append-only, hash-chained XP ledger
- xp_event_modifiers: Ordered modifiers applied to each event
- quest_templates: Quest definitions with JSON requirement trees
- quest_instances: One row per (user, template, period)
- adapted_targets: Per-user personal targets per template
- daily_logs: Day-close outcomes, one per (user, local date)
"""

from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Arise ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class XPSource(enum.StrEnum):
    """Where an XP event came from."""
    QUEST_COMPLETE = "QUEST_COMPLETE"
    QUEST_PARTIAL = "QUEST_PARTIAL"
    QUEST_RESET = "QUEST_RESET"
    BONUS = "BONUS"
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"
    CORRECTION = "CORRECTION"


class QuestStatus(enum.StrEnum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class QuestPeriod(enum.StrEnum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"


class ReturnState(enum.StrEnum):
    INACTIVE = "INACTIVE"
    OFFERED = "OFFERED"
    ACTIVE = "ACTIVE"


# ---------------------------------------------------------------------------
# User progression: the materialized state, owned by the engine
# ---------------------------------------------------------------------------
class UserProgression(Base):
    __tablename__ = "user_progression"
    __table_args__ = (
        CheckConstraint("total_xp >= 0", name="ck_user_progression_total_xp_nonneg"),
    )

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    level: Mapped[int] = mapped_column(Integer, default=1)
    total_xp: Mapped[int] = mapped_column(BigInteger, default=0)
    current_streak: Mapped[int] = mapped_column(Integer, default=0)
    longest_streak: Mapped[int] = mapped_column(Integer, default=0)
    debuff_active_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    return_protocol_state: Mapped[str] = mapped_column(
        String(16), default=ReturnState.INACTIVE.value
    )
    return_protocol_day: Mapped[int] = mapped_column(Integer, default=0)
    return_protocol_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    return_protocol_offered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    # Local date of the last protocol advance (one advance per day).
    return_protocol_advanced_on: Mapped[date | None] = mapped_column(Date, default=None)
    # Streak held when the user went quiet, reported with the offer.
    streak_at_departure: Mapped[int] = mapped_column(Integer, default=0)
    last_activity_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def return_protocol_active(self) -> bool:
        return self.return_protocol_state == ReturnState.ACTIVE

    def __repr__(self) -> str:
        return (
            f"<UserProgression user={self.user_id} level={self.level} "
            f"xp={self.total_xp} streak={self.current_streak}>"
        )


# ---------------------------------------------------------------------------
# XP ledger: append-only, never updated or deleted
# ---------------------------------------------------------------------------
class XPEvent(Base):
    __tablename__ = "xp_events"
    __table_args__ = (
        UniqueConstraint("user_id", "sequence", name="uq_xp_events_user_sequence"),
        UniqueConstraint("user_id", "previous_hash", name="uq_xp_events_user_previous_hash"),
        Index("ix_xp_events_user_created", "user_id", "created_at"),
        Index("ix_xp_events_source", "user_id", "source", "source_id"),
        CheckConstraint("total_xp_after >= 0", name="ck_xp_events_total_nonneg"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("user_progression.user_id"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(128), default=None)
    base_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    final_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    level_before: Mapped[int] = mapped_column(Integer, nullable=False)
    level_after: Mapped[int] = mapped_column(Integer, nullable=False)
    total_xp_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_xp_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    floor_clamped: Mapped[bool] = mapped_column(Boolean, default=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    previous_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    modifiers: Mapped[list[XPEventModifier]] = relationship(
        back_populates="event",
        order_by="XPEventModifier.position",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return (
            f"<XPEvent #{self.sequence} user={self.user_id} "
            f"{self.final_amount:+d} → {self.total_xp_after}>"
        )


class XPEventModifier(Base):
    __tablename__ = "xp_event_modifiers"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(
        ForeignKey("xp_events.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    multiplier: Mapped[float] = mapped_column(Float, nullable=False)
    order: Mapped[int] = mapped_column(Integer, default=0)
    # Position in application order (bonuses first).
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")

    event: Mapped[XPEvent] = relationship(back_populates="modifiers")


# ---------------------------------------------------------------------------
# Quests
# ---------------------------------------------------------------------------
class QuestTemplate(Base):
    __tablename__ = "quest_templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    category: Mapped[str] = mapped_column(String(32), default="general")
    period: Mapped[str] = mapped_column(String(16), default=QuestPeriod.DAILY.value)
    requirement: Mapped[dict] = mapped_column(JSONB, nullable=False)
    base_xp: Mapped[int] = mapped_column(Integer, nullable=False)
    allow_partial: Mapped[bool] = mapped_column(Boolean, default=False)
    min_partial_percent: Mapped[int] = mapped_column(Integer, default=0)
    is_core: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<QuestTemplate {self.id} core={self.is_core} xp={self.base_xp}>"


class QuestInstance(Base):
    __tablename__ = "quest_instances"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "template_id", "period_key", name="uq_quest_instance_period"
        ),
        Index("ix_quest_instances_user_period", "user_id", "period_key"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("user_progression.user_id"), nullable=False
    )
    template_id: Mapped[str] = mapped_column(
        ForeignKey("quest_templates.id"), nullable=False
    )
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    local_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_core: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(16), default=QuestStatus.ACTIVE.value)
    current_value: Mapped[float] = mapped_column(Float, default=0.0)
    target_value: Mapped[float | None] = mapped_column(Float, default=None)
    completion_percent: Mapped[int] = mapped_column(Integer, default=0)
    is_partial: Mapped[bool] = mapped_column(Boolean, default=False)
    xp_awarded: Mapped[int] = mapped_column(Integer, default=0)
    xp_event_id: Mapped[int | None] = mapped_column(
        ForeignKey("xp_events.id"), default=None
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    template: Mapped[QuestTemplate] = relationship()

    def __repr__(self) -> str:
        return (
            f"<QuestInstance {self.id} {self.template_id} "
            f"{self.period_key} {self.status}>"
        )


class AdaptedTarget(Base):
    __tablename__ = "adapted_targets"
    __table_args__ = (
        UniqueConstraint("user_id", "template_id", name="uq_adapted_target_user_template"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("user_progression.user_id"), nullable=False
    )
    template_id: Mapped[str] = mapped_column(
        ForeignKey("quest_templates.id"), nullable=False
    )
    base_target: Mapped[float] = mapped_column(Float, nullable=False)
    adapted_target: Mapped[float] = mapped_column(Float, nullable=False)
    manual_override: Mapped[bool] = mapped_column(Boolean, default=False)
    completion_rate: Mapped[float | None] = mapped_column(Float, default=None)
    average_achievement: Mapped[float | None] = mapped_column(Float, default=None)
    last_adapted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    def __repr__(self) -> str:
        return (
            f"<AdaptedTarget {self.user_id}/{self.template_id} "
            f"{self.adapted_target} (base {self.base_target})>"
        )


# ---------------------------------------------------------------------------
# Daily logs: one row per closed (or closing) local day
# ---------------------------------------------------------------------------
class DailyLog(Base):
    __tablename__ = "daily_logs"
    __table_args__ = (
        UniqueConstraint("user_id", "log_date", name="uq_daily_log_user_date"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("user_progression.user_id"), nullable=False
    )
    log_date: Mapped[date] = mapped_column(Date, nullable=False)
    core_total: Mapped[int] = mapped_column(Integer, default=0)
    core_required: Mapped[int] = mapped_column(Integer, default=0)
    core_completed: Mapped[int] = mapped_column(Integer, default=0)
    bonus_completed: Mapped[int] = mapped_column(Integer, default=0)
    xp_earned: Mapped[int] = mapped_column(Integer, default=0)
    streak_before: Mapped[int] = mapped_column(Integer, default=0)
    streak_after: Mapped[int] = mapped_column(Integer, default=0)
    debuff_applied: Mapped[bool] = mapped_column(Boolean, default=False)
    debuff_cleared: Mapped[bool] = mapped_column(Boolean, default=False)
    return_protocol_day: Mapped[int | None] = mapped_column(Integer, default=None)
    return_protocol_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    def __repr__(self) -> str:
        return f"<DailyLog {self.user_id} {self.log_date} closed={self.closed_at is not None}>"
