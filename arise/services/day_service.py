"""
arise.services.day_service: Day Close, Streaks & Debuffs
=========================================================

Closing a local day settles everything that depends on it:

1. Remaining ACTIVE daily quests become FAILED; core quests that were
   never created are recorded as FAILED.  Weekly quests fail once the
   Sunday ending their ISO week (or any later day) is closed.
2. The streak/debuff transition runs against the required core count
   (reduced while the Return Protocol is active).
3. A qualifying day advances the Return Protocol.
4. The outcome is written to ``daily_logs``; a second close of the same
   day returns the stored summary without touching anything.

There is no scheduler.  Days are closed on request or lazily by
:func:`close_pending_days` the next time the user's quests are fetched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from arise.clock import (
    Clock,
    as_utc,
    get_default_clock,
    local_date,
    local_day_bounds,
    resolve_timezone,
)
from arise.config import AriseConfig, get_default_config
from arise.database.models import (
    DailyLog,
    QuestInstance,
    QuestPeriod,
    QuestStatus,
    QuestTemplate,
    ReturnState,
    UserProgression,
)
from arise.database.store import translate_storage_errors, user_transaction
from arise.engine.modifiers import next_streak_tier, streak_tier
from arise.engine.return_protocol import ProtocolPosition, required_core_quests
from arise.engine.streaks import DebuffStatus, close_day_transition, debuff_status
from arise.exceptions import ValidationError
from arise.services.quest_service import (
    active_templates,
    apply_timezone,
    create_instance,
    instances_for_day,
    user_zone,
)
from arise.services.return_service import advance_locked, protocol_position

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


@dataclass
class DaySummary:
    user_id: str
    date: date
    core_total: int
    core_required: int
    core_completed: int
    bonus_completed: int
    xp_earned: int
    streak_before: int
    streak_after: int
    debuff_applied: bool
    debuff_cleared: bool
    return_protocol_day: int | None
    return_protocol_completed: bool
    closed_at: datetime | None
    already_closed: bool = False

    @property
    def all_core_completed(self) -> bool:
        return self.core_completed >= self.core_required


@dataclass(frozen=True, slots=True)
class StreakInfo:
    current_streak: int
    longest_streak: int
    bonus_tier: str | None
    bonus_percent: int
    next_tier: str | None
    days_until_next_tier: int | None


def _summary(log: DailyLog, *, already_closed: bool) -> DaySummary:
    return DaySummary(
        user_id=log.user_id,
        date=log.log_date,
        core_total=log.core_total,
        core_required=log.core_required,
        core_completed=log.core_completed,
        bonus_completed=log.bonus_completed,
        xp_earned=log.xp_earned,
        streak_before=log.streak_before,
        streak_after=log.streak_after,
        debuff_applied=log.debuff_applied,
        debuff_cleared=log.debuff_cleared,
        return_protocol_day=log.return_protocol_day,
        return_protocol_completed=log.return_protocol_completed,
        closed_at=as_utc(log.closed_at) if log.closed_at else None,
        already_closed=already_closed,
    )


# ---------------------------------------------------------------------------
# Day close
# ---------------------------------------------------------------------------
def _fail_ended_weekly(session: Session, user_id: str, day: date) -> int:
    """Fail ACTIVE weekly instances whose ISO week has ended by the close of *day*."""
    last_ended = day if day.weekday() == 6 else day - timedelta(days=day.weekday() + 1)
    stale = session.scalars(
        select(QuestInstance)
        .join(QuestTemplate, QuestInstance.template_id == QuestTemplate.id)
        .where(
            QuestInstance.user_id == user_id,
            QuestInstance.status == QuestStatus.ACTIVE.value,
            QuestTemplate.period == QuestPeriod.WEEKLY.value,
            QuestInstance.local_date <= last_ended,
        )
    ).all()
    for quest in stale:
        quest.status = QuestStatus.FAILED.value
    return len(stale)


def close_day_locked(
    session: Session,
    state: UserProgression,
    day: date,
    *,
    now: datetime,
    config: AriseConfig,
) -> DaySummary:
    """Close *day* for a user whose progression row is already locked."""
    log = session.scalar(
        select(DailyLog).where(DailyLog.user_id == state.user_id, DailyLog.log_date == day)
    )
    if log is not None and log.closed_at is not None:
        return _summary(log, already_closed=True)

    core_templates = active_templates(session, core=True, period=QuestPeriod.DAILY.value)
    quests = instances_for_day(session, state.user_id, day)
    present = {q.template_id for q in quests}
    for template in core_templates:
        if template.id not in present:
            quests.append(
                create_instance(session, state.user_id, template, day, status=QuestStatus.FAILED)
            )
    for quest in quests:
        if quest.status == QuestStatus.ACTIVE:
            quest.status = QuestStatus.FAILED.value
    expired = _fail_ended_weekly(session, state.user_id, day)
    if expired:
        logger.info("Failed %d weekly quest(s) for user %s on %s", expired, state.user_id, day)

    completed = [q for q in quests if q.status == QuestStatus.COMPLETED]
    core_completed = sum(1 for q in completed if q.is_core)
    bonus_completed = len(completed) - core_completed

    position = protocol_position(state)
    started = state.return_protocol_started_at
    tz = user_zone(state, config)
    if position.is_active and started is not None and day < local_date(started, tz):
        # Days left open from before the protocol started close on the normal schedule.
        position = ProtocolPosition(ReturnState.INACTIVE)
    core_total = len(core_templates)
    required = required_core_quests(position, core_total, config.return_protocol)

    _, day_end = local_day_bounds(day, tz)
    transition = close_day_transition(
        current_streak=state.current_streak,
        longest_streak=state.longest_streak,
        debuff_until=state.debuff_active_until,
        required=required,
        completed=core_completed,
        applied_at=min(as_utc(now), day_end),
        now=now,
        config=config.streaks,
    )
    state.current_streak = transition.streak_after
    state.longest_streak = transition.longest_after
    state.debuff_active_until = transition.debuff_until

    if transition.debuff_applied:
        logger.info(
            "User %s missed %d core quest(s) on %s; debuff until %s",
            state.user_id, required - core_completed, day, transition.debuff_until,
        )
    elif transition.streak_broken:
        logger.info("User %s streak of %d broken on %s", state.user_id, transition.streak_before, day)
    if transition.debuff_cleared:
        logger.info("User %s cleared their debuff early on %s", state.user_id, day)

    protocol_day = position.day if position.is_active else None
    protocol_completed = False
    if position.is_active and required > 0 and core_completed >= required:
        protocol_completed = advance_locked(state, day, now=now, config=config).completed

    if log is None:
        log = DailyLog(user_id=state.user_id, log_date=day)
        session.add(log)
    log.core_total = core_total
    log.core_required = required
    log.core_completed = core_completed
    log.bonus_completed = bonus_completed
    log.xp_earned = sum(q.xp_awarded for q in completed)
    log.streak_before = transition.streak_before
    log.streak_after = state.current_streak
    log.debuff_applied = transition.debuff_applied
    log.debuff_cleared = transition.debuff_cleared
    log.return_protocol_day = protocol_day
    log.return_protocol_completed = protocol_completed
    log.closed_at = now
    session.flush()
    return _summary(log, already_closed=False)


def close_day(
    engine: Engine,
    user_id: str,
    timezone: str | None = None,
    *,
    day: date | None = None,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> DaySummary:
    """Close the user's local *day* (default: today in *timezone*).

    Idempotent: closing an already-closed day returns its stored summary
    with ``already_closed=True``.
    """
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with user_transaction(
        engine, user_id, nowait=config.database.lock_nowait, timezone=timezone
    ) as (session, state):
        apply_timezone(state, timezone, config)
        now = clock.now()
        today = local_date(now, user_zone(state, config))
        target = day or today
        if target > today:
            raise ValidationError(
                f"Cannot close {target}: today is {today}",
                {"user_id": user_id, "day": target.isoformat()},
            )
        return close_day_locked(session, state, target, now=now, config=config)


def pending_days(session: Session, user_id: str, before: date) -> list[date]:
    """Past local days that still need closing, oldest first.

    Days with quest instances but no close record, plus the day before
    *before* when the user has closed days but none since then (an absence
    breaks the streak once, on the most recent missed day).
    """
    closed = select(DailyLog.log_date).where(
        DailyLog.user_id == user_id, DailyLog.closed_at.is_not(None)
    )
    days = list(session.scalars(
        select(QuestInstance.local_date)
        .join(QuestTemplate, QuestInstance.template_id == QuestTemplate.id)
        .where(
            QuestInstance.user_id == user_id,
            QuestTemplate.period == QuestPeriod.DAILY.value,
            QuestInstance.local_date < before,
            QuestInstance.local_date.not_in(closed),
        )
        .distinct()
        .order_by(QuestInstance.local_date)
    ))

    last_closed = session.scalar(
        select(func.max(DailyLog.log_date)).where(
            DailyLog.user_id == user_id, DailyLog.closed_at.is_not(None)
        )
    )
    yesterday = before - timedelta(days=1)
    if last_closed is not None and last_closed < yesterday and yesterday not in days:
        days.append(yesterday)
    return days


def close_pending_days(
    engine: Engine,
    user_id: str,
    timezone: str | None = None,
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> list[DaySummary]:
    """Close every past day the user left open, oldest first."""
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with translate_storage_errors(user_id), Session(engine) as session:
        state = session.get(UserProgression, user_id)
        if state is None:
            return []
        tz_name = timezone or state.timezone
        today = local_date(clock.now(), resolve_timezone(tz_name, config.default_timezone))
        days = pending_days(session, user_id, today)

    summaries = [
        close_day(engine, user_id, timezone, day=d, config=config, clock=clock) for d in days
    ]
    if summaries:
        logger.info("Closed %d pending day(s) for user %s", len(summaries), user_id)
    return summaries


# ---------------------------------------------------------------------------
# Reads (lock-free, lazily evaluated against now)
# ---------------------------------------------------------------------------
def get_debuff_status(
    engine: Engine,
    user_id: str,
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> DebuffStatus:
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with translate_storage_errors(user_id), Session(engine) as session:
        until = session.scalar(
            select(UserProgression.debuff_active_until).where(
                UserProgression.user_id == user_id
            )
        )
    return debuff_status(until, clock.now(), config.modifiers.debuff_penalty_percent)


def get_streak_info(
    engine: Engine, user_id: str, *, config: AriseConfig | None = None
) -> StreakInfo:
    config = config or get_default_config()
    with translate_storage_errors(user_id), Session(engine) as session:
        state = session.get(UserProgression, user_id)
        current = state.current_streak if state else 0
        longest = state.longest_streak if state else 0

    tier = streak_tier(current, config.streaks)
    upcoming = next_streak_tier(current, config.streaks)
    return StreakInfo(
        current_streak=current,
        longest_streak=longest,
        bonus_tier=tier.name if tier else None,
        bonus_percent=tier.bonus_percent if tier else 0,
        next_tier=upcoming.name if upcoming else None,
        days_until_next_tier=upcoming.min_days - current if upcoming else None,
    )


def get_day_summary(engine: Engine, user_id: str, day: date) -> DaySummary | None:
    """Stored summary of a closed day, or None if it hasn't been closed."""
    with translate_storage_errors(user_id), Session(engine) as session:
        log = session.scalar(
            select(DailyLog).where(DailyLog.user_id == user_id, DailyLog.log_date == day)
        )
        if log is None or log.closed_at is None:
            return None
        return _summary(log, already_closed=True)


def get_day_status(
    engine: Engine,
    user_id: str,
    timezone: str | None = None,
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> dict[str, Any]:
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with translate_storage_errors(user_id), Session(engine) as session:
        state = session.get(UserProgression, user_id)
        tz_name = timezone or (state.timezone if state else None)
        today = local_date(clock.now(), resolve_timezone(tz_name, config.default_timezone))
        closed_at = session.scalar(
            select(DailyLog.closed_at).where(
                DailyLog.user_id == user_id, DailyLog.log_date == today
            )
        )
    return {
        "date": today,
        "is_day_closed": closed_at is not None,
        "closed_at": as_utc(closed_at) if closed_at else None,
    }
