"""
arise.services.quest_service: Quest Instance Lifecycle
=======================================================

Creates quest instances for each period, scores progress updates through
the requirement evaluator, and awards XP through the ledger in the same
per-user transaction.

Lifecycle::

    ACTIVE ──progress (satisfied / partial)──▶ COMPLETED ──reset──▶ ACTIVE
    ACTIVE ──close of the period's last day──▶ FAILED
    ACTIVE ──skip (bonus only)──▶ SKIPPED

A daily instance is open until its day closes; a weekly instance until the
close of the Sunday ending its ISO week.  Instances of an ended period are
immutable.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from arise.clock import (
    Clock,
    daily_key,
    get_default_clock,
    local_date,
    period_key,
    period_last_day,
    resolve_timezone,
)
from arise.config import AriseConfig, get_default_config
from arise.database.models import (
    AdaptedTarget,
    DailyLog,
    QuestInstance,
    QuestPeriod,
    QuestStatus,
    QuestTemplate,
    UserProgression,
    XPSource,
)
from arise.database.store import translate_storage_errors, user_transaction
from arise.engine.requirements import (
    MetricValue,
    QuestOutcome,
    Requirement,
    evaluate_quest,
    parse_requirement,
    primary_target,
    with_target,
)
from arise.exceptions import InvalidStateTransition, NotFoundError
from arise.services.ledger_service import LedgerResult, append_xp_event, append_xp_removal

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


@dataclass
class QuestProgressResult:
    quest: QuestInstance
    outcome: QuestOutcome
    ledger: LedgerResult | None = None

    @property
    def xp_awarded(self) -> int:
        return self.ledger.event.final_amount if self.ledger else 0


# ---------------------------------------------------------------------------
# Shared helpers (also used by day_service / adaptation_service)
# ---------------------------------------------------------------------------
def user_zone(state: UserProgression, config: AriseConfig):
    return resolve_timezone(state.timezone, config.default_timezone)


def apply_timezone(state: UserProgression, timezone: str | None, config: AriseConfig) -> None:
    """Store *timezone* on the user when it is a valid IANA name."""
    if timezone and timezone != state.timezone:
        if resolve_timezone(timezone, config.default_timezone).key == timezone:
            state.timezone = timezone


def active_templates(
    session: Session, *, core: bool | None = None, period: str | None = None
) -> list[QuestTemplate]:
    stmt = select(QuestTemplate).where(QuestTemplate.is_active.is_(True))
    if core is not None:
        stmt = stmt.where(QuestTemplate.is_core.is_(core))
    if period is not None:
        stmt = stmt.where(QuestTemplate.period == period)
    return list(session.scalars(stmt.order_by(QuestTemplate.id)))


def count_core_templates(session: Session) -> int:
    """Normal (non-protocol) number of required core quests per day."""
    return len(active_templates(session, core=True, period=QuestPeriod.DAILY.value))


def template_requirement(template: QuestTemplate) -> Requirement:
    return parse_requirement(template.requirement)


def target_for(session: Session, user_id: str, template: QuestTemplate) -> float | None:
    """The user's adapted target for *template*, else the template's own."""
    adapted = session.scalar(
        select(AdaptedTarget).where(
            AdaptedTarget.user_id == user_id,
            AdaptedTarget.template_id == template.id,
        )
    )
    if adapted is not None:
        return adapted.adapted_target
    return primary_target(template_requirement(template))


def is_day_closed(session: Session, user_id: str, day: date) -> bool:
    closed_at = session.scalar(
        select(DailyLog.closed_at).where(
            DailyLog.user_id == user_id, DailyLog.log_date == day
        )
    )
    return closed_at is not None


def instances_for_day(session: Session, user_id: str, day: date) -> list[QuestInstance]:
    """The user's DAILY-period instances for local *day*."""
    return list(session.scalars(
        select(QuestInstance)
        .where(
            QuestInstance.user_id == user_id,
            QuestInstance.period_key == daily_key(day),
        )
        .order_by(QuestInstance.id)
    ))


def create_instance(
    session: Session,
    user_id: str,
    template: QuestTemplate,
    day: date,
    *,
    status: QuestStatus = QuestStatus.ACTIVE,
) -> QuestInstance:
    quest = QuestInstance(
        user_id=user_id,
        template_id=template.id,
        period_key=period_key(day, template.period),
        local_date=day,
        is_core=template.is_core,
        status=status.value,
        current_value=0.0,
        target_value=target_for(session, user_id, template),
        completion_percent=0,
        is_partial=False,
        xp_awarded=0,
    )
    session.add(quest)
    session.flush()
    return quest


def _locked_quest(session: Session, user_id: str, quest_id: int) -> QuestInstance:
    quest = session.get(QuestInstance, quest_id)
    if quest is None or quest.user_id != user_id:
        raise NotFoundError(
            f"No quest {quest_id} for user {user_id}",
            {"user_id": user_id, "quest_id": quest_id},
        )
    return quest


def _ensure_open(
    session: Session, quest: QuestInstance, action: str, *, today: date
) -> None:
    """Reject *action* once the quest's period has ended or its last day is closed."""
    last_day = period_last_day(quest.local_date, quest.template.period)
    if is_day_closed(session, quest.user_id, last_day):
        reason = f"Day {last_day} is already closed"
    elif today > last_day:
        reason = f"Quest period {quest.period_key} has ended"
    else:
        return
    logger.warning(
        "Rejected %s on quest %s for user %s: %s",
        action, quest.id, quest.user_id, reason,
    )
    raise InvalidStateTransition(
        reason,
        current_state=quest.status, action=action,
        details={"quest_id": quest.id, "user_id": quest.user_id},
    )


# ---------------------------------------------------------------------------
# Period setup
# ---------------------------------------------------------------------------
def ensure_daily_quests(
    engine: Engine,
    user_id: str,
    timezone: str | None = None,
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> list[QuestInstance]:
    """Today's daily quests, creating core instances that don't exist yet.

    Pending past days are closed first, so streaks and debuffs are up to
    date before anything new is recorded.
    """
    from arise.services.day_service import close_pending_days

    config = config or get_default_config()
    clock = clock or get_default_clock()
    close_pending_days(engine, user_id, timezone, config=config, clock=clock)

    with user_transaction(
        engine, user_id, nowait=config.database.lock_nowait, timezone=timezone
    ) as (session, state):
        apply_timezone(state, timezone, config)
        today = local_date(clock.now(), user_zone(state, config))
        if is_day_closed(session, user_id, today):
            return instances_for_day(session, user_id, today)

        existing = {q.template_id for q in instances_for_day(session, user_id, today)}
        created = 0
        for template in active_templates(session, core=True, period=QuestPeriod.DAILY.value):
            if template.id not in existing:
                create_instance(session, user_id, template, today)
                created += 1
        if created:
            logger.info("Created %d core quests for user %s on %s", created, user_id, today)
        return instances_for_day(session, user_id, today)


def activate_quest(
    engine: Engine,
    user_id: str,
    template_id: str,
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> QuestInstance:
    """Start an on-demand quest (bonus or weekly) for the current period."""
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with user_transaction(
        engine, user_id, nowait=config.database.lock_nowait
    ) as (session, state):
        template = session.get(QuestTemplate, template_id)
        if template is None or not template.is_active:
            raise NotFoundError(
                f"No active quest template {template_id}", {"template_id": template_id}
            )
        today = local_date(clock.now(), user_zone(state, config))
        key = period_key(today, template.period)
        last_day = period_last_day(today, template.period)
        if is_day_closed(session, user_id, last_day):
            raise InvalidStateTransition(
                f"Day {last_day} is already closed", action="activate",
                details={"template_id": template_id},
            )
        duplicate = session.scalar(
            select(QuestInstance.id).where(
                QuestInstance.user_id == user_id,
                QuestInstance.template_id == template_id,
                QuestInstance.period_key == key,
            )
        )
        if duplicate is not None:
            raise InvalidStateTransition(
                f"Quest {template_id} is already active for {key}",
                action="activate",
                details={"template_id": template_id, "quest_id": duplicate},
            )
        return create_instance(session, user_id, template, today)


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------
def _score(
    session: Session,
    state: UserProgression,
    quest: QuestInstance,
    metrics: Mapping[str, MetricValue],
    *,
    now: datetime,
    config: AriseConfig,
) -> QuestProgressResult:
    template = quest.template
    requirement = template_requirement(template)
    if quest.target_value is not None and primary_target(requirement) is not None:
        requirement = with_target(requirement, quest.target_value)

    outcome = evaluate_quest(
        requirement,
        metrics,
        base_xp=template.base_xp,
        allow_partial=template.allow_partial,
        min_partial_percent=template.min_partial_percent,
    )
    quest.current_value = outcome.current_value or 0.0
    quest.completion_percent = outcome.completion_percent
    if not outcome.completed:
        return QuestProgressResult(quest, outcome)

    ledger = None
    if outcome.xp > 0:
        if outcome.partial:
            source = XPSource.QUEST_PARTIAL
            description = f"Partially completed quest: {template.name} ({outcome.completion_percent}%)"
        else:
            source = XPSource.QUEST_COMPLETE
            description = f"Completed quest: {template.name}"
        ledger = append_xp_event(
            session,
            state,
            source=source,
            source_id=f"quest:{quest.id}",
            base_amount=outcome.xp,
            now=now,
            config=config,
            description=description,
        )
        quest.xp_awarded = ledger.event.final_amount
        quest.xp_event_id = ledger.event.id

    quest.status = QuestStatus.COMPLETED.value
    quest.is_partial = outcome.partial
    quest.completed_at = now
    logger.info(
        "User %s completed %s%s (+%d XP)",
        state.user_id, template.id, " partially" if outcome.partial else "", quest.xp_awarded,
    )
    return QuestProgressResult(quest, outcome, ledger)


def update_quest_progress(
    engine: Engine,
    user_id: str,
    quest_id: int,
    metrics: Mapping[str, MetricValue],
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> QuestProgressResult:
    """Evaluate an ACTIVE quest against a metrics snapshot.

    A satisfied requirement completes the quest with full XP; a qualifying
    partial result completes it with ``floor(base_xp · ratio)``.  XP goes
    through the ledger in the same transaction as the status change.
    """
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with user_transaction(
        engine, user_id, create=False, nowait=config.database.lock_nowait
    ) as (session, state):
        quest = _locked_quest(session, user_id, quest_id)
        if quest.status != QuestStatus.ACTIVE:
            raise InvalidStateTransition(
                f"Quest {quest_id} is {quest.status}, not ACTIVE",
                current_state=quest.status, action="progress",
                details={"quest_id": quest_id},
            )
        now = clock.now()
        _ensure_open(
            session, quest, "progress", today=local_date(now, user_zone(state, config))
        )
        return _score(session, state, quest, metrics, now=now, config=config)


def evaluate_active_quests(
    engine: Engine,
    user_id: str,
    metrics: Mapping[str, MetricValue],
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> dict[str, Any]:
    """Score every ACTIVE quest of today's period against one snapshot."""
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with user_transaction(
        engine, user_id, create=False, nowait=config.database.lock_nowait
    ) as (session, state):
        now = clock.now()
        today = local_date(now, user_zone(state, config))
        keys = {daily_key(today), period_key(today, QuestPeriod.WEEKLY.value)}
        quests = list(session.scalars(
            select(QuestInstance)
            .where(
                QuestInstance.user_id == user_id,
                QuestInstance.status == QuestStatus.ACTIVE.value,
                QuestInstance.period_key.in_(keys),
            )
            .order_by(QuestInstance.id)
        ))
        if is_day_closed(session, user_id, today):
            quests = [q for q in quests if q.period_key != daily_key(today)]

        results = [
            _score(session, state, q, metrics, now=now, config=config) for q in quests
        ]
        return {
            "evaluated": len(results),
            "completed": sum(1 for r in results if r.outcome.completed),
            "xp_awarded": sum(r.xp_awarded for r in results),
            "results": results,
        }


def reset_quest(
    engine: Engine,
    user_id: str,
    quest_id: int,
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> QuestInstance:
    """Return a COMPLETED quest to ACTIVE, reversing its XP with a removal event."""
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with user_transaction(
        engine, user_id, create=False, nowait=config.database.lock_nowait
    ) as (session, state):
        quest = _locked_quest(session, user_id, quest_id)
        if quest.status != QuestStatus.COMPLETED:
            raise InvalidStateTransition(
                f"Only completed quests can be reset (quest {quest_id} is {quest.status})",
                current_state=quest.status, action="reset",
                details={"quest_id": quest_id},
            )
        now = clock.now()
        _ensure_open(session, quest, "reset", today=local_date(now, user_zone(state, config)))

        if quest.xp_awarded > 0:
            append_xp_removal(
                session,
                state,
                source=XPSource.QUEST_RESET,
                source_id=f"quest:{quest.id}",
                amount=quest.xp_awarded,
                now=now,
                config=config,
                description=f"Quest reset: {quest.template.name}",
            )
        quest.status = QuestStatus.ACTIVE.value
        quest.current_value = 0.0
        quest.completion_percent = 0
        quest.is_partial = False
        quest.xp_awarded = 0
        quest.xp_event_id = None
        quest.completed_at = None
        logger.info("User %s reset quest %s", user_id, quest.template_id)
        return quest


def skip_quest(
    engine: Engine,
    user_id: str,
    quest_id: int,
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> QuestInstance:
    """Skip an ACTIVE bonus quest.  Core quests cannot be skipped."""
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with user_transaction(
        engine, user_id, create=False, nowait=config.database.lock_nowait
    ) as (session, state):
        quest = _locked_quest(session, user_id, quest_id)
        if quest.is_core:
            raise InvalidStateTransition(
                "Core quests cannot be skipped",
                current_state=quest.status, action="skip",
                details={"quest_id": quest_id},
            )
        if quest.status != QuestStatus.ACTIVE:
            raise InvalidStateTransition(
                f"Quest {quest_id} is {quest.status}, not ACTIVE",
                current_state=quest.status, action="skip",
                details={"quest_id": quest_id},
            )
        _ensure_open(
            session, quest, "skip", today=local_date(clock.now(), user_zone(state, config))
        )
        quest.status = QuestStatus.SKIPPED.value
        return quest


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_quest(engine: Engine, user_id: str, quest_id: int) -> QuestInstance:
    with translate_storage_errors(user_id), Session(engine, expire_on_commit=False) as session:
        return _locked_quest(session, user_id, quest_id)


def get_quests_for_date(engine: Engine, user_id: str, day: date) -> list[QuestInstance]:
    with translate_storage_errors(user_id), Session(engine, expire_on_commit=False) as session:
        return instances_for_day(session, user_id, day)


def get_quest_history(
    engine: Engine,
    user_id: str,
    *,
    days: int = 7,
    template_id: str | None = None,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> list[QuestInstance]:
    """Instances from the last *days* local days (today included), newest first."""
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with translate_storage_errors(user_id), Session(engine, expire_on_commit=False) as session:
        state = session.get(UserProgression, user_id)
        if state is None:
            return []
        today = local_date(clock.now(), user_zone(state, config))
        stmt = select(QuestInstance).where(
            QuestInstance.user_id == user_id,
            QuestInstance.local_date > today - timedelta(days=days),
        )
        if template_id is not None:
            stmt = stmt.where(QuestInstance.template_id == template_id)
        return list(session.scalars(
            stmt.order_by(QuestInstance.local_date.desc(), QuestInstance.id)
        ))
