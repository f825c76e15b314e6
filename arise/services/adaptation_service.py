"""
arise.services.adaptation_service: Adapted Targets
===================================================

Keeps one personal target per (user, template), created lazily from the
template's primary numeric threshold.  ``adapt_target`` recomputes the
user's completion rate and average achievement over the trailing window
of closed quest instances and lets :mod:`arise.engine.adaptation` decide
whether to nudge the target.  A manual target freezes adaptation until
the override is cleared.

New quest instances pick up the adapted target as their ``target_value``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from arise.clock import Clock, get_default_clock, local_date
from arise.config import AriseConfig, get_default_config
from arise.database.models import (
    AdaptedTarget,
    QuestInstance,
    QuestStatus,
    QuestTemplate,
    UserProgression,
)
from arise.database.store import user_transaction
from arise.engine.adaptation import (
    AdaptationReason,
    PerformanceSample,
    clamp_target,
    decide_target,
    summarize_performance,
    target_bounds,
)
from arise.engine.requirements import is_ceiling, primary_target
from arise.exceptions import NotFoundError, ValidationError
from arise.services.quest_service import active_templates, template_requirement, user_zone

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AdaptationResult:
    template_id: str
    old_target: float
    new_target: float
    reason: AdaptationReason
    completion_rate: float | None = None
    average_achievement: float | None = None

    @property
    def changed(self) -> bool:
        return self.new_target != self.old_target


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _template(session: Session, template_id: str) -> QuestTemplate:
    template = session.get(QuestTemplate, template_id)
    if template is None:
        raise NotFoundError(f"No quest template {template_id}", {"template_id": template_id})
    return template


def _base_target(template: QuestTemplate) -> float:
    base = primary_target(template_requirement(template))
    if base is None or base <= 0:
        raise ValidationError(
            f"Template {template.id} has no positive numeric target to adapt",
            {"template_id": template.id},
        )
    return float(base)


def get_or_create_locked(
    session: Session, state: UserProgression, template: QuestTemplate
) -> AdaptedTarget:
    row = session.scalar(
        select(AdaptedTarget).where(
            AdaptedTarget.user_id == state.user_id,
            AdaptedTarget.template_id == template.id,
        )
    )
    if row is None:
        base = _base_target(template)
        row = AdaptedTarget(
            user_id=state.user_id,
            template_id=template.id,
            base_target=base,
            adapted_target=base,
            manual_override=False,
        )
        session.add(row)
        session.flush()
    return row


def _samples(
    session: Session, user_id: str, template_id: str, since, until, *, ceiling: bool = False
) -> list[PerformanceSample]:
    quests = session.scalars(
        select(QuestInstance).where(
            QuestInstance.user_id == user_id,
            QuestInstance.template_id == template_id,
            QuestInstance.local_date >= since,
            QuestInstance.local_date < until,
            QuestInstance.status.in_([QuestStatus.COMPLETED.value, QuestStatus.FAILED.value]),
            QuestInstance.target_value.is_not(None),
        )
    )
    return [
        PerformanceSample(
            current_value=q.current_value or 0.0,
            target_value=q.target_value,
            completed=q.status == QuestStatus.COMPLETED,
            ceiling=ceiling,
        )
        for q in quests
    ]


def adapt_locked(
    session: Session,
    state: UserProgression,
    template: QuestTemplate,
    *,
    now: datetime,
    config: AriseConfig,
) -> AdaptationResult:
    row = get_or_create_locked(session, state, template)
    if row.manual_override:
        return AdaptationResult(
            template.id, row.adapted_target, row.adapted_target, AdaptationReason.MANUAL_OVERRIDE
        )

    today = local_date(now, user_zone(state, config))
    since = today - timedelta(days=config.adaptation.window_days)
    ceiling = is_ceiling(template_requirement(template))
    summary = summarize_performance(
        _samples(session, state.user_id, template.id, since, today, ceiling=ceiling)
    )
    decision = decide_target(
        current_target=row.adapted_target,
        base_target=row.base_target,
        summary=summary,
        config=config.adaptation,
        ceiling=ceiling,
    )

    if summary.sample_count:
        row.completion_rate = summary.completion_rate
        row.average_achievement = summary.average_achievement
    if decision.changed:
        row.adapted_target = decision.new_target
        row.last_adapted_at = now
        logger.info(
            "Adapted %s for user %s: %s → %s (%s)",
            template.id, state.user_id, decision.old_target, decision.new_target, decision.reason,
        )
    return AdaptationResult(
        template_id=template.id,
        old_target=decision.old_target,
        new_target=decision.new_target,
        reason=decision.reason,
        completion_rate=row.completion_rate,
        average_achievement=row.average_achievement,
    )


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------
def get_or_create_adapted_target(
    engine: Engine,
    user_id: str,
    template_id: str,
    *,
    config: AriseConfig | None = None,
) -> AdaptedTarget:
    config = config or get_default_config()
    with user_transaction(
        engine, user_id, nowait=config.database.lock_nowait
    ) as (session, state):
        return get_or_create_locked(session, state, _template(session, template_id))


def adapt_target(
    engine: Engine,
    user_id: str,
    template_id: str,
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> AdaptationResult:
    """Recompute the user's target for *template_id* from recent performance.

    No-op (``reason == MANUAL_OVERRIDE``) while a manual target is set.
    """
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with user_transaction(
        engine, user_id, nowait=config.database.lock_nowait
    ) as (session, state):
        template = _template(session, template_id)
        return adapt_locked(session, state, template, now=clock.now(), config=config)


def set_manual_target(
    engine: Engine,
    user_id: str,
    template_id: str,
    target: float,
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> AdaptedTarget:
    """Pin the user's target; adaptation is frozen until cleared.

    Raises
    ------
    ValidationError
        *target* lies outside ``[min_fraction, max_fraction] × base``.
    """
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with user_transaction(
        engine, user_id, nowait=config.database.lock_nowait
    ) as (session, state):
        row = get_or_create_locked(session, state, _template(session, template_id))
        lo, hi = target_bounds(row.base_target, config.adaptation)
        if isinstance(target, bool) or not isinstance(target, int | float) or not lo <= target <= hi:
            raise ValidationError(
                f"Target must be between {lo:g} and {hi:g}",
                {"template_id": template_id, "target": target, "min": lo, "max": hi},
            )
        row.adapted_target = float(target)
        row.manual_override = True
        row.last_adapted_at = clock.now()
        logger.info("Manual target for %s / %s set to %s", user_id, template_id, target)
        return row


def clear_manual_override(
    engine: Engine,
    user_id: str,
    template_id: str,
    *,
    config: AriseConfig | None = None,
) -> AdaptedTarget:
    """Unfreeze adaptation.  The current target is kept (clamped to the band)."""
    config = config or get_default_config()
    with user_transaction(
        engine, user_id, nowait=config.database.lock_nowait
    ) as (session, state):
        row = get_or_create_locked(session, state, _template(session, template_id))
        row.manual_override = False
        row.adapted_target = clamp_target(row.adapted_target, row.base_target, config.adaptation)
        return row


def run_adaptation_cycle(
    engine: Engine,
    user_id: str,
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> dict[str, Any]:
    """Adapt every active template with a numeric target for the user."""
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with user_transaction(
        engine, user_id, nowait=config.database.lock_nowait
    ) as (session, state):
        now = clock.now()
        results = [
            adapt_locked(session, state, template, now=now, config=config)
            for template in active_templates(session)
            if (primary_target(template_requirement(template)) or 0) > 0
        ]
    adapted = sum(1 for r in results if r.changed)
    return {"adapted": adapted, "unchanged": len(results) - adapted, "results": results}
