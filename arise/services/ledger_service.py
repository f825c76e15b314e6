"""
arise.services.ledger_service: Progression Ledger
==================================================

Records XP awards and removals as hash-chained events and keeps the
materialized totals in ``user_progression`` in step, in one transaction.

Two layers:

* ``append_xp_event`` / ``append_xp_removal`` work on an already-locked
  ``(session, state)`` so other services (quest completion, resets) can
  award XP inside their own transaction.
* ``record_xp_event`` / ``record_xp_removal`` open the per-user
  transaction themselves.

The append is **not** idempotent: after an ambiguous failure (timeout,
lost connection) call :func:`find_events_by_source` before re-issuing.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from arise.clock import (
    Clock,
    get_default_clock,
    local_day_bounds,
    resolve_timezone,
)
from arise.config import AriseConfig, get_default_config
from arise.constants import TIMELINE_MAX_PAGE_SIZE, TIMELINE_PAGE_SIZE
from arise.database.models import UserProgression, XPEvent, XPEventModifier
from arise.database.store import (
    append_event,
    read_chain_tip,
    sync_totals,
    translate_storage_errors,
    user_transaction,
)
from arise.engine.chain import ChainReport, removal_delta, verify_chain
from arise.engine.levels import LevelCurve, LevelProgress, get_curve
from arise.engine.modifiers import (
    ModifierKind,
    ModifierSource,
    XPModifier,
    ambient_modifiers,
    apply_modifiers,
)
from arise.exceptions import LedgerCorrupted, NotFoundError, ValidationError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    """Outcome of one append."""

    event: XPEvent
    leveled_up: bool
    new_level: int
    modifiers: tuple[XPModifier, ...] = ()


def curve_for(config: AriseConfig) -> LevelCurve:
    return get_curve(config.leveling.base_xp, config.leveling.exponent)


def _check_amount(amount: Any, what: str) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"{what} must be a positive integer", {"amount": repr(amount)})


# ---------------------------------------------------------------------------
# In-transaction appends
# ---------------------------------------------------------------------------
def append_xp_event(
    session: Session,
    state: UserProgression,
    *,
    source: str,
    source_id: str | None,
    base_amount: int,
    now: datetime,
    config: AriseConfig,
    modifiers: Sequence[XPModifier] = (),
    description: str = "",
    apply_ambient: bool = True,
) -> LedgerResult:
    """Award XP inside the caller's locked transaction."""
    _check_amount(base_amount, "base_amount")
    curve = curve_for(config)

    stack = list(modifiers)
    if apply_ambient:
        stack.extend(ambient_modifiers(
            streak=state.current_streak,
            debuff_until=state.debuff_active_until,
            now=now,
            tz=resolve_timezone(state.timezone, config.default_timezone),
            modifier_config=config.modifiers,
            streak_config=config.streaks,
        ))
    result = apply_modifiers(base_amount, stack)

    tip = read_chain_tip(session, state.user_id)
    sync_totals(state, tip, curve.level_of)
    event = append_event(
        session,
        state,
        tip,
        source=source,
        source_id=source_id,
        base_amount=base_amount,
        final_amount=result.final_amount,
        level_of=curve.level_of,
        created_at=now,
        modifiers=result.applied,
        description=description,
    )
    state.last_activity_at = now

    leveled_up = event.level_after > event.level_before
    if leveled_up:
        logger.info(
            "User %s leveled up %d → %d (%d XP)",
            state.user_id, event.level_before, event.level_after, event.total_xp_after,
        )
    return LedgerResult(event, leveled_up, event.level_after, result.applied)


def append_xp_removal(
    session: Session,
    state: UserProgression,
    *,
    source: str,
    source_id: str | None,
    amount: int,
    now: datetime,
    config: AriseConfig,
    description: str = "",
) -> LedgerResult:
    """Append an offsetting (negative) event, floored at zero total XP."""
    _check_amount(amount, "amount")
    curve = curve_for(config)

    tip = read_chain_tip(session, state.user_id)
    sync_totals(state, tip, curve.level_of)
    delta, clamped = removal_delta(amount, tip.total_xp)
    event = append_event(
        session,
        state,
        tip,
        source=source,
        source_id=source_id,
        base_amount=-amount,
        final_amount=delta,
        floor_clamped=clamped,
        level_of=curve.level_of,
        created_at=now,
        description=description,
    )
    state.last_activity_at = now

    if clamped:
        logger.info(
            "Removal of %d XP for user %s floored at zero (had %d)",
            amount, state.user_id, tip.total_xp,
        )
    if event.level_after < event.level_before:
        logger.warning(
            "User %s dropped from level %d to %d after removing %d XP",
            state.user_id, event.level_before, event.level_after, -delta,
        )
    return LedgerResult(event, False, event.level_after)


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------
def record_xp_event(
    engine: Engine,
    user_id: str,
    source: str,
    source_id: str | None,
    base_amount: int,
    modifiers: Sequence[XPModifier] = (),
    description: str = "",
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
    apply_ambient: bool = True,
) -> LedgerResult:
    """Append an XP award for *user_id* and update their totals atomically.

    Caller-supplied *modifiers* are combined with the ambient ones (streak
    tier, weekend, debuff) unless ``apply_ambient`` is False.

    Raises
    ------
    ValidationError
        ``base_amount`` is not a positive integer, or a modifier is invalid.
    StorageUnavailable, ConcurrencyConflict
        Nothing was written; safe to retry after checking
        :func:`find_events_by_source` if the failure was ambiguous.
    """
    _check_amount(base_amount, "base_amount")
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with user_transaction(
        engine, user_id, nowait=config.database.lock_nowait
    ) as (session, state):
        return append_xp_event(
            session,
            state,
            source=source,
            source_id=source_id,
            base_amount=base_amount,
            now=clock.now(),
            config=config,
            modifiers=modifiers,
            description=description,
            apply_ambient=apply_ambient,
        )


def record_xp_removal(
    engine: Engine,
    user_id: str,
    source: str,
    source_id: str | None,
    amount: int,
    description: str = "",
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> LedgerResult:
    """Append an XP removal (a correction); total XP never goes below 0."""
    _check_amount(amount, "amount")
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with user_transaction(
        engine, user_id, create=False, nowait=config.database.lock_nowait
    ) as (session, state):
        return append_xp_removal(
            session,
            state,
            source=source,
            source_id=source_id,
            amount=amount,
            now=clock.now(),
            config=config,
            description=description,
        )


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------
def _to_modifier(row: XPEventModifier) -> XPModifier:
    return XPModifier(
        kind=ModifierKind(row.kind),
        multiplier=row.multiplier,
        order=row.order,
        source=ModifierSource(row.source),
        description=row.description,
    )


def _load_chain(session: Session, user_id: str) -> list[XPEvent]:
    return list(session.scalars(
        select(XPEvent)
        .where(XPEvent.user_id == user_id)
        .options(selectinload(XPEvent.modifiers))
        .order_by(XPEvent.sequence)
    ))


def verify_user_chain(
    engine: Engine, user_id: str, *, config: AriseConfig | None = None
) -> ChainReport:
    """Walk *user_id*'s chain oldest → newest and recompute every link.

    Raises
    ------
    LedgerCorrupted
        With the id of the first bad event.  Never repaired automatically.
    NotFoundError
        The user has no progression row.
    """
    config = config or get_default_config()
    with translate_storage_errors(user_id), Session(engine) as session:
        state = session.get(UserProgression, user_id)
        if state is None:
            raise NotFoundError(f"No progression for user {user_id}", {"user_id": user_id})
        events = _load_chain(session, user_id)
        modifiers = {e.id: [_to_modifier(m) for m in e.modifiers] for e in events}
        return verify_chain(
            user_id,
            events,
            level_of=curve_for(config).level_of,
            modifiers=modifiers,
            expected_total=state.total_xp,
        )


def verify_all_chains(
    engine: Engine, *, config: AriseConfig | None = None
) -> dict[str, Any]:
    """Verify every user's chain.

    Returns a summary dict::

        {"checked": 12, "events": 840,
         "corrupted": [{"user_id": ..., "event_id": ..., "reason": ...}]}
    """
    with translate_storage_errors(), Session(engine) as session:
        user_ids = list(session.scalars(
            select(UserProgression.user_id).order_by(UserProgression.user_id)
        ))

    summary: dict[str, Any] = {"checked": 0, "events": 0, "corrupted": []}
    for user_id in user_ids:
        try:
            report = verify_user_chain(engine, user_id, config=config)
        except LedgerCorrupted as exc:
            summary["corrupted"].append(exc.details)
        else:
            summary["events"] += report.events_checked
        summary["checked"] += 1

    if summary["corrupted"]:
        logger.error(
            "Chain verification found %d corrupted ledger(s) out of %d",
            len(summary["corrupted"]), summary["checked"],
        )
    else:
        logger.info(
            "Verified %d ledger(s), %d events, no corruption",
            summary["checked"], summary["events"],
        )
    return summary


# ---------------------------------------------------------------------------
# Reads (lock-free)
# ---------------------------------------------------------------------------
def get_xp_timeline(
    engine: Engine,
    user_id: str,
    *,
    limit: int = TIMELINE_PAGE_SIZE,
    offset: int = 0,
) -> list[XPEvent]:
    """A page of the user's events, oldest first."""
    if limit < 1 or limit > TIMELINE_MAX_PAGE_SIZE or offset < 0:
        raise ValidationError(
            "Invalid timeline page", {"limit": limit, "offset": offset}
        )
    with translate_storage_errors(user_id), Session(engine) as session:
        events = list(session.scalars(
            select(XPEvent)
            .where(XPEvent.user_id == user_id)
            .options(selectinload(XPEvent.modifiers))
            .order_by(XPEvent.sequence)
            .offset(offset)
            .limit(limit)
        ))
        session.expunge_all()
        return events


def get_event_breakdown(engine: Engine, user_id: str, event_id: int) -> dict[str, Any]:
    """How an event's final amount was reached, step by step."""
    with translate_storage_errors(user_id), Session(engine) as session:
        event = session.get(XPEvent, event_id, options=[selectinload(XPEvent.modifiers)])
        if event is None or event.user_id != user_id:
            raise NotFoundError(
                f"No XP event {event_id} for user {user_id}",
                {"user_id": user_id, "event_id": event_id},
            )
        steps: list[dict[str, Any]] = []
        if event.base_amount > 0:
            replay = apply_modifiers(
                event.base_amount, [_to_modifier(m) for m in event.modifiers]
            )
            steps = [
                {
                    "kind": step.modifier.kind.value,
                    "source": step.modifier.source.value,
                    "multiplier": step.modifier.multiplier,
                    "order": step.modifier.order,
                    "description": step.modifier.description,
                    "amount_before": step.amount_before,
                    "amount_after": step.amount_after,
                }
                for step in replay.steps
            ]
        return {
            "event_id": event.id,
            "sequence": event.sequence,
            "source": event.source,
            "source_id": event.source_id,
            "description": event.description,
            "base_amount": event.base_amount,
            "final_amount": event.final_amount,
            "floor_clamped": event.floor_clamped,
            "total_xp_before": event.total_xp_before,
            "total_xp_after": event.total_xp_after,
            "level_before": event.level_before,
            "level_after": event.level_after,
            "hash": event.hash,
            "previous_hash": event.previous_hash,
            "created_at": event.created_at,
            "modifiers": steps,
        }


def get_level_progress(
    engine: Engine, user_id: str, *, config: AriseConfig | None = None
) -> LevelProgress:
    config = config or get_default_config()
    with translate_storage_errors(user_id), Session(engine) as session:
        state = session.get(UserProgression, user_id)
        total = state.total_xp if state is not None else 0
    return curve_for(config).progress(total)


def get_xp_for_date(
    engine: Engine,
    user_id: str,
    day: date,
    *,
    config: AriseConfig | None = None,
) -> dict[str, Any]:
    """Net XP and events recorded during the user's local *day*."""
    config = config or get_default_config()
    with translate_storage_errors(user_id), Session(engine) as session:
        state = session.get(UserProgression, user_id)
        tz = resolve_timezone(state.timezone if state else None, config.default_timezone)
        start, end = local_day_bounds(day, tz)
        events = list(session.scalars(
            select(XPEvent)
            .where(
                XPEvent.user_id == user_id,
                XPEvent.created_at >= start,
                XPEvent.created_at < end,
            )
            .order_by(XPEvent.sequence)
        ))
        session.expunge_all()
    return {
        "date": day,
        "total": sum(e.final_amount for e in events),
        "events": events,
    }


def find_events_by_source(
    engine: Engine, user_id: str, source: str, source_id: str | None
) -> list[XPEvent]:
    """Events already recorded for ``(source, source_id)``.

    Check this before re-issuing an append whose outcome is unknown.
    """
    with translate_storage_errors(user_id), Session(engine) as session:
        stmt = select(XPEvent).where(XPEvent.user_id == user_id, XPEvent.source == str(source))
        if source_id is None:
            stmt = stmt.where(XPEvent.source_id.is_(None))
        else:
            stmt = stmt.where(XPEvent.source_id == source_id)
        events = list(session.scalars(stmt.order_by(XPEvent.sequence)))
        session.expunge_all()
        return events
