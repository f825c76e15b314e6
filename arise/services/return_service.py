"""
arise.services.return_service: Return Protocol Operations
==========================================================

Persists the Return Protocol transitions from
:mod:`arise.engine.return_protocol`.  The INACTIVE → OFFERED transition is
lazy: it happens when an offer check (or an accept) runs for a user whose
absence has crossed the medium threshold.

Advancing is idempotent per local day: the day of the last advance is
stored, and a second advance on the same day is a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from arise.clock import Clock, as_utc, get_default_clock, local_date, whole_days_between
from arise.config import AriseConfig, get_default_config
from arise.database.models import ReturnState, UserProgression
from arise.database.store import translate_storage_errors, user_transaction
from arise.engine import return_protocol as protocol
from arise.engine.return_protocol import AbsenceLevel, ProtocolPosition
from arise.exceptions import InvalidStateTransition, NotFoundError
from arise.services.quest_service import apply_timezone, count_core_templates, user_zone

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReturnOffer:
    should_offer: bool
    days_since_activity: int
    absence_level: AbsenceLevel
    streak_at_departure: int


@dataclass(frozen=True, slots=True)
class ReturnStatus:
    state: ReturnState
    is_active: bool
    current_day: int
    started_at: datetime | None
    required_quests: int
    days_remaining: int
    can_decline: bool


def protocol_position(state: UserProgression) -> ProtocolPosition:
    return ProtocolPosition(ReturnState(state.return_protocol_state), state.return_protocol_day)


def _set_position(state: UserProgression, position: ProtocolPosition) -> None:
    state.return_protocol_state = position.state.value
    state.return_protocol_day = position.day


def days_since_activity(state: UserProgression, now: datetime) -> int:
    if state.last_activity_at is None:
        return 0
    return whole_days_between(state.last_activity_at, now)


def _status(session: Session, state: UserProgression, config: AriseConfig) -> ReturnStatus:
    position = protocol_position(state)
    normal = count_core_templates(session)
    return ReturnStatus(
        state=position.state,
        is_active=position.is_active,
        current_day=position.day,
        started_at=as_utc(state.return_protocol_started_at) if state.return_protocol_started_at else None,
        required_quests=protocol.required_core_quests(position, normal, config.return_protocol),
        days_remaining=protocol.days_remaining(position, config.return_protocol),
        can_decline=position.state == ReturnState.OFFERED
        or (position.is_active and position.day == 1),
    )


# ---------------------------------------------------------------------------
# Locked transitions (shared with day_service)
# ---------------------------------------------------------------------------
def evaluate_offer_locked(
    state: UserProgression, *, now: datetime, config: AriseConfig
) -> ReturnOffer:
    """Offer the protocol after a long absence; withdraw a stale offer."""
    days = days_since_activity(state, now)
    level = protocol.absence_level(days, config.return_protocol)
    qualifies = protocol.qualifies_for_offer(days, config.return_protocol)
    position = protocol_position(state)

    if position.state == ReturnState.INACTIVE and qualifies:
        _set_position(state, protocol.offer(position))
        state.return_protocol_offered_at = now
        state.streak_at_departure = state.current_streak
        logger.info(
            "Offering Return Protocol to user %s after %d days away (%s)",
            state.user_id, days, level,
        )
    elif position.state == ReturnState.OFFERED and not qualifies:
        _set_position(state, ProtocolPosition(ReturnState.INACTIVE))
        state.return_protocol_offered_at = None
        logger.info("Return Protocol offer for user %s lapsed (activity resumed)", state.user_id)

    return ReturnOffer(
        should_offer=state.return_protocol_state == ReturnState.OFFERED,
        days_since_activity=days,
        absence_level=level,
        streak_at_departure=state.streak_at_departure,
    )


def advance_locked(
    state: UserProgression, today: date, *, now: datetime, config: AriseConfig
) -> ProtocolPosition:
    """Advance one protocol day; at most once per local *today*."""
    position = protocol_position(state)
    if position.is_active and state.return_protocol_advanced_on == today:
        return position

    nxt = protocol.advance(position, config.return_protocol)
    if nxt.completed:
        bootstrap = config.return_protocol.bootstrap_streak
        _set_position(state, nxt)
        state.current_streak = bootstrap
        state.longest_streak = max(state.longest_streak, bootstrap)
        state.return_protocol_started_at = None
        state.return_protocol_offered_at = None
        state.last_activity_at = now
        logger.info(
            "User %s completed the Return Protocol; streak set to %d", state.user_id, bootstrap
        )
    else:
        _set_position(state, nxt)
        logger.info("User %s advanced to Return Protocol day %d", state.user_id, nxt.day)
    state.return_protocol_advanced_on = today
    return nxt


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------
def check_return_offer(
    engine: Engine,
    user_id: str,
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> ReturnOffer:
    """Whether the user should see the Return Protocol offer right now.

    Users without a progression row have no absence to return from.
    """
    config = config or get_default_config()
    clock = clock or get_default_clock()
    try:
        with user_transaction(
            engine, user_id, create=False, nowait=config.database.lock_nowait
        ) as (_session, state):
            return evaluate_offer_locked(state, now=clock.now(), config=config)
    except NotFoundError:
        return ReturnOffer(False, 0, AbsenceLevel.NONE, 0)


def get_return_status(
    engine: Engine, user_id: str, *, config: AriseConfig | None = None
) -> ReturnStatus:
    config = config or get_default_config()
    with translate_storage_errors(user_id), Session(engine) as session:
        state = session.get(UserProgression, user_id)
        if state is None:
            state = UserProgression(
                user_id=user_id, return_protocol_state=ReturnState.INACTIVE.value,
                return_protocol_day=0,
            )
        return _status(session, state, config)


def accept_return(
    engine: Engine,
    user_id: str,
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> ReturnStatus:
    """Enter the protocol at day 1.  The streak restarts from 0.

    Raises
    ------
    InvalidStateTransition
        The protocol is not currently offered.
    """
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with user_transaction(
        engine, user_id, nowait=config.database.lock_nowait
    ) as (session, state):
        now = clock.now()
        evaluate_offer_locked(state, now=now, config=config)
        _set_position(state, protocol.accept(protocol_position(state)))
        state.return_protocol_started_at = now
        state.return_protocol_advanced_on = None
        state.current_streak = 0
        state.last_activity_at = now
        logger.info("User %s accepted the Return Protocol", user_id)
        return _status(session, state, config)


def decline_return(
    engine: Engine,
    user_id: str,
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> ReturnStatus:
    """Leave the protocol (only while offered or on day 1); full intensity resumes.

    Raises
    ------
    InvalidStateTransition
        Past day 1, or the protocol was never offered.
    """
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with user_transaction(
        engine, user_id, create=False, nowait=config.database.lock_nowait
    ) as (session, state):
        position = protocol_position(state)
        try:
            nxt = protocol.decline(position)
        except InvalidStateTransition:
            logger.warning(
                "User %s tried to decline the Return Protocol at %s day %d",
                user_id, position.state, position.day,
            )
            raise
        _set_position(state, nxt)
        state.return_protocol_started_at = None
        state.return_protocol_offered_at = None
        state.return_protocol_advanced_on = None
        state.current_streak = 0
        state.last_activity_at = clock.now()
        logger.info("User %s declined the Return Protocol", user_id)
        return _status(session, state, config)


def advance_return(
    engine: Engine,
    user_id: str,
    timezone: str | None = None,
    *,
    config: AriseConfig | None = None,
    clock: Clock | None = None,
) -> ReturnStatus:
    """Advance the active protocol by one day (no-op if already advanced today)."""
    config = config or get_default_config()
    clock = clock or get_default_clock()
    with user_transaction(
        engine, user_id, create=False, nowait=config.database.lock_nowait
    ) as (session, state):
        apply_timezone(state, timezone, config)
        now = clock.now()
        advance_locked(state, local_date(now, user_zone(state, config)), now=now, config=config)
        return _status(session, state, config)
