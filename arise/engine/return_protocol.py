"""
arise.engine.return_protocol: Return Protocol State Machine
============================================================

A gentle re-entry path for users coming back after a long absence::

    INACTIVE ──(absence ≥ medium threshold)──▶ OFFERED
    OFFERED  ──accept──▶ ACTIVE(1) ──day──▶ ACTIVE(2) ──day──▶ ACTIVE(3)
    ACTIVE(3) ──day──▶ INACTIVE  (completed, bootstrap streak)
    OFFERED | ACTIVE(1) ──decline──▶ INACTIVE

While ACTIVE the required core-quest count follows a reduced schedule
(1, 2, 3 by default).  Transitions are pure; the service persists them.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from arise.config import ReturnProtocolConfig
from arise.database.models import ReturnState
from arise.exceptions import InvalidStateTransition


class AbsenceLevel(enum.StrEnum):
    NONE = "none"
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


@dataclass(frozen=True, slots=True)
class ProtocolPosition:
    state: ReturnState
    day: int = 0
    completed: bool = False

    @property
    def is_active(self) -> bool:
        return self.state == ReturnState.ACTIVE


def absence_level(days_absent: int, config: ReturnProtocolConfig) -> AbsenceLevel:
    if days_absent >= config.long_days:
        return AbsenceLevel.LONG
    if days_absent >= config.medium_days:
        return AbsenceLevel.MEDIUM
    if days_absent >= config.short_days:
        return AbsenceLevel.SHORT
    return AbsenceLevel.NONE


def qualifies_for_offer(days_absent: int, config: ReturnProtocolConfig) -> bool:
    return absence_level(days_absent, config) in (AbsenceLevel.MEDIUM, AbsenceLevel.LONG)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
def offer(position: ProtocolPosition) -> ProtocolPosition:
    if position.state != ReturnState.INACTIVE:
        raise InvalidStateTransition(
            "Return Protocol can only be offered to inactive users",
            current_state=position.state, action="offer",
        )
    return ProtocolPosition(ReturnState.OFFERED)


def accept(position: ProtocolPosition) -> ProtocolPosition:
    if position.state != ReturnState.OFFERED:
        raise InvalidStateTransition(
            "Return Protocol has not been offered",
            current_state=position.state, action="accept",
        )
    return ProtocolPosition(ReturnState.ACTIVE, day=1)


def decline(position: ProtocolPosition) -> ProtocolPosition:
    """Leave the protocol; only while offered or on its first day."""
    if position.state == ReturnState.OFFERED or (
        position.state == ReturnState.ACTIVE and position.day == 1
    ):
        return ProtocolPosition(ReturnState.INACTIVE)
    raise InvalidStateTransition(
        "Return Protocol can only be declined before or on day 1",
        current_state=position.state, action="decline",
        details={"day": position.day},
    )


def advance(position: ProtocolPosition, config: ReturnProtocolConfig) -> ProtocolPosition:
    """Move to the next protocol day, completing after the last one."""
    if position.state != ReturnState.ACTIVE:
        raise InvalidStateTransition(
            "Return Protocol is not active",
            current_state=position.state, action="advance",
        )
    if position.day >= config.total_days:
        return ProtocolPosition(ReturnState.INACTIVE, completed=True)
    return ProtocolPosition(ReturnState.ACTIVE, day=position.day + 1)


def required_core_quests(
    position: ProtocolPosition, normal_count: int, config: ReturnProtocolConfig
) -> int:
    """Core quests required for a day at *position*."""
    if not position.is_active or position.day < 1:
        return normal_count
    index = min(position.day, config.total_days) - 1
    return min(config.required_quests_per_day[index], normal_count)


def days_remaining(position: ProtocolPosition, config: ReturnProtocolConfig) -> int:
    if not position.is_active:
        return 0
    return max(0, config.total_days - position.day + 1)
