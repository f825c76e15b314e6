"""
arise.engine.streaks: Streak & Debuff Transitions
==================================================

Pure day-close transition for the streak counter and the debuff window.

* Every required core quest completed → streak + 1, longest updated, any
  active debuff cleared early.
* Otherwise → streak reset to 0, and a debuff window opens unless one is
  already running (an active debuff is never extended).

Debuff expiry is lazy: the stored ``debuff_until`` is compared with "now"
on every read.  There are no timers.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from arise.clock import as_utc
from arise.config import StreakConfig


@dataclass(frozen=True, slots=True)
class DebuffStatus:
    is_active: bool
    expires_at: datetime | None
    hours_remaining: int
    penalty_percent: int


@dataclass(frozen=True, slots=True)
class StreakTransition:
    streak_before: int
    streak_after: int
    longest_after: int
    debuff_until: datetime | None
    debuff_applied: bool
    debuff_cleared: bool

    @property
    def streak_broken(self) -> bool:
        return self.streak_after == 0 and self.streak_before > 0


def is_debuff_active(debuff_until: datetime | None, now: datetime) -> bool:
    return debuff_until is not None and as_utc(debuff_until) > as_utc(now)


def debuff_status(
    debuff_until: datetime | None, now: datetime, penalty_percent: int
) -> DebuffStatus:
    if not is_debuff_active(debuff_until, now):
        return DebuffStatus(False, None, 0, 0)
    remaining = as_utc(debuff_until) - as_utc(now)
    return DebuffStatus(
        is_active=True,
        expires_at=as_utc(debuff_until),
        hours_remaining=math.ceil(remaining.total_seconds() / 3600),
        penalty_percent=penalty_percent,
    )


def close_day_transition(
    *,
    current_streak: int,
    longest_streak: int,
    debuff_until: datetime | None,
    required: int,
    completed: int,
    applied_at: datetime,
    now: datetime,
    config: StreakConfig,
) -> StreakTransition:
    """Streak/debuff outcome of closing one day.

    Parameters
    ----------
    required:
        Core quests required that day (reduced during the Return Protocol).
    completed:
        Core quests completed (partial completions count).
    applied_at:
        Start of a newly opened debuff window.
    now:
        Used to decide whether a stored debuff is still active.
    """
    active = is_debuff_active(debuff_until, now)
    # Expired windows are dropped so the row doesn't carry stale state.
    kept_until = debuff_until if active else None

    if required <= 0:
        return StreakTransition(
            current_streak, current_streak, longest_streak, kept_until, False, False,
        )

    if completed >= required:
        streak = current_streak + 1
        return StreakTransition(
            streak_before=current_streak,
            streak_after=streak,
            longest_after=max(longest_streak, streak),
            debuff_until=None,
            debuff_applied=False,
            debuff_cleared=active,
        )

    missed = required - completed
    if missed >= config.debuff_min_missed and not active:
        until = as_utc(applied_at) + timedelta(hours=config.debuff_hours)
        return StreakTransition(current_streak, 0, longest_streak, until, True, False)

    return StreakTransition(current_streak, 0, longest_streak, kept_until, False, False)
