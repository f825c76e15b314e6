"""
tests/test_streaks.py: Unit Tests for Streak & Debuff Transitions
==================================================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from arise.config import StreakConfig
from arise.engine.streaks import close_day_transition, debuff_status, is_debuff_active

NOW = datetime(2026, 3, 5, 0, 5, tzinfo=UTC)
DAY_END = datetime(2026, 3, 5, 0, 0, tzinfo=UTC)


def close(**overrides):
    params = dict(
        current_streak=12,
        longest_streak=20,
        debuff_until=None,
        required=5,
        completed=5,
        applied_at=DAY_END,
        now=NOW,
        config=StreakConfig(),
    )
    params.update(overrides)
    return close_day_transition(**params)


class TestCloseDay:
    def test_all_complete_increments(self):
        t = close()
        assert t.streak_after == 13
        assert t.longest_after == 20
        assert t.debuff_applied is False

    def test_new_longest(self):
        t = close(current_streak=20)
        assert t.longest_after == 21

    def test_miss_resets_and_applies_debuff(self):
        t = close(completed=4)
        assert t.streak_after == 0
        assert t.streak_broken is True
        assert t.debuff_applied is True
        assert t.debuff_until == DAY_END + timedelta(hours=24)
        assert t.longest_after == 20

    def test_active_debuff_not_extended(self):
        running = NOW + timedelta(hours=5)
        t = close(completed=0, debuff_until=running)
        assert t.debuff_applied is False
        assert t.debuff_until == running

    def test_expired_debuff_replaced(self):
        expired = NOW - timedelta(hours=1)
        t = close(completed=0, debuff_until=expired)
        assert t.debuff_applied is True
        assert t.debuff_until == DAY_END + timedelta(hours=24)

    def test_completion_clears_debuff_early(self):
        t = close(debuff_until=NOW + timedelta(hours=10))
        assert t.debuff_until is None
        assert t.debuff_cleared is True

    def test_nothing_required_keeps_streak(self):
        t = close(required=0, completed=0)
        assert t.streak_after == 12
        assert t.debuff_applied is False

    def test_min_missed_threshold(self):
        t = close(completed=4, config=StreakConfig(debuff_min_missed=2))
        assert t.streak_after == 0
        assert t.debuff_applied is False
        assert t.debuff_until is None

    def test_reduced_requirement_counts(self):
        t = close(required=1, completed=1, current_streak=0)
        assert t.streak_after == 1


class TestDebuffStatus:
    def test_inactive(self):
        assert is_debuff_active(None, NOW) is False
        status = debuff_status(NOW - timedelta(seconds=1), NOW, 10)
        assert status.is_active is False
        assert status.expires_at is None

    def test_hours_remaining_rounds_up(self):
        status = debuff_status(NOW + timedelta(hours=23, minutes=10), NOW, 10)
        assert status.is_active is True
        assert status.hours_remaining == 24
        assert status.penalty_percent == 10

    def test_naive_until_treated_as_utc(self):
        naive = (NOW + timedelta(hours=1)).replace(tzinfo=None)
        assert is_debuff_active(naive, NOW) is True
