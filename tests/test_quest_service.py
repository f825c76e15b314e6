"""
tests/test_quest_service.py: Integration Tests for the Quest Lifecycle
======================================================================

Quest creation, progress scoring, partial completion, resets and skips
against in-memory SQLite with the default template catalogue.
"""

from __future__ import annotations

from datetime import date

import pytest
from conftest import ALL_CORE_METRICS, CORE_TEMPLATE_IDS, by_template, get_progression

from arise.database.models import QuestStatus, XPSource
from arise.database.seed import seed_quest_templates
from arise.exceptions import InvalidStateTransition, NotFoundError
from arise.services.day_service import close_day, close_pending_days
from arise.services.ledger_service import find_events_by_source, verify_user_chain
from arise.services.quest_service import (
    activate_quest,
    ensure_daily_quests,
    evaluate_active_quests,
    get_quest,
    get_quest_history,
    get_quests_for_date,
    reset_quest,
    skip_quest,
    update_quest_progress,
)

WED = date(2026, 3, 4)


@pytest.fixture
def quests(seeded_engine, clock, config):
    """Today's core quests for user u1, keyed by template id."""
    return by_template(ensure_daily_quests(seeded_engine, "u1", config=config, clock=clock))


class TestEnsureDailyQuests:
    def test_creates_core_instances(self, quests):
        assert sorted(quests) == CORE_TEMPLATE_IDS
        steps = quests["core-daily-steps"]
        assert steps.status == QuestStatus.ACTIVE
        assert steps.period_key == "2026-03-04"
        assert steps.target_value == 10000
        assert steps.is_core is True

    def test_idempotent(self, seeded_engine, clock, config, quests):
        again = ensure_daily_quests(seeded_engine, "u1", config=config, clock=clock)
        assert sorted(q.id for q in again) == sorted(q.id for q in quests.values())

    def test_timezone_stored_and_used(self, seeded_engine, clock, config):
        clock.set(clock.now().replace(hour=3))  # still the 3rd in Los Angeles
        got = ensure_daily_quests(
            seeded_engine, "u2", "America/Los_Angeles", config=config, clock=clock
        )
        assert {q.local_date for q in got} == {date(2026, 3, 3)}
        assert get_progression(seeded_engine, "u2").timezone == "America/Los_Angeles"

    def test_invalid_timezone_falls_back(self, seeded_engine, clock, config):
        got = ensure_daily_quests(seeded_engine, "u3", "Mars/Olympus", config=config, clock=clock)
        assert {q.local_date for q in got} == {WED}
        assert get_progression(seeded_engine, "u3").timezone == "UTC"


class TestProgress:
    def test_full_completion_awards_xp(self, seeded_engine, clock, config, quests):
        quest = quests["core-daily-steps"]
        result = update_quest_progress(
            seeded_engine, "u1", quest.id, {"steps": 12000}, config=config, clock=clock
        )
        assert result.quest.status == QuestStatus.COMPLETED
        assert result.quest.is_partial is False
        assert result.xp_awarded == 50
        assert result.quest.xp_event_id == result.ledger.event.id
        assert get_progression(seeded_engine, "u1").total_xp == 50

    def test_partial_completion(self, seeded_engine, clock, config, quests):
        quest = quests["core-daily-steps"]
        result = update_quest_progress(
            seeded_engine, "u1", quest.id, {"steps": 7500}, config=config, clock=clock
        )
        assert result.quest.status == QuestStatus.COMPLETED
        assert result.quest.is_partial is True
        assert result.quest.completion_percent == 75
        assert result.xp_awarded == 37  # floor(50 * 0.75)
        events = find_events_by_source(
            seeded_engine, "u1", XPSource.QUEST_PARTIAL, f"quest:{quest.id}"
        )
        assert [e.final_amount for e in events] == [37]

    def test_below_partial_minimum_stays_active(self, seeded_engine, clock, config, quests):
        quest = quests["core-daily-steps"]
        result = update_quest_progress(
            seeded_engine, "u1", quest.id, {"steps": 3000}, config=config, clock=clock
        )
        assert result.quest.status == QuestStatus.ACTIVE
        assert result.quest.current_value == 3000
        assert result.quest.completion_percent == 30
        assert result.xp_awarded == 0

    def test_completed_quest_rejects_progress(self, seeded_engine, clock, config, quests):
        quest = quests["core-alcohol-free"]
        update_quest_progress(
            seeded_engine, "u1", quest.id, {"no_alcohol": True}, config=config, clock=clock
        )
        with pytest.raises(InvalidStateTransition):
            update_quest_progress(
                seeded_engine, "u1", quest.id, {"no_alcohol": True}, config=config, clock=clock
            )

    def test_other_users_quest_not_found(self, seeded_engine, clock, config, quests):
        ensure_daily_quests(seeded_engine, "u2", config=config, clock=clock)
        with pytest.raises(NotFoundError):
            update_quest_progress(
                seeded_engine, "u2", quests["core-daily-steps"].id, {"steps": 1},
                config=config, clock=clock,
            )

    def test_evaluate_all_active(self, seeded_engine, clock, config, quests):
        summary = evaluate_active_quests(
            seeded_engine, "u1", ALL_CORE_METRICS, config=config, clock=clock
        )
        assert summary["evaluated"] == 5
        assert summary["completed"] == 5
        assert summary["xp_awarded"] == 50 + 75 + 50 + 50 + 40
        assert verify_user_chain(seeded_engine, "u1", config=config).events_checked == 5

    def test_evaluate_skips_completed(self, seeded_engine, clock, config, quests):
        evaluate_active_quests(seeded_engine, "u1", {"no_alcohol": True}, config=config, clock=clock)
        summary = evaluate_active_quests(
            seeded_engine, "u1", ALL_CORE_METRICS, config=config, clock=clock
        )
        assert summary["evaluated"] == 4


class TestResetAndSkip:
    def test_reset_reverses_xp(self, seeded_engine, clock, config, quests):
        quest = quests["core-workout-complete"]
        update_quest_progress(
            seeded_engine, "u1", quest.id, {"workout_minutes": 40}, config=config, clock=clock
        )
        clock.advance(minutes=5)
        reset = reset_quest(seeded_engine, "u1", quest.id, config=config, clock=clock)
        assert reset.status == QuestStatus.ACTIVE
        assert reset.xp_awarded == 0
        assert get_progression(seeded_engine, "u1").total_xp == 0
        removal = find_events_by_source(
            seeded_engine, "u1", XPSource.QUEST_RESET, f"quest:{quest.id}"
        )
        assert [e.final_amount for e in removal] == [-75]
        verify_user_chain(seeded_engine, "u1", config=config)

    def test_reset_requires_completed(self, seeded_engine, clock, config, quests):
        with pytest.raises(InvalidStateTransition):
            reset_quest(seeded_engine, "u1", quests["core-daily-steps"].id, config=config, clock=clock)

    def test_core_quest_cannot_be_skipped(self, seeded_engine, clock, config, quests):
        with pytest.raises(InvalidStateTransition, match="Core"):
            skip_quest(seeded_engine, "u1", quests["core-daily-steps"].id, config=config, clock=clock)

    def test_bonus_quest_skip(self, seeded_engine, clock, config, quests):
        bonus = activate_quest(
            seeded_engine, "u1", "bonus-meditation-session", config=config, clock=clock
        )
        skipped = skip_quest(seeded_engine, "u1", bonus.id, config=config, clock=clock)
        assert skipped.status == QuestStatus.SKIPPED


class TestActivate:
    def test_bonus_activation(self, seeded_engine, clock, config, quests):
        bonus = activate_quest(
            seeded_engine, "u1", "bonus-step-champion", config=config, clock=clock
        )
        assert bonus.is_core is False
        assert bonus.target_value == 15000
        result = update_quest_progress(
            seeded_engine, "u1", bonus.id, {"steps": 16000}, config=config, clock=clock
        )
        assert result.xp_awarded == 35

    def test_duplicate_activation_rejected(self, seeded_engine, clock, config, quests):
        activate_quest(seeded_engine, "u1", "bonus-active-rest", config=config, clock=clock)
        with pytest.raises(InvalidStateTransition):
            activate_quest(seeded_engine, "u1", "bonus-active-rest", config=config, clock=clock)

    def test_unknown_template(self, seeded_engine, clock, config, quests):
        with pytest.raises(NotFoundError):
            activate_quest(seeded_engine, "u1", "bonus-nope", config=config, clock=clock)

    def test_compound_bonus(self, seeded_engine, clock, config, quests):
        quest = activate_quest(
            seeded_engine, "u1", "bonus-compound-movement", config=config, clock=clock
        )
        result = update_quest_progress(
            seeded_engine, "u1", quest.id,
            {"workout_completed": True, "workout_minutes": 18},
            config=config, clock=clock,
        )
        assert result.quest.status == QuestStatus.COMPLETED


class TestClosedDay:
    def test_closed_day_is_immutable(self, seeded_engine, clock, config, quests):
        quest = quests["core-daily-steps"]
        update_quest_progress(
            seeded_engine, "u1", quest.id, {"steps": 10000}, config=config, clock=clock
        )
        close_day(seeded_engine, "u1", config=config, clock=clock)
        with pytest.raises(InvalidStateTransition, match="closed"):
            reset_quest(seeded_engine, "u1", quest.id, config=config, clock=clock)

    def test_activation_on_closed_day_rejected(self, seeded_engine, clock, config, quests):
        close_day(seeded_engine, "u1", config=config, clock=clock)
        with pytest.raises(InvalidStateTransition):
            activate_quest(seeded_engine, "u1", "bonus-active-rest", config=config, clock=clock)

    def test_close_fails_open_quests(self, seeded_engine, clock, config, quests):
        close_day(seeded_engine, "u1", config=config, clock=clock)
        statuses = {q.status for q in get_quests_for_date(seeded_engine, "u1", WED)}
        assert statuses == {QuestStatus.FAILED}


class TestReads:
    def test_get_quest(self, seeded_engine, quests):
        quest = quests["core-quality-sleep"]
        assert get_quest(seeded_engine, "u1", quest.id).template_id == "core-quality-sleep"
        with pytest.raises(NotFoundError):
            get_quest(seeded_engine, "someone-else", quest.id)

    def test_history_newest_first(self, seeded_engine, clock, config, quests):
        clock.advance(days=1)
        ensure_daily_quests(seeded_engine, "u1", config=config, clock=clock)
        history = get_quest_history(
            seeded_engine, "u1", days=7, template_id="core-daily-steps", config=config, clock=clock
        )
        assert [q.local_date for q in history] == [date(2026, 3, 5), WED]
        assert history[1].status == QuestStatus.FAILED


WEEKLY_STEPS = {
    "id": "weekly-step-volume",
    "name": "Weekly Step Volume",
    "period": "WEEKLY",
    "requirement": {"type": "numeric", "metric": "steps", "operator": "gte", "value": 50000},
    "base_xp": 100,
}
SUNDAY = date(2026, 3, 8)


@pytest.fixture
def weekly(seeded_engine, clock, config, quests):
    """u1's weekly step quest, activated on Wednesday of ISO week 10."""
    seed_quest_templates(seeded_engine, [WEEKLY_STEPS])
    return activate_quest(seeded_engine, "u1", "weekly-step-volume", config=config, clock=clock)


class TestWeeklyQuests:
    def test_keyed_by_iso_week(self, weekly):
        assert weekly.period_key == "2026-W10"
        assert weekly.local_date == WED

    def test_progress_after_activation_day_closes(self, seeded_engine, clock, config, weekly):
        close_day(seeded_engine, "u1", config=config, clock=clock)
        clock.advance(days=1)
        result = update_quest_progress(
            seeded_engine, "u1", weekly.id, {"steps": 60000}, config=config, clock=clock
        )
        assert result.quest.status == QuestStatus.COMPLETED
        assert result.quest.xp_awarded > 0

    def test_evaluated_with_later_snapshots(self, seeded_engine, clock, config, weekly):
        close_day(seeded_engine, "u1", config=config, clock=clock)
        clock.advance(days=1)
        ensure_daily_quests(seeded_engine, "u1", config=config, clock=clock)
        evaluate_active_quests(seeded_engine, "u1", {"steps": 55000}, config=config, clock=clock)
        assert get_quest(seeded_engine, "u1", weekly.id).status == QuestStatus.COMPLETED

    def test_reset_and_skip_later_in_the_week(self, seeded_engine, clock, config, weekly):
        update_quest_progress(
            seeded_engine, "u1", weekly.id, {"steps": 50000}, config=config, clock=clock
        )
        close_day(seeded_engine, "u1", config=config, clock=clock)
        clock.advance(days=2)
        reset = reset_quest(seeded_engine, "u1", weekly.id, config=config, clock=clock)
        assert reset.status == QuestStatus.ACTIVE
        skipped = skip_quest(seeded_engine, "u1", weekly.id, config=config, clock=clock)
        assert skipped.status == QuestStatus.SKIPPED

    def test_sunday_close_fails_open_weekly(self, seeded_engine, clock, config, weekly):
        clock.set(clock.now().replace(day=8))
        summary = close_day(seeded_engine, "u1", config=config, clock=clock)
        assert summary.date == SUNDAY
        assert get_quest(seeded_engine, "u1", weekly.id).status == QuestStatus.FAILED
        with pytest.raises(InvalidStateTransition):
            activate_quest(seeded_engine, "u1", "weekly-step-volume", config=config, clock=clock)

    def test_closing_a_later_week_fails_it(self, seeded_engine, clock, config, weekly):
        clock.advance(days=6)  # Tuesday of the following week
        with pytest.raises(InvalidStateTransition, match="ended"):
            update_quest_progress(
                seeded_engine, "u1", weekly.id, {"steps": 60000}, config=config, clock=clock
            )
        close_day(seeded_engine, "u1", config=config, clock=clock)
        assert get_quest(seeded_engine, "u1", weekly.id).status == QuestStatus.FAILED

    def test_weekly_activation_leaves_no_pending_day(self, seeded_engine, clock, config):
        seed_quest_templates(seeded_engine, [WEEKLY_STEPS])
        activate_quest(seeded_engine, "u3", "weekly-step-volume", config=config, clock=clock)
        clock.advance(days=1)
        assert close_pending_days(seeded_engine, "u3", config=config, clock=clock) == []
