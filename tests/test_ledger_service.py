"""
tests/test_ledger_service.py: Integration Tests for the Progression Ledger
==========================================================================

Runs against in-memory SQLite.  Row locks are no-ops there; the chain
and totals logic is exercised end to end.
"""

from __future__ import annotations

from datetime import date, timedelta

import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from arise.constants import GENESIS_HASH
from arise.database.models import UserProgression, XPEvent, XPSource
from arise.engine.modifiers import XPModifier
from arise.exceptions import LedgerCorrupted, NotFoundError, ValidationError
from arise.services.ledger_service import (
    find_events_by_source,
    get_event_breakdown,
    get_level_progress,
    get_xp_for_date,
    get_xp_timeline,
    record_xp_event,
    record_xp_removal,
    verify_all_chains,
    verify_user_chain,
)


def award(engine, clock, config, amount, user="u1", source_id=None, **kwargs):
    clock.advance(minutes=1)
    return record_xp_event(
        engine, user, XPSource.BONUS, source_id, amount, config=config, clock=clock, **kwargs
    )


class TestRecordXPEvent:
    def test_first_event_links_to_genesis(self, db_engine, clock, config):
        result = award(db_engine, clock, config, 40)
        assert result.event.sequence == 1
        assert result.event.previous_hash == GENESIS_HASH
        assert result.event.total_xp_after == 40
        assert result.leveled_up is False

    def test_chain_links_and_totals(self, db_engine, clock, config):
        events = [award(db_engine, clock, config, n).event for n in (40, 60, 25)]
        assert [e.sequence for e in events] == [1, 2, 3]
        assert events[1].previous_hash == events[0].hash
        assert events[2].previous_hash == events[1].hash

        with Session(db_engine) as session:
            state = session.get(UserProgression, "u1")
            assert state.total_xp == 125
            assert state.level == 2

    def test_level_up_reported(self, db_engine, clock, config):
        award(db_engine, clock, config, 90)
        result = award(db_engine, clock, config, 10)
        assert result.leveled_up is True
        assert result.new_level == 2

    def test_caller_modifiers_applied(self, db_engine, clock, config):
        result = award(
            db_engine, clock, config, 100,
            modifiers=[XPModifier.penalty(0.5), XPModifier.bonus(1.25)],
        )
        assert result.event.base_amount == 100
        assert result.event.final_amount == 62
        assert [m.kind for m in result.modifiers] == ["bonus", "penalty"]

    def test_weekend_bonus_is_ambient(self, db_engine, clock, config):
        clock.advance(days=3)  # Saturday
        result = award(db_engine, clock, config, 100)
        assert result.event.final_amount == 110

    def test_ambient_can_be_disabled(self, db_engine, clock, config):
        clock.advance(days=3)
        result = award(db_engine, clock, config, 100, apply_ambient=False)
        assert result.event.final_amount == 100

    @pytest.mark.parametrize("amount", [0, -5, 2.5, True])
    def test_invalid_amount_rejected(self, db_engine, clock, config, amount):
        with pytest.raises(ValidationError):
            record_xp_event(
                db_engine, "u1", XPSource.BONUS, None, amount, config=config, clock=clock
            )

    def test_invalid_user_rejected(self, db_engine, clock, config):
        with pytest.raises(ValidationError):
            record_xp_event(db_engine, "", XPSource.BONUS, None, 10, config=config, clock=clock)

    def test_rejected_input_writes_nothing(self, db_engine, clock, config):
        with pytest.raises(ValidationError):
            award(db_engine, clock, config, 10, modifiers=[XPModifier.bonus(-1.0)])
        with Session(db_engine) as session:
            assert session.scalar(select(XPEvent)) is None


class TestRemoval:
    def test_removal_is_negative_event(self, db_engine, clock, config):
        award(db_engine, clock, config, 100)
        clock.advance(minutes=1)
        result = record_xp_removal(
            db_engine, "u1", XPSource.CORRECTION, None, 30, config=config, clock=clock
        )
        assert result.event.final_amount == -30
        assert result.event.total_xp_after == 70
        assert result.event.floor_clamped is False
        assert result.new_level == 1

    def test_removal_floored_at_zero(self, db_engine, clock, config):
        award(db_engine, clock, config, 20)
        clock.advance(minutes=1)
        result = record_xp_removal(
            db_engine, "u1", XPSource.CORRECTION, None, 50, config=config, clock=clock
        )
        assert result.event.final_amount == -20
        assert result.event.total_xp_after == 0
        assert result.event.floor_clamped is True
        assert verify_user_chain(db_engine, "u1", config=config).total_xp == 0

    def test_removal_for_unknown_user(self, db_engine, clock, config):
        with pytest.raises(NotFoundError):
            record_xp_removal(
                db_engine, "ghost", XPSource.CORRECTION, None, 5, config=config, clock=clock
            )


class TestVerification:
    def test_many_events_verify(self, db_engine, clock, config):
        for n in range(1, 31):
            award(db_engine, clock, config, n * 7)
        report = verify_user_chain(db_engine, "u1", config=config)
        assert report.events_checked == 30
        assert report.total_xp == sum(n * 7 for n in range(1, 31))

    def test_tampered_event_detected(self, db_engine, clock, config):
        for n in (40, 60, 25):
            award(db_engine, clock, config, n)
        with Session(db_engine) as session:
            session.execute(
                update(XPEvent).where(XPEvent.sequence == 2).values(final_amount=61)
            )
            session.commit()
        with pytest.raises(LedgerCorrupted) as exc_info:
            verify_user_chain(db_engine, "u1", config=config)
        assert exc_info.value.details["user_id"] == "u1"

    def test_tampered_modifier_detected(self, db_engine, clock, config):
        award(db_engine, clock, config, 100, modifiers=[XPModifier.bonus(1.5)])
        with Session(db_engine) as session:
            event = session.scalar(select(XPEvent))
            event.modifiers[0].multiplier = 2.0
            session.commit()
        with pytest.raises(LedgerCorrupted, match="replayed"):
            verify_user_chain(db_engine, "u1", config=config)

    def test_drifted_total_detected(self, db_engine, clock, config):
        award(db_engine, clock, config, 40)
        with Session(db_engine) as session:
            session.execute(update(UserProgression).values(total_xp=999))
            session.commit()
        with pytest.raises(LedgerCorrupted):
            verify_user_chain(db_engine, "u1", config=config)

    def test_unknown_user(self, db_engine, config):
        with pytest.raises(NotFoundError):
            verify_user_chain(db_engine, "nobody", config=config)

    def test_verify_all_reports_corrupted_users(self, db_engine, clock, config):
        award(db_engine, clock, config, 40, user="alice")
        award(db_engine, clock, config, 40, user="bob")
        with Session(db_engine) as session:
            session.execute(
                update(XPEvent).where(XPEvent.user_id == "bob").values(total_xp_after=41)
            )
            session.commit()
        summary = verify_all_chains(db_engine, config=config)
        assert summary["checked"] == 2
        assert summary["events"] == 1
        assert [c["user_id"] for c in summary["corrupted"]] == ["bob"]


class TestReads:
    def test_find_events_by_source(self, db_engine, clock, config):
        award(db_engine, clock, config, 10, source_id="quest:1")
        award(db_engine, clock, config, 20, source_id="quest:2")
        found = find_events_by_source(db_engine, "u1", XPSource.BONUS, "quest:2")
        assert [e.final_amount for e in found] == [20]
        assert find_events_by_source(db_engine, "u1", XPSource.BONUS, "quest:9") == []

    def test_timeline_paging(self, db_engine, clock, config):
        for n in range(5):
            award(db_engine, clock, config, 10 + n)
        page = get_xp_timeline(db_engine, "u1", limit=2, offset=1)
        assert [e.sequence for e in page] == [2, 3]

    def test_timeline_rejects_bad_page(self, db_engine):
        with pytest.raises(ValidationError):
            get_xp_timeline(db_engine, "u1", limit=0)

    def test_event_breakdown(self, db_engine, clock, config):
        result = award(
            db_engine, clock, config, 100,
            modifiers=[XPModifier.bonus(1.25, description="promo"), XPModifier.penalty(0.5)],
        )
        breakdown = get_event_breakdown(db_engine, "u1", result.event.id)
        assert breakdown["final_amount"] == 62
        assert [(s["amount_before"], s["amount_after"]) for s in breakdown["modifiers"]] == [
            (100, 125),
            (125, 62),
        ]
        assert breakdown["modifiers"][0]["description"] == "promo"

    def test_event_breakdown_other_user(self, db_engine, clock, config):
        result = award(db_engine, clock, config, 10, user="alice")
        with pytest.raises(NotFoundError):
            get_event_breakdown(db_engine, "bob", result.event.id)

    def test_level_progress(self, db_engine, clock, config):
        award(db_engine, clock, config, 150)
        progress = get_level_progress(db_engine, "u1", config=config)
        assert progress.current_level == 2
        assert progress.xp_progress == 50
        assert get_level_progress(db_engine, "new-user", config=config).current_level == 1

    def test_xp_for_date(self, db_engine, clock, config):
        award(db_engine, clock, config, 30)
        award(db_engine, clock, config, 12)
        clock.advance(days=1)
        award(db_engine, clock, config, 99)
        today = clock.now().date() - timedelta(days=1)
        summary = get_xp_for_date(db_engine, "u1", today, config=config)
        assert summary["total"] == 42
        assert len(summary["events"]) == 2
        assert get_xp_for_date(db_engine, "u1", date(2020, 1, 1), config=config)["total"] == 0
