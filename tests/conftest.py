"""
tests/conftest.py: Shared Test Fixtures
========================================
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy import BigInteger, Engine, create_engine
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from arise.clock import FixedClock
from arise.config import get_default_config
from arise.database.models import Base, UserProgression
from arise.database.seed import seed_quest_templates


# ---------------------------------------------------------------------------
# SQLite stand-ins for Postgres-only types.
# JSONB renders as TEXT; BigInteger as INTEGER so autoincrement works.
# ---------------------------------------------------------------------------
@compiles(PG_JSONB, "sqlite")
def _compile_jsonb_as_text(type_, compiler, **kw):
    return "TEXT"


@compiles(BigInteger, "sqlite")
def _compile_bigint_as_integer(type_, compiler, **kw):
    return "INTEGER"


# Wednesday, mid-morning UTC: weekend bonus never applies unless a test moves the clock.
WEDNESDAY = datetime(2026, 3, 4, 10, 0, 0, tzinfo=UTC)

CORE_TEMPLATE_IDS = [
    "core-alcohol-free",
    "core-daily-steps",
    "core-protein-target",
    "core-quality-sleep",
    "core-workout-complete",
]

ALL_CORE_METRICS = {
    "steps": 12000,
    "workout_minutes": 45,
    "protein_grams": 120,
    "sleep_hours": 8,
    "no_alcohol": True,
}


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with all Arise tables (StaticPool, shared across threads)."""
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def seeded_engine(db_engine: Engine) -> Engine:
    """``db_engine`` plus the default quest templates."""
    seed_quest_templates(db_engine)
    return db_engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(WEDNESDAY)


@pytest.fixture
def config():
    return get_default_config()


def set_progression(engine: Engine, user_id: str, **values) -> None:
    """Overwrite columns on a user's progression row (test setup shortcut)."""
    with Session(engine) as session:
        state = session.get(UserProgression, user_id)
        for key, value in values.items():
            setattr(state, key, value)
        session.commit()


def get_progression(engine: Engine, user_id: str) -> UserProgression:
    with Session(engine, expire_on_commit=False) as session:
        return session.get(UserProgression, user_id)


def by_template(quests) -> dict:
    return {q.template_id: q for q in quests}
