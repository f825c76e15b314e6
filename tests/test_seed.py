"""
tests/test_seed.py: Tests for the Default Quest Template Seeder
===============================================================
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from arise.database.models import QuestTemplate
from arise.database.seed import DEFAULT_QUEST_TEMPLATES, seed_quest_templates
from arise.engine.requirements import parse_requirement
from arise.exceptions import ValidationError


def test_seed_is_idempotent(db_engine):
    assert seed_quest_templates(db_engine) == len(DEFAULT_QUEST_TEMPLATES)
    assert seed_quest_templates(db_engine) == 0
    with Session(db_engine) as session:
        assert session.scalar(select(func.count()).select_from(QuestTemplate)) == 10


def test_five_core_templates(seeded_engine):
    with Session(seeded_engine) as session:
        core = session.scalars(select(QuestTemplate).where(QuestTemplate.is_core.is_(True))).all()
    assert len(core) == 5


def test_requirements_round_trip_through_json(seeded_engine):
    with Session(seeded_engine) as session:
        template = session.get(QuestTemplate, "bonus-interval-training")
        requirement = parse_requirement(template.requirement)
    assert requirement.operator == "and"
    assert len(requirement.children) == 3


def test_malformed_catalogue_rejected(db_engine):
    bad = [{"id": "x", "name": "X", "requirement": {"type": "mystery"}, "base_xp": 5}]
    with pytest.raises(ValidationError):
        seed_quest_templates(db_engine, bad)
    with Session(db_engine) as session:
        assert session.get(QuestTemplate, "x") is None
