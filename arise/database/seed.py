"""
arise.database.seed: Default Quest Template Seeder
===================================================

The baseline quest catalogue: five core daily quests that drive streaks
and debuffs, plus optional bonus quests.

Idempotent: only inserts templates whose id doesn't exist yet.  Templates
edited later are never overwritten.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine

from arise.database.engine import get_session
from arise.database.models import QuestPeriod, QuestTemplate
from arise.engine.requirements import parse_requirement

logger = logging.getLogger(__name__)


def _numeric(metric: str, operator: str, value: float, unit: str) -> dict:
    return {"type": "numeric", "metric": metric, "operator": operator, "value": value, "unit": unit}


def _flag(metric: str, expected: bool = True) -> dict:
    return {"type": "boolean", "metric": metric, "expected": expected}


# ---------------------------------------------------------------------------
# Default template catalogue
# ---------------------------------------------------------------------------
DEFAULT_QUEST_TEMPLATES: list[dict] = [
    {
        "id": "core-daily-steps",
        "name": "Daily Steps",
        "description": "Walk 10,000 steps.",
        "category": "MOVEMENT",
        "requirement": _numeric("steps", "gte", 10000, "steps"),
        "base_xp": 50,
        "allow_partial": True,
        "min_partial_percent": 50,
        "is_core": True,
    },
    {
        "id": "core-workout-complete",
        "name": "Workout Complete",
        "description": "Complete at least 30 minutes of exercise.",
        "category": "STRENGTH",
        "requirement": _numeric("workout_minutes", "gte", 30, "minutes"),
        "base_xp": 75,
        "allow_partial": True,
        "min_partial_percent": 50,
        "is_core": True,
    },
    {
        "id": "core-protein-target",
        "name": "Protein Target",
        "description": "Consume at least 100g of protein.",
        "category": "NUTRITION",
        "requirement": _numeric("protein_grams", "gte", 100, "grams"),
        "base_xp": 50,
        "allow_partial": True,
        "min_partial_percent": 75,
        "is_core": True,
    },
    {
        "id": "core-quality-sleep",
        "name": "Quality Sleep",
        "description": "Get at least 7 hours of sleep.",
        "category": "RECOVERY",
        "requirement": _numeric("sleep_hours", "gte", 7, "hours"),
        "base_xp": 50,
        "allow_partial": True,
        "min_partial_percent": 70,
        "is_core": True,
    },
    {
        "id": "core-alcohol-free",
        "name": "Alcohol-Free Day",
        "description": "No alcohol today.",
        "category": "DISCIPLINE",
        "requirement": _flag("no_alcohol"),
        "base_xp": 40,
        "is_core": True,
    },
    {
        "id": "bonus-meditation-session",
        "name": "Meditation Session",
        "description": "Complete a 10-minute meditation session.",
        "category": "RECOVERY",
        "requirement": _numeric("meditation_minutes", "gte", 10, "minutes"),
        "base_xp": 30,
    },
    {
        "id": "bonus-step-champion",
        "name": "Step Champion",
        "description": "Walk 15,000 steps.",
        "category": "MOVEMENT",
        "requirement": _numeric("steps", "gte", 15000, "steps"),
        "base_xp": 35,
    },
    {
        "id": "bonus-compound-movement",
        "name": "Compound Movement Challenge",
        "description": "Complete a full-body circuit in 20 minutes or less.",
        "category": "STRENGTH",
        "requirement": {
            "type": "compound",
            "operator": "and",
            "requirements": [
                _flag("workout_completed"),
                _numeric("workout_minutes", "lte", 20, "minutes"),
            ],
        },
        "base_xp": 35,
    },
    {
        "id": "bonus-active-rest",
        "name": "Active Rest",
        "description": "Ten minutes of mobility work or yoga.",
        "category": "RECOVERY",
        "requirement": _numeric("active_rest_minutes", "gte", 10, "minutes"),
        "base_xp": 20,
    },
    {
        "id": "bonus-interval-training",
        "name": "Interval Training",
        "description": "Complete a HIIT session of at least 20 minutes.",
        "category": "MOVEMENT",
        "requirement": {
            "type": "compound",
            "operator": "and",
            "requirements": [
                _flag("workout_completed"),
                _numeric("workout_minutes", "gte", 20, "minutes"),
                _flag("interval_style"),
            ],
        },
        "base_xp": 30,
    },
]


# ---------------------------------------------------------------------------
# Seeder
# ---------------------------------------------------------------------------
def seed_quest_templates(engine: Engine, templates: list[dict] | None = None) -> int:
    """Insert templates that don't yet exist; return how many were added.

    Each requirement document is parsed first so a malformed catalogue
    fails loudly instead of being stored.
    """
    templates = DEFAULT_QUEST_TEMPLATES if templates is None else templates
    inserted = 0
    with get_session(engine) as session:
        for entry in templates:
            if session.get(QuestTemplate, entry["id"]) is not None:
                continue
            parse_requirement(entry["requirement"])
            session.add(QuestTemplate(
                id=entry["id"],
                name=entry["name"],
                description=entry.get("description", ""),
                category=entry.get("category", "general"),
                period=entry.get("period", QuestPeriod.DAILY.value),
                requirement=entry["requirement"],
                base_xp=entry["base_xp"],
                allow_partial=entry.get("allow_partial", False),
                min_partial_percent=entry.get("min_partial_percent", 0),
                is_core=entry.get("is_core", False),
                is_active=entry.get("is_active", True),
            ))
            inserted += 1

    if inserted:
        logger.info("Seeded %d quest templates.", inserted)
    return inserted
