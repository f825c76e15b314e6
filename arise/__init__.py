"""
Arise: Progression Engine for Gamified Habit Tracking
======================================================
Turns daily health metrics into quests, XP and levels.  Every XP change
is an entry in an append-only, hash-chained ledger; streaks, debuffs and
the Return Protocol are lazy state machines evaluated against the clock.

Package layout::

    arise/
    ├── config.py          # YAML → typed tuning config
    ├── constants.py       # Shared constants (genesis hash, hash format, paging)
    ├── exceptions.py      # ProgressionError hierarchy
    ├── clock.py           # Clock + timezone / local-day helpers
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + session helper
    │   ├── models.py      # ORM models (progression, ledger, quests)
    │   ├── store.py       # Per-user locked transactions, chain append
    │   └── seed.py        # Default quest template seeder
    ├── engine/
    │   ├── requirements.py    # Requirement DSL + evaluator
    │   ├── levels.py          # XP → level curve
    │   ├── modifiers.py       # Ordered bonus/penalty stack
    │   ├── chain.py           # Event hashing + chain verification
    │   ├── streaks.py         # Streak & debuff transitions
    │   ├── return_protocol.py # Return Protocol transitions
    │   └── adaptation.py      # Adapted target decisions
    └── services/
        ├── ledger_service.py      # XP awards, removals, chain verification
        ├── quest_service.py       # Quest instance lifecycle
        ├── day_service.py         # Day close, streak/debuff reads
        ├── return_service.py      # Return Protocol operations
        └── adaptation_service.py  # Adapted targets
"""

__version__ = "0.1.0"
