"""
arise.constants: Shared Constants
==================================

Single source of truth for values that are part of persisted data
(hash format, genesis sentinel) and therefore must never come from
tunable config.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Ledger chain
# ---------------------------------------------------------------------------
GENESIS_HASH: str = "0" * 64
"""``previous_hash`` of every user's first event."""

HASH_TIMESTAMP_FORMAT: str = "%Y-%m-%dT%H:%M:%S.%fZ"
"""UTC timestamp rendering used inside the event hash."""

HASH_SEPARATOR: str = ":"

# ---------------------------------------------------------------------------
# Requirement DSL
# ---------------------------------------------------------------------------
MAX_REQUIREMENT_DEPTH: int = 8

# ---------------------------------------------------------------------------
# Ledger reads
# ---------------------------------------------------------------------------
TIMELINE_PAGE_SIZE: int = 50
TIMELINE_MAX_PAGE_SIZE: int = 500
