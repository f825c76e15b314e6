"""
arise.engine.chain: Event Hashing & Chain Verification
=======================================================

Every XP event commits to its predecessor::

    hash = sha256("user_id:final_amount:total_xp_after:previous_hash:created_at")

The first event of a user points at :data:`GENESIS_HASH`.  Verification
walks a user's events oldest → newest and recomputes everything that can
be recomputed: linkage, hash, running totals, level, and the final amount
replayed from the base amount and the stored modifiers.

Detects accidental corruption only.  Anyone with write access can rebuild
a valid chain.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from arise.clock import as_utc
from arise.constants import GENESIS_HASH, HASH_SEPARATOR, HASH_TIMESTAMP_FORMAT
from arise.engine.modifiers import XPModifier, apply_modifiers
from arise.exceptions import LedgerCorrupted

logger = logging.getLogger(__name__)


class ChainedEvent(Protocol):
    id: int
    user_id: str
    sequence: int
    base_amount: int
    final_amount: int
    total_xp_before: int
    total_xp_after: int
    level_before: int
    level_after: int
    previous_hash: str
    hash: str
    floor_clamped: bool
    created_at: datetime


@dataclass(frozen=True, slots=True)
class ChainReport:
    user_id: str
    events_checked: int
    head_hash: str
    total_xp: int
    level: int


def canonical_timestamp(at: datetime) -> str:
    return as_utc(at).strftime(HASH_TIMESTAMP_FORMAT)


def compute_event_hash(
    user_id: str,
    final_amount: int,
    total_xp_after: int,
    previous_hash: str,
    created_at: datetime,
) -> str:
    payload = HASH_SEPARATOR.join(
        (
            str(user_id),
            str(final_amount),
            str(total_xp_after),
            previous_hash,
            canonical_timestamp(created_at),
        )
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def removal_delta(requested: int, total_before: int) -> tuple[int, bool]:
    """Applied delta for removing *requested* XP, and whether it was floored."""
    applied = min(requested, total_before)
    return -applied, applied < requested


def verify_chain(
    user_id: str,
    events: Sequence[ChainedEvent],
    *,
    level_of: Callable[[int], int],
    modifiers: Mapping[int, Sequence[XPModifier]] | None = None,
    expected_total: int | None = None,
) -> ChainReport:
    """Recompute and check a user's chain.

    Parameters
    ----------
    events:
        The user's events ordered by ``sequence``.
    modifiers:
        Stored modifiers by event id.  When given, award events are
        replayed through the modifier stack.
    expected_total:
        The denormalized ``total_xp`` on the progression row, checked
        against the chain head.

    Raises
    ------
    LedgerCorrupted
        On the first inconsistency found.
    """
    previous = GENESIS_HASH
    running = 0

    for position, event in enumerate(events, start=1):
        def fail(reason: str, _event=event) -> LedgerCorrupted:
            logger.error(
                "Chain verification failed for user %s at event %s: %s",
                user_id, _event.id, reason,
            )
            return LedgerCorrupted(user_id, _event.id, reason)

        if event.user_id != user_id:
            raise fail("event belongs to a different user")
        if event.sequence != position:
            raise fail(f"sequence gap: expected {position}, found {event.sequence}")
        if event.previous_hash != previous:
            raise fail("previous_hash does not match the preceding event")
        if event.total_xp_before != running:
            raise fail(
                f"total_xp_before {event.total_xp_before} != running total {running}"
            )
        if event.total_xp_after != event.total_xp_before + event.final_amount:
            raise fail("total_xp_after != total_xp_before + final_amount")
        if event.total_xp_after < 0:
            raise fail("total_xp_after is negative")
        if event.level_before != level_of(event.total_xp_before):
            raise fail("level_before does not match the level curve")
        if event.level_after != level_of(event.total_xp_after):
            raise fail("level_after does not match the level curve")

        if event.base_amount < 0:
            delta, clamped = removal_delta(-event.base_amount, event.total_xp_before)
            if event.final_amount != delta or bool(event.floor_clamped) != clamped:
                raise fail("removal amount does not match the floor rule")
        elif modifiers is not None:
            replayed = apply_modifiers(event.base_amount, modifiers.get(event.id, ()))
            if replayed.final_amount != event.final_amount:
                raise fail(
                    f"final_amount {event.final_amount} != replayed {replayed.final_amount}"
                )

        recomputed = compute_event_hash(
            event.user_id,
            event.final_amount,
            event.total_xp_after,
            event.previous_hash,
            event.created_at,
        )
        if recomputed != event.hash:
            raise fail("stored hash does not match recomputed hash")

        previous = event.hash
        running = event.total_xp_after

    if expected_total is not None and expected_total != running:
        logger.error(
            "Denormalized total for user %s is %d but chain head says %d",
            user_id, expected_total, running,
        )
        raise LedgerCorrupted(
            user_id,
            events[-1].id if events else None,
            f"progression total_xp {expected_total} != chain total {running}",
        )

    return ChainReport(
        user_id=user_id,
        events_checked=len(events),
        head_hash=previous,
        total_xp=running,
        level=level_of(running),
    )
