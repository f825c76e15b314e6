"""
arise.database.store: Per-User Transactions & Ledger Append
============================================================

The persistence port of the engine.  Every mutation of a user's
progression runs inside :func:`user_transaction`, which takes a row lock
on ``user_progression`` (``SELECT … FOR UPDATE``) so all writers for one
user are linearized by the database while different users proceed in
parallel.

Inside that transaction :func:`read_chain_tip` and :func:`append_event`
read the head of the hash chain and append the next link, updating the
denormalized totals in the same commit.  The unique constraints on
``(user_id, sequence)`` and ``(user_id, previous_hash)`` are the last
line of defence: a writer that slipped past the lock loses with a
:class:`ConcurrencyConflict` instead of forking the chain.

Driver errors are translated into the engine's taxonomy by
:func:`translate_storage_errors`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Engine, select
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from arise.clock import resolve_timezone
from arise.constants import GENESIS_HASH
from arise.database.models import UserProgression, XPEvent, XPEventModifier
from arise.engine.chain import compute_event_hash
from arise.engine.modifiers import XPModifier, ordered
from arise.exceptions import (
    ConcurrencyConflict,
    NotFoundError,
    StorageUnavailable,
    ValidationError,
)

logger = logging.getLogger(__name__)

# lock_not_available, serialization_failure, deadlock_detected
_CONFLICT_PGCODES = frozenset({"55P03", "40001", "40P01"})


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------
@contextmanager
def translate_storage_errors(user_id: str | None = None) -> Iterator[None]:
    """Re-raise driver errors as :class:`ConcurrencyConflict` / :class:`StorageUnavailable`.

    Engine exceptions raised inside the block pass through untouched.
    """
    details = {"user_id": user_id} if user_id else {}
    try:
        yield
    except IntegrityError as exc:
        logger.warning("Write conflict for user %s: %s", user_id, exc.orig)
        raise ConcurrencyConflict(
            "A concurrent write won the race; retry the operation", details
        ) from exc
    except OperationalError as exc:
        pgcode = getattr(exc.orig, "pgcode", None)
        if pgcode in _CONFLICT_PGCODES or "database is locked" in str(exc.orig):
            logger.warning("Lock conflict for user %s (pgcode=%s)", user_id, pgcode)
            raise ConcurrencyConflict(
                "The user's progression is locked by another writer", details
            ) from exc
        logger.warning("Storage unavailable for user %s: %s", user_id, exc.orig)
        raise StorageUnavailable("The progression store is unavailable", details) from exc
    except InterfaceError as exc:
        logger.warning("Storage connection failed for user %s: %s", user_id, exc.orig)
        raise StorageUnavailable("The progression store is unavailable", details) from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise StorageUnavailable("The progression store connection was lost", details) from exc
        raise


# ---------------------------------------------------------------------------
# Per-user transaction
# ---------------------------------------------------------------------------
def _check_user_id(user_id: str) -> None:
    if not isinstance(user_id, str) or not user_id.strip() or len(user_id) > 64:
        raise ValidationError("user_id must be a non-empty string of at most 64 chars",
                              {"user_id": repr(user_id)})


def lock_progression(
    session: Session,
    user_id: str,
    *,
    create: bool = True,
    nowait: bool = False,
    timezone: str | None = None,
) -> UserProgression:
    """``SELECT … FOR UPDATE`` the user's row, inserting it on first use."""
    stmt = (
        select(UserProgression)
        .where(UserProgression.user_id == user_id)
        .with_for_update(nowait=nowait)
    )
    state = session.scalar(stmt)
    if state is not None:
        return state
    if not create:
        raise NotFoundError(f"No progression for user {user_id}", {"user_id": user_id})

    state = UserProgression(
        user_id=user_id,
        level=1,
        total_xp=0,
        current_streak=0,
        longest_streak=0,
        return_protocol_state="INACTIVE",
        return_protocol_day=0,
        streak_at_departure=0,
        timezone=resolve_timezone(timezone).key if timezone else "UTC",
    )
    # A concurrent first write for the same user fails here with an
    # IntegrityError, surfaced as a retryable ConcurrencyConflict.
    session.add(state)
    session.flush()
    logger.info("Created progression for user %s", user_id)
    return state


@contextmanager
def user_transaction(
    engine: Engine,
    user_id: str,
    *,
    create: bool = True,
    nowait: bool = False,
    timezone: str | None = None,
) -> Iterator[tuple[Session, UserProgression]]:
    """Yield ``(session, locked_state)``; commit on success, roll back on error.

    Usage::

        with user_transaction(engine, "u-1") as (session, state):
            state.current_streak += 1
    """
    _check_user_id(user_id)
    session = Session(engine, expire_on_commit=False)
    try:
        with translate_storage_errors(user_id):
            state = lock_progression(
                session, user_id, create=create, nowait=nowait, timezone=timezone
            )
            yield session, state
            session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def read_progression(engine: Engine, user_id: str) -> UserProgression | None:
    """Lock-free read of the materialized state (may be slightly stale)."""
    _check_user_id(user_id)
    with translate_storage_errors(user_id), Session(engine, expire_on_commit=False) as session:
        return session.get(UserProgression, user_id)


# ---------------------------------------------------------------------------
# Chain tip & append
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ChainTip:
    sequence: int
    hash: str
    total_xp: int


def read_chain_tip(session: Session, user_id: str) -> ChainTip:
    last = session.scalar(
        select(XPEvent)
        .where(XPEvent.user_id == user_id)
        .order_by(XPEvent.sequence.desc())
        .limit(1)
    )
    if last is None:
        return ChainTip(0, GENESIS_HASH, 0)
    return ChainTip(last.sequence, last.hash, last.total_xp_after)


def sync_totals(state: UserProgression, tip: ChainTip, level_of: Callable[[int], int]) -> None:
    """Make the denormalized totals agree with the chain head."""
    if state.total_xp != tip.total_xp:
        logger.warning(
            "Denormalized total for user %s drifted (%s vs chain %s); resyncing",
            state.user_id, state.total_xp, tip.total_xp,
        )
        state.total_xp = tip.total_xp
        state.level = level_of(tip.total_xp)


def append_event(
    session: Session,
    state: UserProgression,
    tip: ChainTip,
    *,
    source: str,
    source_id: str | None,
    base_amount: int,
    final_amount: int,
    level_of: Callable[[int], int],
    created_at: datetime,
    modifiers: Sequence[XPModifier] = (),
    floor_clamped: bool = False,
    description: str = "",
) -> XPEvent:
    """Append the next event after *tip* and update *state* to match.

    The caller holds the user lock and has already computed
    ``final_amount``; this only links, hashes and persists.
    """
    total_after = tip.total_xp + final_amount
    if total_after < 0:
        raise ValidationError(
            "XP total cannot go negative",
            {"user_id": state.user_id, "total_before": tip.total_xp, "delta": final_amount},
        )
    level_before = level_of(tip.total_xp)
    level_after = level_of(total_after)

    event = XPEvent(
        user_id=state.user_id,
        sequence=tip.sequence + 1,
        source=str(source),
        source_id=source_id,
        base_amount=base_amount,
        final_amount=final_amount,
        level_before=level_before,
        level_after=level_after,
        total_xp_before=tip.total_xp,
        total_xp_after=total_after,
        floor_clamped=floor_clamped,
        previous_hash=tip.hash,
        hash=compute_event_hash(
            state.user_id, final_amount, total_after, tip.hash, created_at
        ),
        description=description,
        created_at=created_at,
    )
    for position, modifier in enumerate(ordered(modifiers)):
        event.modifiers.append(XPEventModifier(
            kind=modifier.kind.value,
            source=modifier.source.value,
            multiplier=modifier.multiplier,
            order=modifier.order,
            position=position,
            description=modifier.description,
        ))
    session.add(event)

    state.total_xp = total_after
    state.level = level_after
    session.flush()
    return event
