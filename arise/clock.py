"""
arise.clock: Clock & Local-Day Helpers
=======================================

All temporal state (day close, debuff expiry, Return Protocol offers) is
computed lazily from stored timestamps versus "now".  "Now" comes from a
:class:`Clock` so tests can pin it; local days come from the user's IANA
timezone.

Timestamps are stored and compared in UTC.  SQLite drops tzinfo on the
way back out, so anything read from the database goes through
:func:`as_utc` first.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, at: datetime) -> None:
        self._now = as_utc(at)

    def now(self) -> datetime:
        return self._now

    def set(self, at: datetime) -> None:
        self._now = as_utc(at)

    def advance(self, **kwargs: float) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


_default_clock = SystemClock()


def get_default_clock() -> Clock:
    return _default_clock


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------
def as_utc(dt: datetime) -> datetime:
    """Return *dt* as an aware UTC datetime (naive values are taken as UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def resolve_timezone(name: str | None, fallback: str = "UTC") -> ZoneInfo:
    """Look up an IANA zone, falling back (with a warning) on unknown names."""
    for candidate in (name, fallback):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, falling back", candidate)
    return ZoneInfo("UTC")


def local_date(at: datetime, tz: ZoneInfo) -> date:
    """Calendar date of *at* in *tz*."""
    return as_utc(at).astimezone(tz).date()


def local_day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC ``[start, end)`` of the local calendar *day* in *tz*."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(UTC), end.astimezone(UTC)


def is_weekend(at: datetime, tz: ZoneInfo) -> bool:
    return local_date(at, tz).weekday() >= 5


def whole_days_between(earlier: datetime, later: datetime) -> int:
    """Whole elapsed days from *earlier* to *later* (0 if not after)."""
    delta = as_utc(later) - as_utc(earlier)
    return max(0, delta.days)


# ---------------------------------------------------------------------------
# Period keys
# ---------------------------------------------------------------------------
def daily_key(day: date) -> str:
    return day.isoformat()


def weekly_key(day: date) -> str:
    year, week, _ = day.isocalendar()
    return f"{year}-W{week:02d}"


def period_key(day: date, period: str) -> str:
    """Key identifying the quest period containing *day* (``DAILY``/``WEEKLY``)."""
    if period.upper() == "WEEKLY":
        return weekly_key(day)
    return daily_key(day)


def period_last_day(day: date, period: str) -> date:
    """Last local day of the quest period containing *day*."""
    if period.upper() == "WEEKLY":
        return day + timedelta(days=6 - day.weekday())
    return day
