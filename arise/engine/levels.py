"""
arise.engine.levels: Level Calculator
======================================

Maps cumulative XP to a level (≥ 1).  Pure, deterministic, monotonic.

The default curve is cumulative: reaching level *n* needs
``Σ floor(base · k^exponent)`` for ``k = 1 … n-1``.  With the defaults
(100, 1.5) level 2 starts at 100 XP and level 3 at 382 XP.

Thresholds are precomputed and extended on demand, so ``level_of`` is a
binary search however large the XP grows.
"""

from __future__ import annotations

import math
from bisect import bisect_right
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock

from arise.exceptions import ValidationError

LevelIncrement = Callable[[int], int]
"""XP needed to go from level *k* to *k + 1* (must be positive)."""


def power_curve(base_xp: int = 100, exponent: float = 1.5) -> LevelIncrement:
    def increment(k: int) -> int:
        return math.floor(base_xp * k ** exponent)

    return increment


@dataclass(frozen=True, slots=True)
class LevelProgress:
    current_level: int
    xp_for_current_level: int
    xp_for_next_level: int
    xp_progress: int
    xp_needed: int
    progress_percent: int


class LevelCurve:
    """Threshold table for an increment formula.

    Thread-safe.  ``thresholds[i]`` is the XP at which level ``i + 1``
    starts, so ``thresholds[0] == 0``.
    """

    def __init__(self, increment: LevelIncrement | None = None, *, preload: int = 100) -> None:
        self._increment = increment or power_curve()
        self._lock = Lock()
        self._thresholds: list[int] = [0]
        self._extend_to_level(preload)

    def _extend_to_level(self, level: int) -> None:
        with self._lock:
            while len(self._thresholds) < level:
                k = len(self._thresholds)
                step = self._increment(k)
                if step <= 0:
                    raise ValidationError(
                        "Level curve must be strictly increasing",
                        {"level": k + 1, "increment": step},
                    )
                self._thresholds.append(self._thresholds[-1] + step)

    def _extend_past(self, xp: int) -> None:
        while self._thresholds[-1] <= xp:
            self._extend_to_level(len(self._thresholds) * 2)

    def threshold(self, level: int) -> int:
        """Total XP at which *level* starts."""
        if level < 1:
            raise ValidationError("Level must be at least 1", {"level": level})
        self._extend_to_level(level)
        return self._thresholds[level - 1]

    def level_of(self, xp: int) -> int:
        _check_xp(xp)
        self._extend_past(xp)
        return bisect_right(self._thresholds, xp)

    def progress(self, xp: int) -> LevelProgress:
        level = self.level_of(xp)
        floor_xp = self.threshold(level)
        next_xp = self.threshold(level + 1)
        span = next_xp - floor_xp
        into = xp - floor_xp
        return LevelProgress(
            current_level=level,
            xp_for_current_level=floor_xp,
            xp_for_next_level=next_xp,
            xp_progress=into,
            xp_needed=span,
            progress_percent=math.floor(into * 100 / span),
        )


def _check_xp(xp: int) -> None:
    if isinstance(xp, bool) or not isinstance(xp, int):
        raise ValidationError("XP must be an integer", {"xp": repr(xp)})
    if xp < 0:
        raise ValidationError("XP cannot be negative", {"xp": xp})


# ---------------------------------------------------------------------------
# Default curve (module-level singleton, like the rest of the engine)
# ---------------------------------------------------------------------------
_curves: dict[tuple[int, float], LevelCurve] = {}
_curves_lock = Lock()


def get_curve(base_xp: int = 100, exponent: float = 1.5) -> LevelCurve:
    """Shared curve for the given parameters."""
    key = (base_xp, exponent)
    with _curves_lock:
        curve = _curves.get(key)
        if curve is None:
            curve = LevelCurve(power_curve(base_xp, exponent))
            _curves[key] = curve
        return curve


def level_of(xp: int) -> int:
    return get_curve().level_of(xp)


def xp_for_level(level: int) -> int:
    return get_curve().threshold(level)
