"""
arise.engine.adaptation: Adapted Target Decisions
==================================================

Nudges a user's personal target for a quest template based on how they
performed over a trailing window:

* consistently exceeding (average achievement > 1.25 and completion rate
  > 0.8) → target × 1.1, rounded up
* consistently under-shooting (average < 0.7 and rate < 0.5) → target
  × 0.9, rounded down
* otherwise unchanged

For ceiling targets (``lte``/``lt``) achievement is ``target / value`` and
the target moves the other way: beating a ceiling lowers it, struggling
raises it.

The result is always clamped to ``[min_fraction, max_fraction] × base``.
A manual override freezes the target entirely.
"""

from __future__ import annotations

import enum
import math
from collections.abc import Iterable
from dataclasses import dataclass

from arise.config import AdaptationConfig


class AdaptationReason(enum.StrEnum):
    INCREASED = "increased"
    DECREASED = "decreased"
    STABLE = "stable"
    INSUFFICIENT_DATA = "insufficient_data"
    MANUAL_OVERRIDE = "manual_override"
    AT_BOUND = "at_bound"


@dataclass(frozen=True, slots=True)
class PerformanceSample:
    current_value: float
    target_value: float
    completed: bool
    ceiling: bool = False

    @property
    def achievement(self) -> float:
        if self.ceiling:
            return self.target_value / self.current_value if self.current_value > 0 else 0.0
        return self.current_value / self.target_value if self.target_value > 0 else 0.0


@dataclass(frozen=True, slots=True)
class PerformanceSummary:
    sample_count: int
    completion_rate: float
    average_achievement: float


@dataclass(frozen=True, slots=True)
class AdaptationDecision:
    old_target: float
    new_target: float
    reason: AdaptationReason
    summary: PerformanceSummary | None = None

    @property
    def changed(self) -> bool:
        return self.new_target != self.old_target


def summarize_performance(samples: Iterable[PerformanceSample]) -> PerformanceSummary:
    """Completion rate and mean (uncapped) achievement over *samples*."""
    samples = list(samples)
    if not samples:
        return PerformanceSummary(0, 0.0, 0.0)
    completed = sum(1 for s in samples if s.completed)
    achievements = [s.achievement for s in samples]
    return PerformanceSummary(
        sample_count=len(samples),
        completion_rate=completed / len(samples),
        average_achievement=sum(achievements) / len(achievements),
    )


def target_bounds(base_target: float, config: AdaptationConfig) -> tuple[float, float]:
    return base_target * config.min_fraction, base_target * config.max_fraction


def clamp_target(value: float, base_target: float, config: AdaptationConfig) -> float:
    lo, hi = target_bounds(base_target, config)
    return _normalize(min(hi, max(lo, value)), base_target)


def _normalize(value: float, base_target: float) -> float:
    # Integral bases keep integral targets; 1 decimal otherwise.
    if float(base_target).is_integer():
        return float(round(value))
    return round(value, 1)


def _scaled(value: float, factor: float, base_target: float, *, up: bool) -> float:
    raw = value * factor
    if float(base_target).is_integer():
        # Guard against 10000 * 1.1 landing a hair above 11000.
        raw = round(raw, 6)
        return float(math.ceil(raw) if up else math.floor(raw))
    return math.ceil(raw * 10) / 10 if up else math.floor(raw * 10) / 10


def decide_target(
    *,
    current_target: float,
    base_target: float,
    summary: PerformanceSummary,
    config: AdaptationConfig,
    manual_override: bool = False,
    ceiling: bool = False,
) -> AdaptationDecision:
    if manual_override:
        return AdaptationDecision(current_target, current_target, AdaptationReason.MANUAL_OVERRIDE, summary)
    if summary.sample_count < config.min_samples:
        return AdaptationDecision(current_target, current_target, AdaptationReason.INSUFFICIENT_DATA, summary)

    if (
        summary.average_achievement > config.exceed_achievement
        and summary.completion_rate > config.exceed_completion_rate
    ):
        harder = True
    elif (
        summary.average_achievement < config.under_achievement
        and summary.completion_rate < config.under_completion_rate
    ):
        harder = False
    else:
        return AdaptationDecision(current_target, current_target, AdaptationReason.STABLE, summary)

    # A harder ceiling is a lower one.
    raise_target = harder != ceiling
    if raise_target:
        proposed = _scaled(current_target, config.increase_factor, base_target, up=True)
        reason = AdaptationReason.INCREASED
    else:
        proposed = _scaled(current_target, config.decrease_factor, base_target, up=False)
        reason = AdaptationReason.DECREASED

    new_target = clamp_target(proposed, base_target, config)
    if new_target == current_target:
        reason = AdaptationReason.AT_BOUND
    return AdaptationDecision(current_target, new_target, reason, summary)
