"""
arise.engine.modifiers: Ordered Modifier Stack
===============================================

Applies multipliers to an integer XP base in a fixed, replayable order:

    all BONUS modifiers (ascending ``order``)  →  all PENALTY modifiers
    (ascending ``order``), flooring after every step, clamped at 0.

So ``apply_modifiers(100, [bonus 1.25, penalty 0.5])`` is
``floor(floor(100 · 1.25) · 0.5) = 62`` regardless of list order.

Also builds the ambient modifiers that come from user state: streak tier
bonus, weekend bonus and the debuff penalty.
"""

from __future__ import annotations

import enum
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from zoneinfo import ZoneInfo

from arise.clock import as_utc, is_weekend
from arise.config import ModifierConfig, StreakConfig, StreakTier
from arise.exceptions import ValidationError


class ModifierKind(enum.StrEnum):
    BONUS = "bonus"
    PENALTY = "penalty"


class ModifierSource(enum.StrEnum):
    STREAK_BONUS = "STREAK_BONUS"
    WEEKEND_BONUS = "WEEKEND_BONUS"
    DEBUFF_PENALTY = "DEBUFF_PENALTY"
    CUSTOM = "CUSTOM"


@dataclass(frozen=True, slots=True)
class XPModifier:
    kind: ModifierKind
    multiplier: float
    order: int = 0
    source: ModifierSource = ModifierSource.CUSTOM
    description: str = ""

    @classmethod
    def bonus(cls, multiplier: float, order: int = 0, **kwargs) -> XPModifier:
        return cls(ModifierKind.BONUS, multiplier, order, **kwargs)

    @classmethod
    def penalty(cls, multiplier: float, order: int = 0, **kwargs) -> XPModifier:
        return cls(ModifierKind.PENALTY, multiplier, order, **kwargs)


@dataclass(frozen=True, slots=True)
class ModifierStep:
    modifier: XPModifier
    amount_before: int
    amount_after: int


@dataclass(frozen=True, slots=True)
class ModifierResult:
    base_amount: int
    final_amount: int
    steps: tuple[ModifierStep, ...]

    @property
    def applied(self) -> tuple[XPModifier, ...]:
        return tuple(step.modifier for step in self.steps)


# ---------------------------------------------------------------------------
# Arithmetic
# ---------------------------------------------------------------------------
def floor_multiply(amount: int, multiplier: float) -> int:
    """``floor(amount · multiplier)`` computed on the multiplier's decimal repr."""
    product = Decimal(amount) * Decimal(repr(float(multiplier)))
    return int(product.to_integral_value(rounding=ROUND_FLOOR))


def _validate(modifier: XPModifier) -> None:
    m = modifier.multiplier
    if isinstance(m, bool) or not isinstance(m, int | float) or not math.isfinite(m) or m < 0:
        raise ValidationError(
            "Modifier multiplier must be a finite, non-negative number",
            {"multiplier": repr(m), "source": str(modifier.source)},
        )
    if modifier.kind not in (ModifierKind.BONUS, ModifierKind.PENALTY):
        raise ValidationError("Unknown modifier kind", {"kind": repr(modifier.kind)})


def ordered(modifiers: Iterable[XPModifier]) -> list[XPModifier]:
    """Canonical application order: bonuses, then penalties, each by ``order``."""
    return sorted(
        modifiers,
        key=lambda m: (0 if m.kind == ModifierKind.BONUS else 1, m.order),
    )


def apply_modifiers(base_amount: int, modifiers: Sequence[XPModifier] = ()) -> ModifierResult:
    if isinstance(base_amount, bool) or not isinstance(base_amount, int) or base_amount < 0:
        raise ValidationError("Base amount must be a non-negative integer", {"base": base_amount})
    for modifier in modifiers:
        _validate(modifier)

    amount = base_amount
    steps: list[ModifierStep] = []
    for modifier in ordered(modifiers):
        after = max(0, floor_multiply(amount, modifier.multiplier))
        steps.append(ModifierStep(modifier, amount, after))
        amount = after
    return ModifierResult(base_amount, max(0, amount), tuple(steps))


# ---------------------------------------------------------------------------
# Ambient modifiers
# ---------------------------------------------------------------------------
def streak_tier(streak: int, config: StreakConfig) -> StreakTier | None:
    """Highest tier whose ``min_days`` the streak has reached."""
    current = None
    for tier in config.tiers:
        if streak >= tier.min_days:
            current = tier
    return current


def next_streak_tier(streak: int, config: StreakConfig) -> StreakTier | None:
    for tier in config.tiers:
        if streak < tier.min_days:
            return tier
    return None


def percent_multiplier(percent: int, *, penalty: bool = False) -> float:
    return (100 - percent) / 100 if penalty else (100 + percent) / 100


def streak_modifier(streak: int, config: StreakConfig) -> XPModifier | None:
    tier = streak_tier(streak, config)
    if tier is None or tier.bonus_percent <= 0:
        return None
    return XPModifier.bonus(
        percent_multiplier(tier.bonus_percent),
        order=1,
        source=ModifierSource.STREAK_BONUS,
        description=f"{tier.name.title()} streak bonus (+{tier.bonus_percent}%)",
    )


def weekend_modifier(now: datetime, tz: ZoneInfo, config: ModifierConfig) -> XPModifier | None:
    if not config.weekend_bonus_enabled or config.weekend_bonus_percent <= 0:
        return None
    if not is_weekend(now, tz):
        return None
    return XPModifier.bonus(
        percent_multiplier(config.weekend_bonus_percent),
        order=2,
        source=ModifierSource.WEEKEND_BONUS,
        description=f"Weekend bonus (+{config.weekend_bonus_percent}%)",
    )


def debuff_modifier(
    debuff_until: datetime | None, now: datetime, config: ModifierConfig
) -> XPModifier | None:
    if debuff_until is None or as_utc(debuff_until) <= as_utc(now):
        return None
    if config.debuff_penalty_percent <= 0:
        return None
    return XPModifier.penalty(
        percent_multiplier(config.debuff_penalty_percent, penalty=True),
        order=1,
        source=ModifierSource.DEBUFF_PENALTY,
        description=f"Missed-day debuff (-{config.debuff_penalty_percent}%)",
    )


def ambient_modifiers(
    *,
    streak: int,
    debuff_until: datetime | None,
    now: datetime,
    tz: ZoneInfo,
    modifier_config: ModifierConfig,
    streak_config: StreakConfig,
) -> list[XPModifier]:
    """Modifiers implied by the user's current state at *now*."""
    found = (
        streak_modifier(streak, streak_config),
        weekend_modifier(now, tz, modifier_config),
        debuff_modifier(debuff_until, now, modifier_config),
    )
    return [m for m in found if m is not None]
