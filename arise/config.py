"""
arise.config: YAML Configuration Loader
========================================

Reads ``config.yaml`` for the engine's **tuning** values: level curve,
modifier percentages, streak tiers, Return Protocol thresholds and the
adaptation window.  Infrastructure (``DATABASE_URL``) stays in the
environment and is read by :mod:`arise.database.engine`.

Every key is optional; anything missing falls back to the defaults below,
so ``get_default_config()`` is a complete, working configuration.

Usage::

    from arise.config import load_config

    cfg = load_config()                      # reads ./config.yaml
    print(cfg.leveling.exponent)             # 1.5
    print(cfg.return_protocol.medium_days)   # 15
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


# ---------------------------------------------------------------------------
# Typed sections
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class LevelingConfig:
    """Cumulative power curve: level *n* needs Σ floor(base · k^exponent)."""

    base_xp: int = 100
    exponent: float = 1.5


@dataclass(frozen=True, slots=True)
class StreakTier:
    min_days: int
    name: str
    bonus_percent: int


@dataclass(frozen=True, slots=True)
class ModifierConfig:
    weekend_bonus_enabled: bool = True
    weekend_bonus_percent: int = 10
    debuff_penalty_percent: int = 10


@dataclass(frozen=True, slots=True)
class StreakConfig:
    tiers: tuple[StreakTier, ...] = (
        StreakTier(7, "bronze", 10),
        StreakTier(14, "silver", 15),
        StreakTier(30, "gold", 25),
    )
    debuff_hours: int = 24
    # Incomplete core quests needed before a debuff is applied.
    debuff_min_missed: int = 1


@dataclass(frozen=True, slots=True)
class ReturnProtocolConfig:
    short_days: int = 7
    medium_days: int = 15
    long_days: int = 30
    required_quests_per_day: tuple[int, ...] = (1, 2, 3)
    bootstrap_streak: int = 3

    @property
    def total_days(self) -> int:
        return len(self.required_quests_per_day)


@dataclass(frozen=True, slots=True)
class AdaptationConfig:
    window_days: int = 14
    min_samples: int = 7
    exceed_achievement: float = 1.25
    exceed_completion_rate: float = 0.8
    under_achievement: float = 0.7
    under_completion_rate: float = 0.5
    increase_factor: float = 1.1
    decrease_factor: float = 0.9
    min_fraction: float = 0.5
    max_fraction: float = 2.0


@dataclass(frozen=True, slots=True)
class DatabaseConfig:
    # Fail fast with ConcurrencyConflict instead of waiting on a held user lock.
    lock_nowait: bool = False


@dataclass(frozen=True, slots=True)
class AriseConfig:
    """Immutable engine configuration loaded from ``config.yaml``."""

    default_timezone: str = "UTC"
    leveling: LevelingConfig = field(default_factory=LevelingConfig)
    modifiers: ModifierConfig = field(default_factory=ModifierConfig)
    streaks: StreakConfig = field(default_factory=StreakConfig)
    return_protocol: ReturnProtocolConfig = field(default_factory=ReturnProtocolConfig)
    adaptation: AdaptationConfig = field(default_factory=AdaptationConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


_DEFAULT_CONFIG = AriseConfig()


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------
def _section(raw: dict, name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{name}' must be a mapping, got {type(value).__name__}")
    return value


def _positive_int(section: dict, key: str, default: int, *, allow_zero: bool = False) -> int:
    value = int(section.get(key, default))
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"Config value '{key}' must be positive, got {value}")
    return value


def _parse_leveling(raw: dict) -> LevelingConfig:
    sec = _section(raw, "leveling")
    default = LevelingConfig()
    exponent = float(sec.get("exponent", default.exponent))
    if exponent <= 0:
        raise ValueError(f"leveling.exponent must be positive, got {exponent}")
    return LevelingConfig(
        base_xp=_positive_int(sec, "base_xp", default.base_xp),
        exponent=exponent,
    )


def _parse_modifiers(raw: dict) -> ModifierConfig:
    sec = _section(raw, "modifiers")
    default = ModifierConfig()
    return ModifierConfig(
        weekend_bonus_enabled=bool(sec.get("weekend_bonus_enabled", default.weekend_bonus_enabled)),
        weekend_bonus_percent=_positive_int(
            sec, "weekend_bonus_percent", default.weekend_bonus_percent, allow_zero=True,
        ),
        debuff_penalty_percent=_positive_int(
            sec, "debuff_penalty_percent", default.debuff_penalty_percent, allow_zero=True,
        ),
    )


def _parse_streaks(raw: dict) -> StreakConfig:
    sec = _section(raw, "streaks")
    default = StreakConfig()
    tiers = default.tiers
    if "tiers" in sec:
        tiers = tuple(
            sorted(
                (
                    StreakTier(
                        min_days=int(t["min_days"]),
                        name=str(t["name"]),
                        bonus_percent=int(t["bonus_percent"]),
                    )
                    for t in sec["tiers"]
                ),
                key=lambda t: t.min_days,
            )
        )
    return StreakConfig(
        tiers=tiers,
        debuff_hours=_positive_int(sec, "debuff_hours", default.debuff_hours),
        debuff_min_missed=_positive_int(sec, "debuff_min_missed", default.debuff_min_missed),
    )


def _parse_return_protocol(raw: dict) -> ReturnProtocolConfig:
    sec = _section(raw, "return_protocol")
    default = ReturnProtocolConfig()
    short_days = _positive_int(sec, "short_days", default.short_days)
    medium_days = _positive_int(sec, "medium_days", default.medium_days)
    long_days = _positive_int(sec, "long_days", default.long_days)
    if not short_days < medium_days < long_days:
        raise ValueError(
            "return_protocol thresholds must satisfy short_days < medium_days < long_days"
        )
    per_day = tuple(
        int(n) for n in sec.get("required_quests_per_day", default.required_quests_per_day)
    )
    if not per_day or any(n < 1 for n in per_day):
        raise ValueError("return_protocol.required_quests_per_day must list positive counts")
    return ReturnProtocolConfig(
        short_days=short_days,
        medium_days=medium_days,
        long_days=long_days,
        required_quests_per_day=per_day,
        bootstrap_streak=_positive_int(
            sec, "bootstrap_streak", default.bootstrap_streak, allow_zero=True,
        ),
    )


def _parse_adaptation(raw: dict) -> AdaptationConfig:
    sec = _section(raw, "adaptation")
    default = AdaptationConfig()
    values: dict[str, Any] = {}
    for name in AdaptationConfig.__dataclass_fields__:
        current = getattr(default, name)
        values[name] = type(current)(sec.get(name, current))
    cfg = AdaptationConfig(**values)
    if not 0 < cfg.min_fraction <= 1 <= cfg.max_fraction:
        raise ValueError("adaptation bounds must satisfy 0 < min_fraction <= 1 <= max_fraction")
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def get_default_config() -> AriseConfig:
    """Return the built-in defaults (no file needed)."""
    return _DEFAULT_CONFIG


def parse_config(raw: dict | None) -> AriseConfig:
    """Build an :class:`AriseConfig` from an already-parsed mapping."""
    raw = raw or {}
    db = _section(raw, "database")
    return AriseConfig(
        default_timezone=str(raw.get("default_timezone", "UTC")),
        leveling=_parse_leveling(raw),
        modifiers=_parse_modifiers(raw),
        streaks=_parse_streaks(raw),
        return_protocol=_parse_return_protocol(raw),
        adaptation=_parse_adaptation(raw),
        database=DatabaseConfig(lock_nowait=bool(db.get("lock_nowait", False))),
    )


def load_config(path: str | Path = "config.yaml") -> AriseConfig:
    """Read *path* and return an :class:`AriseConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a value is out of range or a section has the wrong shape.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)

    if raw is not None and not isinstance(raw, dict):
        raise ValueError(f"{config_path} must contain a YAML mapping at the top level")
    return parse_config(raw)
