"""
tests/test_levels.py: Unit Tests for the Level Curve
=====================================================
"""

from __future__ import annotations

import pytest

from arise.engine.levels import LevelCurve, get_curve, level_of, power_curve, xp_for_level
from arise.exceptions import ValidationError


class TestDefaultCurve:
    def test_zero_xp_is_level_one(self):
        assert level_of(0) == 1

    def test_level_boundaries(self):
        assert level_of(99) == 1
        assert level_of(100) == 2
        assert level_of(381) == 2
        assert level_of(382) == 3

    def test_thresholds(self):
        assert xp_for_level(1) == 0
        assert xp_for_level(2) == 100
        assert xp_for_level(3) == 382

    def test_monotonic(self):
        levels = [level_of(xp) for xp in range(0, 20000, 37)]
        assert levels == sorted(levels)

    def test_large_xp_extends_table(self):
        curve = LevelCurve(preload=2)
        big = 10_000_000
        level = curve.level_of(big)
        assert curve.threshold(level) <= big < curve.threshold(level + 1)

    def test_progress_halfway(self):
        progress = get_curve().progress(50)
        assert progress.current_level == 1
        assert progress.xp_for_next_level == 100
        assert progress.xp_progress == 50
        assert progress.progress_percent == 50


class TestValidation:
    def test_negative_xp_rejected(self):
        with pytest.raises(ValidationError):
            level_of(-1)

    def test_float_xp_rejected(self):
        with pytest.raises(ValidationError):
            level_of(10.5)

    def test_level_below_one_rejected(self):
        with pytest.raises(ValidationError):
            xp_for_level(0)

    def test_non_increasing_curve_rejected(self):
        with pytest.raises(ValidationError):
            LevelCurve(power_curve(base_xp=0))


def test_custom_curve_is_cached():
    assert get_curve(50, 2.0) is get_curve(50, 2.0)
    assert get_curve(50, 2.0).threshold(2) == 50
