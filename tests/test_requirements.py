"""
tests/test_requirements.py: Unit Tests for the Requirement Evaluator
=====================================================================

Pure evaluation of requirement trees (no database).
"""

from __future__ import annotations

import pytest

from arise.engine.requirements import (
    BooleanRequirement,
    CompoundRequirement,
    NumericRequirement,
    evaluate_quest,
    evaluate_requirement,
    floor_ratio,
    is_ceiling,
    parse_requirement,
    primary_metric,
    primary_target,
    requirement_to_dict,
    with_target,
)
from arise.exceptions import ValidationError

STEPS = NumericRequirement("steps", "gte", 10000, "steps")
SLEEP_CAP = NumericRequirement("screen_minutes", "lte", 60)
NO_ALCOHOL = BooleanRequirement("no_alcohol")


class TestNumeric:
    def test_gte_satisfied(self):
        verdict = evaluate_requirement(STEPS, {"steps": 12000})
        assert verdict.satisfied is True
        assert verdict.achieved_ratio == 1.0

    def test_gte_partial_ratio(self):
        verdict = evaluate_requirement(STEPS, {"steps": 7500})
        assert verdict.satisfied is False
        assert verdict.achieved_ratio == pytest.approx(0.75)

    def test_missing_metric_counts_as_zero(self):
        verdict = evaluate_requirement(STEPS, {})
        assert verdict == evaluate_requirement(STEPS, {"steps": 0})
        assert verdict.achieved_ratio == 0.0

    def test_gt_is_strict(self):
        req = NumericRequirement("steps", "gt", 10000)
        assert evaluate_requirement(req, {"steps": 10000}).satisfied is False
        assert evaluate_requirement(req, {"steps": 10001}).satisfied is True

    def test_lte_overshoot_lowers_ratio(self):
        verdict = evaluate_requirement(SLEEP_CAP, {"screen_minutes": 120})
        assert verdict.satisfied is False
        assert verdict.achieved_ratio == pytest.approx(0.5)

    def test_lte_under_cap_satisfied(self):
        assert evaluate_requirement(SLEEP_CAP, {"screen_minutes": 30}).satisfied is True

    def test_eq_ratio_is_symmetric(self):
        req = NumericRequirement("glasses", "eq", 8)
        assert evaluate_requirement(req, {"glasses": 4}).achieved_ratio == pytest.approx(0.5)
        assert evaluate_requirement(req, {"glasses": 16}).achieved_ratio == pytest.approx(0.5)
        assert evaluate_requirement(req, {"glasses": 8}).satisfied is True

    def test_ratio_never_exceeds_one(self):
        verdict = evaluate_requirement(STEPS, {"steps": 50000})
        assert 0.0 <= verdict.achieved_ratio <= 1.0

    def test_zero_threshold_unsatisfied_ratio_zero(self):
        req = NumericRequirement("x", "gt", 0)
        verdict = evaluate_requirement(req, {"x": 0})
        assert verdict.satisfied is False
        assert verdict.achieved_ratio == 0.0


class TestBoolean:
    def test_true_expected(self):
        assert evaluate_requirement(NO_ALCOHOL, {"no_alcohol": True}).satisfied is True
        assert evaluate_requirement(NO_ALCOHOL, {"no_alcohol": False}).achieved_ratio == 0.0

    def test_missing_boolean_is_false(self):
        assert evaluate_requirement(NO_ALCOHOL, {}).satisfied is False

    def test_expected_false(self):
        req = BooleanRequirement("smoked", expected=False)
        assert evaluate_requirement(req, {"smoked": False}).satisfied is True
        assert evaluate_requirement(req, {"smoked": True}).satisfied is False


class TestCompound:
    def test_and_takes_minimum_ratio(self):
        req = CompoundRequirement("and", (STEPS, NumericRequirement("sleep_hours", "gte", 8)))
        verdict = evaluate_requirement(req, {"steps": 5000, "sleep_hours": 6})
        assert verdict.satisfied is False
        assert verdict.achieved_ratio == pytest.approx(0.5)

    def test_or_takes_maximum_ratio(self):
        req = CompoundRequirement("or", (STEPS, NO_ALCOHOL))
        verdict = evaluate_requirement(req, {"steps": 5000, "no_alcohol": True})
        assert verdict.satisfied is True
        assert verdict.achieved_ratio == 1.0

    def test_empty_compound_unsatisfied(self):
        verdict = evaluate_requirement(CompoundRequirement("and"), {"steps": 1})
        assert verdict.satisfied is False
        assert verdict.achieved_ratio == 0.0

    def test_nested(self):
        inner = CompoundRequirement("or", (NO_ALCOHOL, SLEEP_CAP))
        req = CompoundRequirement("and", (STEPS, inner))
        verdict = evaluate_requirement(req, {"steps": 10000, "screen_minutes": 10})
        assert verdict.satisfied is True


class TestEvaluateQuest:
    def test_full_completion_awards_base(self):
        outcome = evaluate_quest(STEPS, {"steps": 10000}, base_xp=40)
        assert outcome.completed is True
        assert outcome.partial is False
        assert outcome.xp == 40
        assert outcome.completion_percent == 100

    def test_partial_awards_floor_of_ratio(self):
        outcome = evaluate_quest(
            STEPS, {"steps": 7500}, base_xp=45, allow_partial=True, min_partial_percent=50
        )
        assert outcome.completed is True
        assert outcome.partial is True
        assert outcome.xp == 33  # floor(45 * 0.75)
        assert outcome.completion_percent == 75
        assert outcome.current_value == 7500

    def test_partial_below_minimum_awards_nothing(self):
        outcome = evaluate_quest(
            STEPS, {"steps": 4000}, base_xp=40, allow_partial=True, min_partial_percent=50
        )
        assert outcome.completed is False
        assert outcome.xp == 0
        assert outcome.completion_percent == 40

    def test_partial_disabled(self):
        outcome = evaluate_quest(STEPS, {"steps": 9999}, base_xp=40)
        assert outcome.completed is False
        assert outcome.xp == 0

    def test_floor_ratio_avoids_float_drift(self):
        assert floor_ratio(100, 0.29) == 29
        assert floor_ratio(45, 0.75) == 33


class TestPrimaryTarget:
    def test_first_numeric_leaf(self):
        req = CompoundRequirement("and", (NO_ALCOHOL, STEPS, SLEEP_CAP))
        assert primary_metric(req) == "steps"
        assert primary_target(req) == 10000

    def test_boolean_only_has_no_target(self):
        assert primary_metric(NO_ALCOHOL) == "no_alcohol"
        assert primary_target(NO_ALCOHOL) is None

    def test_ceiling_follows_first_numeric_leaf(self):
        assert is_ceiling(CompoundRequirement("and", (NO_ALCOHOL, SLEEP_CAP, STEPS))) is True
        assert is_ceiling(CompoundRequirement("and", (STEPS, SLEEP_CAP))) is False
        assert is_ceiling(NO_ALCOHOL) is False

    def test_with_target_rewrites_only_first_leaf(self):
        req = CompoundRequirement("and", (STEPS, NumericRequirement("steps", "gte", 20000)))
        rewritten = with_target(req, 11000)
        assert rewritten.children[0].value == 11000
        assert rewritten.children[1].value == 20000
        assert req.children[0].value == 10000


class TestParsing:
    def test_parse_compound_document(self):
        doc = {
            "type": "compound",
            "operator": "and",
            "requirements": [
                {"type": "numeric", "metric": "steps", "operator": "gte", "value": 10000},
                {"type": "boolean", "metric": "no_alcohol"},
            ],
        }
        req = parse_requirement(doc)
        assert isinstance(req, CompoundRequirement)
        assert req.children[0] == NumericRequirement("steps", "gte", 10000)
        assert req.children[1] == BooleanRequirement("no_alcohol", True)
        assert parse_requirement(requirement_to_dict(req)) == req

    def test_children_key_accepted(self):
        req = parse_requirement({"type": "compound", "operator": "or", "children": []})
        assert req == CompoundRequirement("or", ())

    @pytest.mark.parametrize(
        "doc",
        [
            {"type": "numeric", "metric": "steps", "operator": "approx", "value": 1},
            {"type": "numeric", "metric": "steps", "operator": "gte", "value": "ten"},
            {"type": "numeric", "metric": "steps", "operator": "gte", "value": True},
            {"type": "numeric", "metric": "", "operator": "gte", "value": 1},
            {"type": "boolean", "metric": "x", "expected": "yes"},
            {"type": "compound", "operator": "xor", "requirements": []},
            {"type": "compound", "operator": "and", "requirements": "nope"},
            {"type": "range", "metric": "x"},
        ],
    )
    def test_invalid_documents_rejected(self, doc):
        with pytest.raises(ValidationError):
            parse_requirement(doc)

    def test_excessive_nesting_rejected(self):
        doc: dict = {"type": "boolean", "metric": "x"}
        for _ in range(12):
            doc = {"type": "compound", "operator": "and", "requirements": [doc]}
        with pytest.raises(ValidationError, match="too deep"):
            parse_requirement(doc)
