"""
arise.engine.requirements: Requirement DSL & Evaluator
=======================================================

Pure evaluation of quest requirements against a metrics snapshot.
No DB I/O.

A requirement is a small tree of frozen dataclasses::

    NumericRequirement(metric="steps", operator="gte", value=10000)
    BooleanRequirement(metric="no_alcohol", expected=True)
    CompoundRequirement(operator="and", children=(...))

``evaluate_requirement`` walks the tree and returns a :class:`Verdict`
(``satisfied`` plus an ``achieved_ratio`` in ``[0, 1]``).
``evaluate_quest`` layers the partial-completion rule on top.

Templates store requirements as JSON documents; ``parse_requirement`` and
``requirement_to_dict`` convert between the two forms.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, replace
from decimal import ROUND_FLOOR, Decimal
from typing import Any

from arise.constants import MAX_REQUIREMENT_DEPTH
from arise.exceptions import ValidationError

NUMERIC_OPERATORS = frozenset({"gte", "lte", "eq", "gt", "lt"})
COMPOUND_OPERATORS = frozenset({"and", "or"})

MetricValue = int | float | bool
Metrics = Mapping[str, MetricValue]


# ---------------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class NumericRequirement:
    metric: str
    operator: str
    value: float
    unit: str | None = None


@dataclass(frozen=True, slots=True)
class BooleanRequirement:
    metric: str
    expected: bool = True


@dataclass(frozen=True, slots=True)
class CompoundRequirement:
    operator: str
    children: tuple[Requirement, ...] = ()


Requirement = NumericRequirement | BooleanRequirement | CompoundRequirement


@dataclass(frozen=True, slots=True)
class Verdict:
    satisfied: bool
    achieved_ratio: float


@dataclass(frozen=True, slots=True)
class QuestOutcome:
    """Result of scoring one quest against a snapshot."""

    verdict: Verdict
    completed: bool
    partial: bool
    xp: int
    completion_percent: int
    current_value: float | None = None


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------
def _clamp(ratio: float) -> float:
    if math.isnan(ratio):
        return 0.0
    return max(0.0, min(1.0, ratio))


def _numeric_actual(metrics: Metrics, metric: str) -> float:
    raw = metrics.get(metric, 0)
    if raw is None:
        return 0.0
    return float(raw)


def _compare(actual: float, operator: str, value: float) -> bool:
    match operator:
        case "gte":
            return actual >= value
        case "gt":
            return actual > value
        case "lte":
            return actual <= value
        case "lt":
            return actual < value
        case "eq":
            return actual == value
    raise ValidationError(f"Unknown numeric operator: {operator!r}", {"operator": operator})


def _numeric_ratio(actual: float, operator: str, value: float, satisfied: bool) -> float:
    if satisfied:
        return 1.0
    if value <= 0:
        return 0.0
    match operator:
        case "gte" | "gt":
            return _clamp(actual / value)
        case "lte" | "lt":
            # Overshooting a ceiling: the further above, the lower the ratio.
            if actual <= 0:
                return 1.0
            return _clamp(value / actual)
        case _:
            hi = max(actual, value)
            lo = min(actual, value)
            if hi <= 0:
                return 0.0
            return _clamp(lo / hi)


def evaluate_requirement(requirement: Requirement, metrics: Metrics) -> Verdict:
    """Evaluate *requirement* against *metrics*.

    A metric missing from the snapshot counts as ``0`` / ``False``.  A
    compound with no children is unsatisfied with ratio 0.
    """
    match requirement:
        case NumericRequirement(metric=metric, operator=operator, value=value):
            actual = _numeric_actual(metrics, metric)
            satisfied = _compare(actual, operator, value)
            return Verdict(satisfied, _numeric_ratio(actual, operator, value, satisfied))

        case BooleanRequirement(metric=metric, expected=expected):
            satisfied = bool(metrics.get(metric, False)) is expected
            return Verdict(satisfied, 1.0 if satisfied else 0.0)

        case CompoundRequirement(operator=operator, children=children):
            if not children:
                return Verdict(False, 0.0)
            verdicts = [evaluate_requirement(child, metrics) for child in children]
            ratios = [v.achieved_ratio for v in verdicts]
            if operator == "and":
                return Verdict(all(v.satisfied for v in verdicts), min(ratios))
            if operator == "or":
                return Verdict(any(v.satisfied for v in verdicts), max(ratios))
            raise ValidationError(
                f"Unknown compound operator: {operator!r}", {"operator": operator}
            )

    raise ValidationError(f"Not a requirement node: {requirement!r}")


def floor_ratio(amount: int, ratio: float) -> int:
    """``floor(amount * ratio)`` without binary float drift."""
    product = Decimal(amount) * Decimal(repr(ratio))
    return int(product.to_integral_value(rounding=ROUND_FLOOR))


def evaluate_quest(
    requirement: Requirement,
    metrics: Metrics,
    *,
    base_xp: int,
    allow_partial: bool = False,
    min_partial_percent: int = 0,
) -> QuestOutcome:
    """Score a quest: full completion, partial completion, or nothing.

    Partial completion needs ``allow_partial`` and ``ratio * 100 >=
    min_partial_percent``, and awards ``floor(base_xp * ratio)``.
    """
    verdict = evaluate_requirement(requirement, metrics)
    percent = math.floor(verdict.achieved_ratio * 100)
    current = _current_value(requirement, metrics)

    if verdict.satisfied:
        return QuestOutcome(verdict, True, False, base_xp, 100, current)

    if allow_partial and verdict.achieved_ratio * 100 >= min_partial_percent:
        xp = floor_ratio(base_xp, verdict.achieved_ratio)
        return QuestOutcome(verdict, True, True, xp, percent, current)

    return QuestOutcome(verdict, False, False, 0, percent, current)


def _current_value(requirement: Requirement, metrics: Metrics) -> float | None:
    node = primary_leaf(requirement)
    if isinstance(node, NumericRequirement):
        return _numeric_actual(metrics, node.metric)
    if isinstance(node, BooleanRequirement):
        return 1.0 if bool(metrics.get(node.metric, False)) is node.expected else 0.0
    return None


# ---------------------------------------------------------------------------
# Primary-target helpers (adapted targets rewrite the first numeric leaf)
# ---------------------------------------------------------------------------
def primary_leaf(requirement: Requirement) -> NumericRequirement | BooleanRequirement | None:
    """First numeric leaf, depth-first; else the first boolean leaf."""
    fallback: BooleanRequirement | None = None
    stack: list[Requirement] = [requirement]
    while stack:
        node = stack.pop(0)
        if isinstance(node, NumericRequirement):
            return node
        if isinstance(node, BooleanRequirement):
            fallback = fallback or node
        elif isinstance(node, CompoundRequirement):
            stack[0:0] = list(node.children)
    return fallback


def primary_metric(requirement: Requirement) -> str | None:
    leaf = primary_leaf(requirement)
    return leaf.metric if leaf is not None else None


def primary_target(requirement: Requirement) -> float | None:
    """Threshold of the first numeric leaf, or ``None`` for boolean-only trees."""
    leaf = primary_leaf(requirement)
    if isinstance(leaf, NumericRequirement):
        return leaf.value
    return None


def is_ceiling(requirement: Requirement) -> bool:
    """True when the primary target is an upper bound (``lte``/``lt``)."""
    leaf = primary_leaf(requirement)
    return isinstance(leaf, NumericRequirement) and leaf.operator in ("lte", "lt")


def with_target(requirement: Requirement, target: float) -> Requirement:
    """Copy of *requirement* with the first numeric leaf's value replaced."""
    done = False

    def _rewrite(node: Requirement) -> Requirement:
        nonlocal done
        if done:
            return node
        if isinstance(node, NumericRequirement):
            done = True
            return replace(node, value=target)
        if isinstance(node, CompoundRequirement):
            return replace(node, children=tuple(_rewrite(c) for c in node.children))
        return node

    return _rewrite(requirement)


# ---------------------------------------------------------------------------
# JSON (de)serialization
# ---------------------------------------------------------------------------
def parse_requirement(data: Mapping[str, Any], *, _depth: int = 0) -> Requirement:
    """Build a requirement tree from a JSON document.

    Raises
    ------
    ValidationError
        On unknown node types or operators, bad values, or excessive nesting.
    """
    if _depth > MAX_REQUIREMENT_DEPTH:
        raise ValidationError(
            "Requirement nesting is too deep", {"max_depth": MAX_REQUIREMENT_DEPTH}
        )
    if not isinstance(data, Mapping):
        raise ValidationError("Requirement node must be an object", {"node": repr(data)})

    kind = data.get("type")
    if kind == "numeric":
        metric = _metric_name(data)
        operator = data.get("operator")
        if operator not in NUMERIC_OPERATORS:
            raise ValidationError(
                f"Unknown numeric operator: {operator!r}", {"metric": metric}
            )
        value = data.get("value")
        if isinstance(value, bool) or not isinstance(value, int | float) or not math.isfinite(value):
            raise ValidationError(
                "Numeric requirement value must be a finite number",
                {"metric": metric, "value": value},
            )
        return NumericRequirement(metric, operator, value, data.get("unit"))

    if kind == "boolean":
        metric = _metric_name(data)
        expected = data.get("expected", True)
        if not isinstance(expected, bool):
            raise ValidationError(
                "Boolean requirement 'expected' must be true or false",
                {"metric": metric, "expected": expected},
            )
        return BooleanRequirement(metric, expected)

    if kind == "compound":
        operator = data.get("operator")
        if operator not in COMPOUND_OPERATORS:
            raise ValidationError(f"Unknown compound operator: {operator!r}")
        raw_children = data.get("requirements", data.get("children", []))
        if not isinstance(raw_children, list | tuple):
            raise ValidationError("Compound requirement children must be a list")
        children = tuple(parse_requirement(c, _depth=_depth + 1) for c in raw_children)
        return CompoundRequirement(operator, children)

    raise ValidationError(f"Unknown requirement type: {kind!r}", {"type": kind})


def _metric_name(data: Mapping[str, Any]) -> str:
    metric = data.get("metric")
    if not isinstance(metric, str) or not metric.strip():
        raise ValidationError("Requirement metric must be a non-empty string")
    return metric


def requirement_to_dict(requirement: Requirement) -> dict[str, Any]:
    match requirement:
        case NumericRequirement():
            doc: dict[str, Any] = {
                "type": "numeric",
                "metric": requirement.metric,
                "operator": requirement.operator,
                "value": requirement.value,
            }
            if requirement.unit:
                doc["unit"] = requirement.unit
            return doc
        case BooleanRequirement():
            return {
                "type": "boolean",
                "metric": requirement.metric,
                "expected": requirement.expected,
            }
        case CompoundRequirement():
            return {
                "type": "compound",
                "operator": requirement.operator,
                "requirements": [requirement_to_dict(c) for c in requirement.children],
            }
    raise ValidationError(f"Not a requirement node: {requirement!r}")
