"""
Condition and condition-group evaluation.

Evaluation is total: malformed operator/value combinations evaluate to
``False`` and carry a diagnostic instead of raising.

Groups fold left to right with no precedence between AND and OR. Each
condition's ``logical_operator`` joins it to the *next* condition, so
``[A(AND), B(OR), C]`` is ``(A AND B) OR C``. Stored rules were authored
against this model and rely on it.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Union

from shared.logging import get_logger

from .models import ConditionOperator, ConditionResult, LogicalOperator, RuleCondition
from .resolver import MISSING, resolve_field
from .values import RuleValue, ValueKind, compare_numbers, values_equal

logger = get_logger("rules.conditions")


@dataclass
class ConditionOutcome:
    """Boolean result of a single condition plus an optional diagnostic."""
    matched: bool
    diagnostic: Optional[str] = None

    def __bool__(self) -> bool:
        return self.matched


@dataclass
class GroupOutcome:
    """Result of folding a condition list."""
    matched: bool
    results: List[ConditionResult] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.matched


def _fail(diagnostic: str) -> ConditionOutcome:
    return ConditionOutcome(False, diagnostic)


def _numeric(actual: RuleValue, expected: Any, test: Callable[[int], bool], name: str) -> ConditionOutcome:
    comparison = compare_numbers(actual.raw, expected)
    if comparison is None:
        return _fail(f"{name} requires numeric operands, got {actual.raw!r} and {expected!r}")
    return ConditionOutcome(test(comparison))


def _contains(actual: RuleValue, expected: Any) -> ConditionOutcome:
    if actual.kind is ValueKind.LIST:
        return ConditionOutcome(any(values_equal(item, expected) for item in actual.raw))
    if actual.kind is ValueKind.STRING:
        needle = RuleValue.of(expected).as_text()
        if needle is None:
            return _fail(f"CONTAINS needs a scalar value, got {expected!r}")
        return ConditionOutcome(needle in actual.raw)
    return _fail(f"CONTAINS needs a string or list field, got {actual.kind.value}")


def _affix(actual: RuleValue, expected: Any, name: str) -> ConditionOutcome:
    text = actual.as_text() if actual.kind is not ValueKind.NULL else None
    affix = RuleValue.of(expected).as_text()
    if text is None or affix is None:
        return _fail(f"{name} needs scalar operands, got {actual.raw!r} and {expected!r}")
    if name == "STARTS_WITH":
        return ConditionOutcome(text.startswith(affix))
    return ConditionOutcome(text.endswith(affix))


def _membership(actual: RuleValue, expected: Any) -> Optional[bool]:
    candidates = RuleValue.of(expected).as_list()
    if candidates is None:
        return None
    return any(values_equal(actual.raw, candidate) for candidate in candidates)


def _regex(actual: RuleValue, expected: Any) -> ConditionOutcome:
    text = actual.as_text()
    pattern = RuleValue.of(expected).as_text()
    if text is None or pattern is None:
        return _fail(f"MATCHES_REGEX needs scalar operands, got {actual.raw!r} and {expected!r}")
    try:
        return ConditionOutcome(re.search(pattern, text) is not None)
    except re.error as exc:
        return _fail(f"invalid regular expression {pattern!r}: {exc}")


def _between(actual: RuleValue, low: Any, high: Any) -> ConditionOutcome:
    value = actual.as_number()
    low_num = RuleValue.of(low).as_number()
    high_num = RuleValue.of(high).as_number()
    if low_num is None or high_num is None:
        return _fail(f"BETWEEN requires numeric bounds, got {low!r} and {high!r}")
    if value is None:
        return _fail(f"BETWEEN requires a numeric field value, got {actual.raw!r}")
    return ConditionOutcome(low_num <= value <= high_num)


def check(resolved: Any, operator: Union[ConditionOperator, str], value: Any = None,
          value2: Any = None) -> ConditionOutcome:
    """Evaluate one condition against an already-resolved field value."""
    try:
        op = operator if isinstance(operator, ConditionOperator) else ConditionOperator(operator)
    except ValueError:
        return _fail(f"unknown operator {operator!r}")

    actual = RuleValue.of(resolved)

    # Absent data never matches, except that it is "not equal" to anything
    if actual.is_missing:
        return ConditionOutcome(op is ConditionOperator.NOT_EQUALS)

    try:
        if op is ConditionOperator.EQUALS:
            return ConditionOutcome(values_equal(actual.raw, value))
        if op is ConditionOperator.NOT_EQUALS:
            return ConditionOutcome(not values_equal(actual.raw, value))
        if op is ConditionOperator.GREATER_THAN:
            return _numeric(actual, value, lambda c: c > 0, op.value)
        if op is ConditionOperator.LESS_THAN:
            return _numeric(actual, value, lambda c: c < 0, op.value)
        if op is ConditionOperator.GREATER_OR_EQUAL:
            return _numeric(actual, value, lambda c: c >= 0, op.value)
        if op is ConditionOperator.LESS_OR_EQUAL:
            return _numeric(actual, value, lambda c: c <= 0, op.value)
        if op is ConditionOperator.CONTAINS:
            return _contains(actual, value)
        if op is ConditionOperator.NOT_CONTAINS:
            outcome = _contains(actual, value)
            if outcome.diagnostic:
                return outcome
            return ConditionOutcome(not outcome.matched)
        if op in (ConditionOperator.STARTS_WITH, ConditionOperator.ENDS_WITH):
            return _affix(actual, value, op.value)
        if op in (ConditionOperator.IN, ConditionOperator.NOT_IN):
            member = _membership(actual, value)
            if member is None:
                return _fail(f"{op.value} requires a list value, got {value!r}")
            return ConditionOutcome(member if op is ConditionOperator.IN else not member)
        if op is ConditionOperator.BETWEEN:
            return _between(actual, value, value2)
        if op is ConditionOperator.IS_NULL:
            return ConditionOutcome(actual.is_null)
        if op is ConditionOperator.IS_NOT_NULL:
            return ConditionOutcome(not actual.is_null)
        if op is ConditionOperator.MATCHES_REGEX:
            return _regex(actual, value)
    except Exception as exc:
        return _fail(f"{op.value} failed: {exc}")

    return _fail(f"operator {op.value} is not supported")


def evaluate(resolved: Any, operator: Union[ConditionOperator, str], value: Any = None,
             value2: Any = None) -> bool:
    """Boolean-only form of :func:`check`."""
    return check(resolved, operator, value, value2).matched


class ConditionGroupEvaluator:
    """Folds an ordered condition list into one boolean."""

    def __init__(self, short_circuit: bool = True):
        self.short_circuit = short_circuit
        self.logger = logger

    def evaluate_condition(self, condition: RuleCondition, entity: Any) -> ConditionResult:
        actual = resolve_field(entity, condition.field)
        outcome = check(actual, condition.operator, condition.value, condition.value2)
        if outcome.diagnostic:
            self.logger.warning(
                "Condition could not be evaluated",
                field=condition.field,
                operator=_operator_name(condition.operator),
                diagnostic=outcome.diagnostic,
                condition_id=condition.condition_id
            )
        return ConditionResult(
            field=condition.field,
            operator=_operator_name(condition.operator),
            expected=condition.value,
            expected2=condition.value2,
            actual=None if actual is MISSING else actual,
            matched=outcome.matched,
            diagnostic=outcome.diagnostic,
            condition_id=condition.condition_id,
        )

    def trace_group(self, conditions: Sequence[RuleCondition], entity: Any) -> GroupOutcome:
        """Evaluate a group and keep every per-condition result."""
        if not conditions:
            return GroupOutcome(True)

        ordered = sorted(conditions, key=lambda c: c.order)
        results: List[ConditionResult] = []

        first = self.evaluate_condition(ordered[0], entity)
        results.append(first)
        accumulator = first.matched
        connector = ordered[0].logical_operator or LogicalOperator.AND

        for condition in ordered[1:]:
            if self.short_circuit and connector is LogicalOperator.AND and not accumulator:
                results.append(_skipped(condition))
            else:
                result = self.evaluate_condition(condition, entity)
                results.append(result)
                if connector is LogicalOperator.AND:
                    accumulator = accumulator and result.matched
                else:
                    accumulator = accumulator or result.matched
            connector = condition.logical_operator or LogicalOperator.AND

        return GroupOutcome(accumulator, results)

    def evaluate_group(self, conditions: Sequence[RuleCondition], entity: Any) -> bool:
        return self.trace_group(conditions, entity).matched


def evaluate_group(conditions: Sequence[RuleCondition], entity: Any) -> bool:
    """Evaluate a condition list against an entity with the default evaluator."""
    return ConditionGroupEvaluator().evaluate_group(conditions, entity)


def _operator_name(operator: Any) -> str:
    return operator.value if isinstance(operator, ConditionOperator) else str(operator)


def _skipped(condition: RuleCondition) -> ConditionResult:
    return ConditionResult(
        field=condition.field,
        operator=_operator_name(condition.operator),
        expected=condition.value,
        expected2=condition.value2,
        actual=None,
        matched=False,
        evaluated=False,
        condition_id=condition.condition_id,
    )
