"""
Predicate Evaluator

Evaluates (field, condition, value) predicates against a report context.
Operators dispatch through a fixed comparison table; field lookup is a bounded
dotted-path walk over plain dicts. Evaluation never raises on bad data: a
predicate that cannot be evaluated is simply false.
"""

from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .models import Predicate, PredicateCondition, WorkflowStep, to_decimal


MAX_PATH_DEPTH = 8

_MISSING = object()


def resolve_field(context: Mapping[str, Any], path: str) -> Any:
    """
    Walk a dotted path ("attributes.project.code") through nested mappings.

    Returns the sentinel _MISSING for absent keys, non-mapping intermediates,
    empty segments or paths deeper than MAX_PATH_DEPTH.
    """
    if not path:
        return _MISSING

    segments = path.split(".")
    if len(segments) > MAX_PATH_DEPTH:
        return _MISSING

    current: Any = context
    for segment in segments:
        if not segment or not isinstance(current, Mapping) or segment not in current:
            return _MISSING
        current = current[segment]
    return current


def _numeric_pair(actual: Any, expected: Any) -> Optional[Tuple[Decimal, Decimal]]:
    left = to_decimal(actual)
    right = to_decimal(expected)
    if left is None or right is None:
        return None
    return left, right


def _greater_than(actual: Any, expected: Any) -> bool:
    pair = _numeric_pair(actual, expected)
    return pair is not None and pair[0] > pair[1]


def _less_than(actual: Any, expected: Any) -> bool:
    pair = _numeric_pair(actual, expected)
    return pair is not None and pair[0] < pair[1]


def _values_equal(actual: Any, expected: Any) -> bool:
    if actual is _MISSING:
        return False
    # True == 1 in Python; booleans only equal booleans here
    if isinstance(actual, bool) or isinstance(expected, bool):
        return type(actual) is type(expected) and actual == expected
    # Numeric strings ("1500.00") compare equal to numbers (1500)
    pair = _numeric_pair(actual, expected)
    if pair is not None:
        return pair[0] == pair[1]
    return actual == expected


def _equals(actual: Any, expected: Any) -> bool:
    return _values_equal(actual, expected)


def _not_equals(actual: Any, expected: Any) -> bool:
    if actual is _MISSING:
        return expected is not None
    return not _values_equal(actual, expected)


def _in(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple)) or actual is _MISSING:
        return False
    return any(_values_equal(actual, candidate) for candidate in expected)


def _not_in(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple)):
        return False
    if actual is _MISSING:
        return True
    return not any(_values_equal(actual, candidate) for candidate in expected)


COMPARISONS: Dict[PredicateCondition, Callable[[Any, Any], bool]] = {
    PredicateCondition.GREATER_THAN: _greater_than,
    PredicateCondition.LESS_THAN: _less_than,
    PredicateCondition.EQUALS: _equals,
    PredicateCondition.NOT_EQUALS: _not_equals,
    PredicateCondition.IN: _in,
    PredicateCondition.NOT_IN: _not_in,
}


def evaluate(predicate: Predicate, context: Mapping[str, Any]) -> bool:
    """Evaluate a single predicate against a flattened report context"""
    actual = resolve_field(context, predicate.field)
    return COMPARISONS[predicate.condition](actual, predicate.value)


def is_step_active(step: WorkflowStep, context: Mapping[str, Any]) -> bool:
    """
    Decide whether a step needs a decision for this report.

    A true skipIf always skips the step. Otherwise a required step is active
    regardless of requiredIf, and any other step needs requiredIf to hold
    (when present).
    """
    if step.skip_if is not None and evaluate(step.skip_if, context):
        return False
    if step.required:
        return True
    if step.required_if is not None and not evaluate(step.required_if, context):
        return False
    return True
