"""Predicate evaluation over an execution context.

The evaluator is pure: it performs no I/O and keeps no state between calls,
so one instance can be shared by every engine and called concurrently.
"""

from __future__ import annotations

import json
import operator as op
from collections.abc import Callable, Iterable, Mapping
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from litestar_flows.core.definition import UNSET, Predicate
from litestar_flows.core.types import DataType, LogicalOperator, Operator
from litestar_flows.evaluation.paths import MISSING, as_mapping, resolve_field
from litestar_flows.exceptions import WorkflowValidationError

if TYPE_CHECKING:
    from litestar_flows.core.context import ExecutionContext

__all__ = ["ConditionEvaluator", "cast_value", "deep_equals"]

_SEQUENCE_TYPES = (list, tuple, set, frozenset)


def _to_datetime(value: Any) -> Any:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, int | float) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return value
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return value
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return value


def _to_number(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int | float):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            return value
    return value


def _to_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Mapping | list):
        return json.dumps(value, default=str)
    return str(value)


def _to_array(value: Any) -> Any:
    if isinstance(value, list):
        return value
    if isinstance(value, tuple | set | frozenset):
        return list(value)
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return [value]
        return parsed if isinstance(parsed, list) else [value]
    return [value]


def cast_value(value: Any, data_type: str | None) -> Any:
    """Cast ``value`` to a declared data type.

    Casting never raises: a value that cannot be converted is returned
    unchanged. ``None`` and missing values are never cast.

    Args:
        value: The value to cast.
        data_type: One of ``string``, ``number``, ``boolean``, ``date``,
            ``array`` or None.

    Returns:
        The cast value.
    """
    if value is None or value is MISSING or value is UNSET or not data_type:
        return value
    if data_type == DataType.STRING:
        return _to_string(value)
    if data_type == DataType.NUMBER:
        return _to_number(value)
    if data_type == DataType.BOOLEAN:
        if isinstance(value, str):
            return value.strip().lower() == "true" or value.strip() == "1"
        return bool(value)
    if data_type == DataType.DATE:
        return _to_datetime(value)
    if data_type == DataType.ARRAY:
        return _to_array(value)
    return value


def deep_equals(a: Any, b: Any) -> bool:
    """Structural equality where booleans never equal numbers.

    Args:
        a: Left operand.
        b: Right operand.

    Returns:
        True if both operands are equal element- or key-wise.
    """
    if a is None or a is MISSING or b is None or b is MISSING:
        return (a is None or a is MISSING) and (b is None or b is MISSING)
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a is b
    if isinstance(a, list | tuple) and isinstance(b, list | tuple):
        return len(a) == len(b) and all(deep_equals(x, y) for x, y in zip(a, b, strict=True))
    if isinstance(a, Mapping) and isinstance(b, Mapping):
        return a.keys() == b.keys() and all(deep_equals(a[key], b[key]) for key in a)
    if isinstance(a, datetime) and isinstance(b, datetime):
        return _to_datetime(a) == _to_datetime(b)
    try:
        return bool(a == b)
    except TypeError:
        return False


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(a: Any, b: Any) -> bool:
        if a is None or a is MISSING or b is None or b is MISSING:
            return False
        if isinstance(a, datetime) and isinstance(b, datetime):
            a, b = _to_datetime(a), _to_datetime(b)
        try:
            return bool(compare(a, b))
        except TypeError:
            return False

    return check


_greater = _ordered(op.gt)
_less = _ordered(op.lt)


def _contains(value: Any, search: Any) -> bool:
    if value is None or value is MISSING:
        return False
    if isinstance(value, str) and isinstance(search, str):
        return search.lower() in value.lower()
    if isinstance(value, _SEQUENCE_TYPES):
        return any(deep_equals(item, search) for item in value)
    if isinstance(value, Mapping) and isinstance(search, str):
        return search in value
    return False


def _is_in(value: Any, candidates: Any) -> bool:
    if not isinstance(candidates, _SEQUENCE_TYPES):
        return False
    return any(deep_equals(value, item) for item in candidates)


def _exists(value: Any) -> bool:
    return value is not MISSING and value is not None and value != ""


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    Operator.EQ: deep_equals,
    Operator.NE: lambda a, b: not deep_equals(a, b),
    Operator.GT: _greater,
    Operator.LT: _less,
    Operator.GTE: lambda a, b: deep_equals(a, b) or _greater(a, b),
    Operator.LTE: lambda a, b: deep_equals(a, b) or _less(a, b),
    Operator.CONTAINS: _contains,
    Operator.IN: _is_in,
    Operator.NOT_IN: lambda a, b: not _is_in(a, b),
}


class ConditionEvaluator:
    """Evaluates typed predicates against an execution context.

    Example:
        >>> evaluator = ConditionEvaluator()
        >>> context = ExecutionContext(form_data={"age": 20})
        >>> evaluator.evaluate_single(Predicate("age", "gte", 18), context)
        True
        >>> evaluator.evaluate([], "AND", context)
        True
    """

    def evaluate(
        self,
        conditions: Iterable[Predicate | Mapping[str, Any]] | None,
        operator: str = LogicalOperator.AND,
        context: ExecutionContext | Mapping[str, Any] | None = None,
    ) -> bool:
        """Evaluate a list of predicates combined with AND or OR.

        Args:
            conditions: Predicates or their persisted mappings.
            operator: ``AND`` or ``OR``.
            context: The execution context.

        Returns:
            The combined result. An empty list is always true.

        Raises:
            WorkflowValidationError: On an unknown logical or comparison
                operator, or a missing comparison value.
        """
        predicates = [Predicate.from_dict(raw) for raw in conditions or ()]
        if not predicates:
            return True
        logical = str(operator or LogicalOperator.AND).upper()
        if logical not in LogicalOperator.__members__.values():
            msg = f"Unknown logical operator: {operator}"
            raise WorkflowValidationError([msg])
        mapping = as_mapping(context or {})
        results = [self.evaluate_single(predicate, mapping) for predicate in predicates]
        if logical == LogicalOperator.AND:
            return all(results)
        return any(results)

    def evaluate_single(
        self,
        predicate: Predicate | Mapping[str, Any],
        context: ExecutionContext | Mapping[str, Any],
    ) -> bool:
        """Evaluate one predicate.

        Args:
            predicate: The predicate or its persisted mapping.
            context: The execution context.

        Returns:
            Whether the predicate holds.

        Raises:
            WorkflowValidationError: If the predicate is malformed.
        """
        predicate = Predicate.from_dict(predicate)
        problems = predicate.validate()
        if problems:
            raise WorkflowValidationError(problems)

        raw = resolve_field(predicate.field, context)
        if predicate.operator == Operator.EXISTS:
            return _exists(raw)

        left = cast_value(raw, predicate.data_type)
        right = cast_value(predicate.value, predicate.data_type)
        return _COMPARATORS[predicate.operator](left, right)

    @staticmethod
    def validate_predicate(predicate: Predicate | Mapping[str, Any]) -> list[str]:
        """Return the problems of a predicate without evaluating it."""
        return Predicate.from_dict(predicate).validate()
