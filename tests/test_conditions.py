"""Tests for predicate evaluation and field resolution."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from litestar_flows.core.context import ExecutionContext
from litestar_flows.core.definition import Predicate
from litestar_flows.evaluation import MISSING, ConditionEvaluator, cast_value, deep_equals, resolve_field
from litestar_flows.exceptions import WorkflowValidationError


@pytest.fixture
def evaluator() -> ConditionEvaluator:
    return ConditionEvaluator()


@pytest.fixture
def context() -> ExecutionContext:
    return ExecutionContext(
        current_node="review",
        form_data={
            "age": 20,
            "name": "Dana Reyes",
            "tags": ["vip", "beta"],
            "customer": {"email": "dana@example.com", "orders": [{"total": 30}, {"total": 75}]},
            "signed_up": "2026-01-15T10:00:00Z",
        },
        variables={"score": "42", "approved": True, "age": 99},
        metadata={"source": "web"},
    )


@pytest.mark.unit
class TestResolveField:
    """Tests for the dotted path resolution order."""

    def test_top_level_key_wins(self, context: ExecutionContext) -> None:
        """Test a top-level context key is returned as is."""
        assert resolve_field("currentNode", context) == "review"

    def test_form_data_before_variables(self, context: ExecutionContext) -> None:
        """Test form data shadows a variable with the same name."""
        assert resolve_field("age", context) == 20
        assert resolve_field("variables.age", context) == 99

    def test_nested_form_path(self, context: ExecutionContext) -> None:
        """Test nested form fields and list indices resolve."""
        assert resolve_field("customer.email", context) == "dana@example.com"
        assert resolve_field("customer.orders[1].total", context) == 75
        assert resolve_field("formData.customer.orders.0.total", context) == 30

    def test_variables_without_prefix(self, context: ExecutionContext) -> None:
        """Test a variable is found when no form field matches."""
        assert resolve_field("score", context) == "42"

    def test_metadata_requires_prefix(self, context: ExecutionContext) -> None:
        """Test metadata is only reachable with an explicit prefix."""
        assert resolve_field("metadata.source", context) == "web"
        assert resolve_field("source", context) is MISSING

    def test_missing_path(self, context: ExecutionContext) -> None:
        """Test an unknown path resolves to MISSING."""
        assert resolve_field("customer.phone", context) is MISSING
        assert resolve_field("nothing.here", context) is MISSING


@pytest.mark.unit
class TestCastValue:
    """Tests for operand casting."""

    def test_number_from_string(self) -> None:
        assert cast_value("42", "number") == 42
        assert cast_value("4.5", "number") == 4.5

    def test_failed_cast_returns_original(self) -> None:
        """Test casting never raises and keeps the original value."""
        assert cast_value("forty", "number") == "forty"
        assert cast_value("not a date", "date") == "not a date"

    def test_boolean_strings(self) -> None:
        assert cast_value("true", "boolean") is True
        assert cast_value("1", "boolean") is True
        assert cast_value("no", "boolean") is False

    def test_date_forms(self) -> None:
        """Test ISO strings, dates and epoch milliseconds become aware datetimes."""
        expected = datetime(2026, 1, 15, tzinfo=timezone.utc)
        assert cast_value("2026-01-15T00:00:00Z", "date") == expected
        assert cast_value(date(2026, 1, 15), "date") == expected
        assert cast_value(expected.timestamp() * 1000, "date") == expected

    def test_array_forms(self) -> None:
        assert cast_value('["a", "b"]', "array") == ["a", "b"]
        assert cast_value("a", "array") == ["a"]
        assert cast_value(("a",), "array") == ["a"]

    def test_none_is_never_cast(self) -> None:
        assert cast_value(None, "string") is None


@pytest.mark.unit
class TestDeepEquals:
    """Tests for structural equality."""

    def test_nested_structures(self) -> None:
        assert deep_equals({"a": [1, {"b": 2}]}, {"a": [1, {"b": 2}]})
        assert not deep_equals({"a": [1, 2]}, {"a": [2, 1]})

    def test_booleans_are_not_numbers(self) -> None:
        assert not deep_equals(True, 1)
        assert deep_equals(False, False)

    def test_datetimes_compare_as_instants(self) -> None:
        utc = datetime(2026, 1, 1, 12, tzinfo=timezone.utc)
        naive = datetime(2026, 1, 1, 12)
        assert deep_equals(utc, naive)


@pytest.mark.unit
class TestConditionEvaluator:
    """Tests for ConditionEvaluator."""

    def test_empty_and_is_true(self, evaluator: ConditionEvaluator, context: ExecutionContext) -> None:
        """Test an empty predicate list passes vacuously."""
        assert evaluator.evaluate([], "AND", context) is True
        assert evaluator.evaluate(None, "OR", context) is True

    @pytest.mark.parametrize(
        ("predicate", "expected"),
        [
            ({"field": "age", "operator": "gte", "value": 18}, True),
            ({"field": "age", "operator": "lt", "value": 18}, False),
            ({"field": "score", "operator": "gt", "value": 40, "dataType": "number"}, True),
            ({"field": "score", "operator": "eq", "value": 42}, False),
            ({"field": "name", "operator": "contains", "value": "reyes"}, True),
            ({"field": "tags", "operator": "contains", "value": "vip"}, True),
            ({"field": "age", "operator": "in", "value": [18, 20, 22]}, True),
            ({"field": "age", "operator": "not_in", "value": [18, 22]}, True),
            ({"field": "customer.email", "operator": "exists"}, True),
            ({"field": "customer.phone", "operator": "exists"}, False),
            ({"field": "approved", "operator": "eq", "value": True}, True),
            ({"field": "approved", "operator": "ne", "value": 1}, True),
            (
                {"field": "signed_up", "operator": "lt", "value": "2026-02-01T00:00:00+00:00", "dataType": "date"},
                True,
            ),
            ({"field": "customer", "operator": "eq", "value": {"email": "x"}}, False),
        ],
    )
    def test_operators(
        self, evaluator: ConditionEvaluator, context: ExecutionContext, predicate: dict, expected: bool
    ) -> None:
        """Test each operator against the sample context."""
        assert evaluator.evaluate_single(predicate, context) is expected

    def test_missing_field_orders_false(self, evaluator: ConditionEvaluator, context: ExecutionContext) -> None:
        """Test ordering comparisons against a missing field are false."""
        assert evaluator.evaluate_single(Predicate("unknown", "gt", 1), context) is False
        assert evaluator.evaluate_single(Predicate("unknown", "lt", 1), context) is False

    def test_and_or(self, evaluator: ConditionEvaluator, context: ExecutionContext) -> None:
        conditions = [
            {"field": "age", "operator": "gte", "value": 18},
            {"field": "metadata.source", "operator": "eq", "value": "app"},
        ]
        assert evaluator.evaluate(conditions, "AND", context) is False
        assert evaluator.evaluate(conditions, "OR", context) is True
        assert evaluator.evaluate(conditions, "or", context) is True

    def test_unknown_operator_is_an_error(self, evaluator: ConditionEvaluator, context: ExecutionContext) -> None:
        """Test an unknown operator raises instead of evaluating to false."""
        with pytest.raises(WorkflowValidationError, match="unknown operator 'between'"):
            evaluator.evaluate_single({"field": "age", "operator": "between", "value": [1, 2]}, context)

    def test_missing_value_is_an_error(self, evaluator: ConditionEvaluator, context: ExecutionContext) -> None:
        with pytest.raises(WorkflowValidationError, match="requires a value"):
            evaluator.evaluate_single({"field": "age", "operator": "eq"}, context)

    def test_unknown_logical_operator(self, evaluator: ConditionEvaluator, context: ExecutionContext) -> None:
        with pytest.raises(WorkflowValidationError):
            evaluator.evaluate([{"field": "age", "operator": "exists"}], "XOR", context)

    def test_repeated_evaluation_is_stable(self, evaluator: ConditionEvaluator, context: ExecutionContext) -> None:
        """Test evaluation does not mutate the context."""
        snapshot = context.to_dict()
        predicate = {"field": "score", "operator": "gte", "value": "42", "dataType": "number"}
        results = {evaluator.evaluate_single(predicate, context) for _ in range(3)}
        assert results == {True}
        assert context.to_dict() == snapshot

    def test_accepts_plain_mapping(self, evaluator: ConditionEvaluator) -> None:
        """Test evaluation against a camelCase mapping instead of a context."""
        mapping = {"formData": {"plan": "pro"}, "variables": {}, "metadata": {}}
        assert evaluator.evaluate_single({"field": "plan", "operator": "eq", "value": "pro"}, mapping)
