"""Tests for the shared condition evaluator."""
import pytest
from models.schemas import ConditionClause
from utils.conditions import evaluate_condition, evaluate_conditions, get_nested_value


def _clause(variable, operator="equals", value=None, logical_operator="and"):
    return ConditionClause(variable=variable, operator=operator, value=value,
                           logical_operator=logical_operator)


class TestGetNestedValue:
    def test_flat_key(self):
        assert get_nested_value({"name": "Alice"}, "name") == "Alice"

    def test_nested_key(self):
        data = {"booking": {"status": "paid", "slots": 2}}
        assert get_nested_value(data, "booking.status") == "paid"
        assert get_nested_value(data, "booking.slots") == 2

    def test_missing_key(self):
        assert get_nested_value({"a": 1}, "b") is None

    def test_missing_nested_key(self):
        assert get_nested_value({"a": {"b": 1}}, "a.c") is None

    def test_path_through_scalar(self):
        assert get_nested_value({"a": 5}, "a.b") is None


class TestEvaluateCondition:
    def test_equals_is_case_insensitive(self):
        cond = _clause("tier", "equals", "Gold")
        assert evaluate_condition(cond, {"tier": "gold "})
        assert not evaluate_condition(cond, {"tier": "silver"})

    def test_equals_across_types(self):
        assert evaluate_condition(_clause("count", "equals", "3"), {"count": 3})

    def test_not_equals(self):
        cond = _clause("status", "not_equals", "closed")
        assert evaluate_condition(cond, {"status": "open"})
        assert not evaluate_condition(cond, {"status": "CLOSED"})

    def test_contains(self):
        cond = _clause("order", "contains", "naan")
        assert evaluate_condition(cond, {"order": "2 Naan, 1 dal"})
        assert not evaluate_condition(cond, {"order": "rice"})

    def test_greater_and_less_than(self):
        assert evaluate_condition(_clause("amount", "greater_than", 100), {"amount": "250"})
        assert not evaluate_condition(_clause("amount", "greater_than", 100), {"amount": 100})
        assert evaluate_condition(_clause("amount", "less_than", 100), {"amount": 99.5})

    def test_non_numeric_comparison_is_false(self):
        assert not evaluate_condition(_clause("amount", "greater_than", 100), {"amount": "lots"})

    def test_exists(self):
        cond = _clause("email", "exists")
        assert evaluate_condition(cond, {"email": "a@b.co"})
        assert not evaluate_condition(cond, {})

    def test_missing_variable_is_false(self):
        assert not evaluate_condition(_clause("tier", "not_equals", "gold"), {})

    def test_unknown_operator(self):
        assert not evaluate_condition(_clause("x", "matches_regex", ".*"), {"x": "y"})

    def test_nested_variable(self):
        assert evaluate_condition(_clause("booking.status", "equals", "paid"),
                                  {"booking": {"status": "paid"}})


class TestEvaluateConditions:
    def test_empty_list_is_true(self):
        assert evaluate_conditions([], {})

    def test_and_chain(self):
        clauses = [_clause("a", "equals", 1), _clause("b", "equals", 2)]
        assert evaluate_conditions(clauses, {"a": 1, "b": 2})
        assert not evaluate_conditions(clauses, {"a": 1, "b": 3})

    def test_or_chain(self):
        clauses = [_clause("a", "equals", 1), _clause("b", "equals", 2, logical_operator="or")]
        assert evaluate_conditions(clauses, {"a": 0, "b": 2})
        assert not evaluate_conditions(clauses, {"a": 0, "b": 0})

    @pytest.mark.parametrize("a,b,c,expected", [
        (True, False, True, True),     # (a or b) and c
        (False, False, True, False),
        (True, True, False, False),
    ])
    def test_left_to_right(self, a, b, c, expected):
        clauses = [
            _clause("a", "equals", True),
            _clause("b", "equals", True, logical_operator="or"),
            _clause("c", "equals", True),
        ]
        assert evaluate_conditions(clauses, {"a": a, "b": b, "c": c}) is expected
