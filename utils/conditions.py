"""
Condition evaluator for condition nodes.

Evaluates ConditionClause objects against a variables dictionary.
Supports nested dot-notation variable access, numeric coercion for the
ordering operators, and left-to-right and/or chaining between clauses.
"""
from __future__ import annotations

from typing import Any

from models.schemas import ConditionClause


def _loose_equals(a: Any, b: Any) -> bool:
    if a == b:
        return True
    if a is None or b is None:
        return False
    return str(a).strip().lower() == str(b).strip().lower()


def _as_number(value: Any) -> float:
    return float(value)


OPERATORS: dict[str, Any] = {
    "equals": _loose_equals,
    "not_equals": lambda a, b: not _loose_equals(a, b),
    "contains": lambda a, b: str(b).lower() in str(a).lower(),
    "greater_than": lambda a, b: _as_number(a) > _as_number(b),
    "less_than": lambda a, b: _as_number(a) < _as_number(b),
    "exists": lambda a, b: a is not None,
}


def get_nested_value(data: dict, field: str) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'order.status'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def evaluate_condition(condition: ConditionClause, data: dict[str, Any]) -> bool:
    """Evaluate a single clause against data."""
    val = get_nested_value(data, condition.variable)
    fn = OPERATORS.get(condition.operator)
    if fn is None:
        return False
    if val is None and condition.operator != "exists":
        return False
    try:
        return bool(fn(val, condition.value))
    except (TypeError, ValueError):
        return False


def evaluate_conditions(conditions: list[ConditionClause], data: dict[str, Any]) -> bool:
    """
    Evaluate clauses left to right. Each clause after the first joins the
    running result with its own logical_operator ("and" | "or").
    """
    if not conditions:
        return True
    result = evaluate_condition(conditions[0], data)
    for clause in conditions[1:]:
        if clause.logical_operator == "or":
            result = result or evaluate_condition(clause, data)
        else:
            result = result and evaluate_condition(clause, data)
    return result
