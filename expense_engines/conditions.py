"""
expense_engines.conditions -- Workflow condition interpreter.

Responsibility:
    Evaluate a ``Condition`` (field, operator, value) against the
    ``ReportFacts`` of a report.  The field is resolved through the closed
    ``CONDITION_FIELDS`` accessor map, never by attribute name from data.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Totality: every (condition, facts) pair yields a bool.  A value that
      cannot be compared (missing, non-numeric for an ordering operator)
      makes the condition false, never raises.
    - Ordering operators compare as Decimal.  Equality compares numbers as
      Decimal and everything else by exact value (UUIDs as strings).
    - ``expense_category`` is multi-valued: ``equals`` / ``in`` hold when any
      line category matches; ``not_equals`` / ``not_in`` when none does.

Usage:
    from expense_engines.conditions import evaluate_condition
    evaluate_condition(step.required_if, facts)
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID

from expense_kernel.domain.report import ReportFacts
from expense_kernel.domain.workflow import (
    CONDITION_FIELDS,
    Condition,
    ConditionOperator,
)


def _as_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


def _normalize(value: Any) -> Any:
    """Make a fact or condition operand comparable by ``==``."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (int, float, Decimal)):
        number = _as_decimal(value)
        return number if number is not None else str(value)
    return value


def read_fact(facts: ReportFacts, field: str) -> Any:
    """Resolve a condition field through the accessor map.

    Raises:
        KeyError: field is not a known condition field.
    """
    return getattr(facts, CONDITION_FIELDS[field])


def _evaluate_scalar(operator: ConditionOperator, fact: Any, value: Any) -> bool:
    if operator is ConditionOperator.GREATER_THAN:
        left, right = _as_decimal(fact), _as_decimal(value)
        return left is not None and right is not None and left > right
    if operator is ConditionOperator.LESS_THAN:
        left, right = _as_decimal(fact), _as_decimal(value)
        return left is not None and right is not None and left < right
    if operator is ConditionOperator.EQUALS:
        return _normalize(fact) == _normalize(value)
    if operator is ConditionOperator.NOT_EQUALS:
        return _normalize(fact) != _normalize(value)

    members = value if isinstance(value, (list, tuple)) else None
    if members is None:
        return False
    normalized = {_normalize(m) for m in members if _is_hashable(m)}
    if operator is ConditionOperator.IN:
        return _normalize(fact) in normalized
    if operator is ConditionOperator.NOT_IN:
        return _normalize(fact) not in normalized
    raise ValueError(f"Unhandled condition operator: {operator!r}")


def _is_hashable(value: Any) -> bool:
    try:
        hash(value)
    except TypeError:
        return False
    return True


def evaluate_condition(condition: Condition, facts: ReportFacts) -> bool:
    """Evaluate ``condition`` against ``facts``.  Unknown fields are false."""
    if condition.field not in CONDITION_FIELDS:
        return False
    fact = read_fact(facts, condition.field)

    if isinstance(fact, tuple):
        if condition.operator in (ConditionOperator.NOT_EQUALS, ConditionOperator.NOT_IN):
            positive = (
                ConditionOperator.EQUALS
                if condition.operator is ConditionOperator.NOT_EQUALS
                else ConditionOperator.IN
            )
            return not any(_evaluate_scalar(positive, item, condition.value) for item in fact)
        return any(_evaluate_scalar(condition.operator, item, condition.value) for item in fact)

    return _evaluate_scalar(condition.operator, fact, condition.value)
