"""
Workflow definition types (``expense_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for approval workflow definitions: steps, routing
conditions, escalation settings, and the by-value snapshot a report carries
while it is in flight.  Also the parsing/validation of the JSON shape those
definitions are stored in.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Step numbers are 1-based and contiguous.
* A condition's ``field`` is a key of ``CONDITION_FIELDS`` and its
  ``operator`` a member of ``ConditionOperator``.  ``in`` / ``not_in``
  carry a list value.
* A snapshot is a complete copy of the definition at submit time; later
  edits to the definition never reach it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID


class ConditionOperator(str, Enum):
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"


LIST_OPERATORS: frozenset[ConditionOperator] = frozenset({
    ConditionOperator.IN,
    ConditionOperator.NOT_IN,
})

NUMERIC_OPERATORS: frozenset[ConditionOperator] = frozenset({
    ConditionOperator.GREATER_THAN,
    ConditionOperator.LESS_THAN,
})


# Condition field name -> ReportFacts attribute.  Both the camelCase names
# used by stored definitions and snake_case are accepted.
CONDITION_FIELDS: dict[str, str] = {
    "totalAmount": "total_amount",
    "total_amount": "total_amount",
    "departmentId": "department_id",
    "department_id": "department_id",
    "userId": "user_id",
    "user_id": "user_id",
    "status": "status",
    "currentStep": "current_step",
    "current_step": "current_step",
    "expenseCategory": "expense_categories",
    "expense_category": "expense_categories",
}


class TargetType(str, Enum):
    """How a step's approver is identified."""

    ROLE = "role"
    RELATIONSHIP = "relationship"
    HYBRID = "hybrid"
    SYSTEM = "system"


class ReturnPolicy(str, Enum):
    """What happens to workflow progress when a report is returned."""

    HARD_RESTART = "hard_restart"
    SOFT_RESTART = "soft_restart"


@dataclass(frozen=True)
class Condition:
    """A single ``field operator value`` predicate over report facts.

    ``value`` is a tuple for list operators and a scalar otherwise.
    """

    field: str
    operator: ConditionOperator
    value: Any

    def to_dict(self) -> dict[str, Any]:
        value = list(self.value) if self.operator in LIST_OPERATORS else self.value
        return {"field": self.field, "operator": self.operator.value, "value": value}


@dataclass(frozen=True)
class Escalation:
    enabled: bool
    target_type: TargetType | None = None
    target_value: str | None = None
    notify_at_hours: tuple[int, ...] = ()
    auto_approve_after_hours: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "target_type": self.target_type.value if self.target_type else None,
            "target_value": self.target_value,
            "notify_at_hours": list(self.notify_at_hours),
            "auto_approve_after_hours": self.auto_approve_after_hours,
        }


@dataclass(frozen=True)
class WorkflowStep:
    """One approval step.

    ``required`` is the static flag; ``required_if`` / ``skip_if`` make the
    step conditional on report facts (see expense_engines.routing).
    """

    step_number: int
    name: str
    target_type: TargetType
    target_value: str
    sla_hours: int | None = None
    required: bool | None = None
    required_if: Condition | None = None
    skip_if: Condition | None = None
    escalation: Escalation | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "step_number": self.step_number,
            "name": self.name,
            "target_type": self.target_type.value,
            "target_value": self.target_value,
            "sla_hours": self.sla_hours,
        }
        if self.required is not None:
            data["required"] = self.required
        if self.required_if is not None:
            data["required_if"] = self.required_if.to_dict()
        if self.skip_if is not None:
            data["skip_if"] = self.skip_if.to_dict()
        if self.escalation is not None:
            data["escalation"] = self.escalation.to_dict()
        return data


@dataclass(frozen=True)
class WorkflowConditions:
    """Which reports a definition applies to when used as a default."""

    amount_min: Decimal | None = None
    amount_max: Decimal | None = None
    expense_categories: tuple[str, ...] = ()
    departments: tuple[str, ...] = ()

    @property
    def is_unconditional(self) -> bool:
        """True for an empty condition set or one that starts at zero."""
        if self.amount_min is not None and self.amount_min == 0:
            return True
        return (
            self.amount_min is None
            and self.amount_max is None
            and not self.expense_categories
            and not self.departments
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.amount_min is not None:
            data["amount_min"] = str(self.amount_min)
        if self.amount_max is not None:
            data["amount_max"] = str(self.amount_max)
        if self.expense_categories:
            data["expense_categories"] = list(self.expense_categories)
        if self.departments:
            data["departments"] = list(self.departments)
        return data


@dataclass(frozen=True)
class WorkflowSnapshot:
    """By-value copy of a workflow definition, taken at submit time."""

    workflow_id: UUID
    name: str
    version: int
    steps: tuple[WorkflowStep, ...]
    on_return_policy: ReturnPolicy = ReturnPolicy.HARD_RESTART

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def step(self, step_number: int | None) -> WorkflowStep | None:
        if step_number is None:
            return None
        for candidate in self.steps:
            if candidate.step_number == step_number:
                return candidate
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.workflow_id),
            "name": self.name,
            "version": self.version,
            "steps": [s.to_dict() for s in self.steps],
            "on_return_policy": self.on_return_policy.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowSnapshot:
        return cls(
            workflow_id=UUID(str(data["id"])),
            name=data["name"],
            version=int(data["version"]),
            steps=parse_steps(data.get("steps") or []),
            on_return_policy=ReturnPolicy(
                data.get("on_return_policy") or ReturnPolicy.HARD_RESTART.value
            ),
        )


# =========================================================================
# Parsing and validation
# =========================================================================


class WorkflowDefinitionInvalid(ValueError):
    """Raised by the parsers below; the store wraps it in a typed error."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


def parse_condition(data: Any, where: str = "condition") -> Condition:
    errors: list[str] = []
    if not isinstance(data, dict):
        raise WorkflowDefinitionInvalid([f"{where}: must be an object"])

    # stored definitions may spell the operator key "condition"
    raw_operator = data.get("operator", data.get("condition"))
    field_name = data.get("field")
    if field_name not in CONDITION_FIELDS:
        errors.append(f"{where}: unknown field {field_name!r}")

    try:
        operator = ConditionOperator(raw_operator)
    except ValueError:
        errors.append(f"{where}: unknown operator {raw_operator!r}")
        operator = None

    value = data.get("value")
    if operator in LIST_OPERATORS:
        if not isinstance(value, (list, tuple)):
            errors.append(f"{where}: operator {operator.value} requires a list value")
        else:
            value = tuple(value)
    elif operator in NUMERIC_OPERATORS:
        try:
            Decimal(str(value))
        except (InvalidOperation, ValueError):
            errors.append(f"{where}: operator {operator.value} requires a numeric value")

    if errors:
        raise WorkflowDefinitionInvalid(errors)
    return Condition(field=field_name, operator=operator, value=value)


def _parse_escalation(data: dict[str, Any]) -> Escalation:
    target_type = data.get("target_type")
    return Escalation(
        enabled=bool(data.get("enabled", False)),
        target_type=TargetType(target_type) if target_type else None,
        target_value=data.get("target_value"),
        notify_at_hours=tuple(int(h) for h in data.get("notify_at_hours") or ()),
        auto_approve_after_hours=data.get("auto_approve_after_hours"),
    )


def _parse_step_number(raw: Any, where: str, errors: list[str]) -> int | None:
    if isinstance(raw, bool):
        errors.append(f"{where}: step_number must be an integer, got {raw!r}")
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        errors.append(f"{where}: step_number must be an integer, got {raw!r}")
        return None


def parse_steps(raw_steps: list[dict[str, Any]]) -> tuple[WorkflowStep, ...]:
    """Parse and validate a list of step dicts.

    Collects every problem before raising so an admin sees the whole list.
    """
    errors: list[str] = []
    steps: list[WorkflowStep] = []
    numbers: list[int | None] = []

    if not raw_steps:
        raise WorkflowDefinitionInvalid(["workflow must have at least one step"])

    for index, raw in enumerate(raw_steps, start=1):
        where = f"step {index}"
        if not isinstance(raw, dict):
            errors.append(f"{where}: must be an object")
            numbers.append(None)
            continue

        step_number = _parse_step_number(raw.get("step_number"), where, errors)
        numbers.append(step_number)

        target_type = None
        try:
            target_type = TargetType(raw.get("target_type"))
        except ValueError:
            errors.append(f"{where}: unknown target_type {raw.get('target_type')!r}")

        conditions: dict[str, Condition | None] = {"required_if": None, "skip_if": None}
        for key in conditions:
            if raw.get(key):
                try:
                    conditions[key] = parse_condition(raw[key], f"{where}.{key}")
                except WorkflowDefinitionInvalid as exc:
                    errors.extend(exc.errors)

        escalation = None
        if raw.get("escalation"):
            try:
                escalation = _parse_escalation(raw["escalation"])
            except (AttributeError, TypeError, ValueError) as exc:
                errors.append(f"{where}.escalation: {exc}")

        if step_number is None or target_type is None:
            continue
        steps.append(
            WorkflowStep(
                step_number=step_number,
                name=raw.get("name") or f"Step {index}",
                target_type=target_type,
                target_value=str(raw.get("target_value") or ""),
                sla_hours=raw.get("sla_hours"),
                required=raw.get("required"),
                required_if=conditions["required_if"],
                skip_if=conditions["skip_if"],
                escalation=escalation,
            )
        )

    valid_numbers = [n for n in numbers if n is not None]
    if len(valid_numbers) == len(numbers) and valid_numbers != list(range(1, len(numbers) + 1)):
        errors.append(f"step numbers must be contiguous from 1, got {valid_numbers}")

    if errors:
        raise WorkflowDefinitionInvalid(errors)
    return tuple(steps)


def parse_conditions(data: dict[str, Any] | None) -> WorkflowConditions:
    if not data:
        return WorkflowConditions()
    amount_min = data.get("amount_min")
    amount_max = data.get("amount_max")
    return WorkflowConditions(
        amount_min=Decimal(str(amount_min)) if amount_min is not None else None,
        amount_max=Decimal(str(amount_max)) if amount_max is not None else None,
        expense_categories=tuple(data.get("expense_categories") or ()),
        departments=tuple(str(d) for d in data.get("departments") or ()),
    )
