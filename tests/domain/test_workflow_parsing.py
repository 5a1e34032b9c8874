"""
Tests for workflow definition parsing (``expense_kernel.domain.workflow``).

Verifies:
- Steps must be non-empty and numbered 1..n.
- Condition fields are checked against the accessor map and operators
  against the closed enum at parse time; every problem is reported.
- ``condition`` is accepted as the key for the operator.
- Snapshots survive the JSON column unchanged.
- Default-workflow eligibility (``is_unconditional``).
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from expense_kernel.domain.workflow import (
    ConditionOperator,
    ReturnPolicy,
    TargetType,
    WorkflowDefinitionInvalid,
    WorkflowSnapshot,
    parse_condition,
    parse_conditions,
    parse_steps,
)
from expense_kernel.utils.hashing import to_json_safe


def _step(number, **overrides):
    step = {
        "step_number": number,
        "name": f"Step {number}",
        "target_type": "role",
        "target_value": "approver",
    }
    step.update(overrides)
    return step


class TestParseSteps:

    def test_empty_list_rejected(self):
        with pytest.raises(WorkflowDefinitionInvalid) as exc_info:
            parse_steps([])
        assert exc_info.value.errors == ["workflow must have at least one step"]

    def test_numbers_must_be_contiguous_from_one(self):
        with pytest.raises(WorkflowDefinitionInvalid) as exc_info:
            parse_steps([_step(1), _step(3)])
        assert "contiguous" in exc_info.value.errors[0]
        assert "[1, 3]" in exc_info.value.errors[0]

    def test_numbering_from_zero_rejected(self):
        with pytest.raises(WorkflowDefinitionInvalid):
            parse_steps([_step(0), _step(1)])

    def test_unknown_target_type_rejected(self):
        with pytest.raises(WorkflowDefinitionInvalid) as exc_info:
            parse_steps([_step(1, target_type="robot")])
        assert "unknown target_type 'robot'" in exc_info.value.errors[0]

    def test_non_integer_step_number_reported(self):
        with pytest.raises(WorkflowDefinitionInvalid) as exc_info:
            parse_steps([_step("one")])
        assert exc_info.value.errors == ["step 1: step_number must be an integer, got 'one'"]

    def test_non_object_step_reported(self):
        with pytest.raises(WorkflowDefinitionInvalid) as exc_info:
            parse_steps([_step(1), "approve"])
        assert exc_info.value.errors == ["step 2: must be an object"]

    def test_numbering_checked_alongside_other_errors(self):
        with pytest.raises(WorkflowDefinitionInvalid) as exc_info:
            parse_steps([_step(1, target_type="robot"), _step(3)])
        errors = exc_info.value.errors
        assert any("unknown target_type 'robot'" in e for e in errors)
        assert any("contiguous from 1, got [1, 3]" in e for e in errors)

    def test_all_condition_errors_collected(self):
        raw = [
            _step(1, required_if={"field": "color", "operator": "equals", "value": "red"}),
            _step(2, skip_if={"field": "totalAmount", "operator": "between", "value": 1}),
        ]
        with pytest.raises(WorkflowDefinitionInvalid) as exc_info:
            parse_steps(raw)
        errors = exc_info.value.errors
        assert any("step 1.required_if: unknown field 'color'" in e for e in errors)
        assert any("step 2.skip_if: unknown operator 'between'" in e for e in errors)

    def test_valid_steps_parse(self):
        steps = parse_steps([
            _step(1, target_type="relationship", target_value="direct_manager", required=True),
            _step(
                2,
                required_if={"field": "totalAmount", "operator": "greater_than", "value": 1000},
                escalation={"enabled": True, "notify_at_hours": [24, 48]},
            ),
        ])
        assert [s.step_number for s in steps] == [1, 2]
        assert steps[0].target_type is TargetType.RELATIONSHIP
        assert steps[0].required is True
        assert steps[1].required_if.operator is ConditionOperator.GREATER_THAN
        assert steps[1].escalation.notify_at_hours == (24, 48)

    def test_missing_name_defaults_to_position(self):
        steps = parse_steps([{"step_number": 1, "target_type": "system"}])
        assert steps[0].name == "Step 1"


class TestParseCondition:

    def test_condition_key_is_an_operator_alias(self):
        cond = parse_condition({"field": "totalAmount", "condition": "less_than", "value": 50})
        assert cond.operator is ConditionOperator.LESS_THAN

    def test_list_operator_requires_list(self):
        with pytest.raises(WorkflowDefinitionInvalid) as exc_info:
            parse_condition({"field": "expenseCategory", "operator": "in", "value": "travel"})
        assert "requires a list value" in exc_info.value.errors[0]

    def test_list_value_stored_as_tuple(self):
        cond = parse_condition({"field": "expenseCategory", "operator": "in", "value": ["a", "b"]})
        assert cond.value == ("a", "b")
        assert cond.to_dict()["value"] == ["a", "b"]

    def test_ordering_operator_requires_number(self):
        with pytest.raises(WorkflowDefinitionInvalid) as exc_info:
            parse_condition({"field": "totalAmount", "operator": "greater_than", "value": "lots"})
        assert "requires a numeric value" in exc_info.value.errors[0]

    def test_non_object_rejected(self):
        with pytest.raises(WorkflowDefinitionInvalid):
            parse_condition(["totalAmount", "equals", 1])


class TestSnapshot:

    def test_snapshot_survives_json_column(self):
        snapshot = WorkflowSnapshot(
            workflow_id=uuid4(),
            name="Travel",
            version=3,
            steps=parse_steps([
                _step(1),
                _step(2, skip_if={"field": "departmentId", "operator": "in", "value": ["x"]}),
            ]),
            on_return_policy=ReturnPolicy.SOFT_RESTART,
        )
        restored = WorkflowSnapshot.from_dict(to_json_safe(snapshot.to_dict()))
        assert restored == snapshot

    def test_step_lookup(self):
        snapshot = WorkflowSnapshot(uuid4(), "W", 1, parse_steps([_step(1), _step(2)]))
        assert snapshot.total_steps == 2
        assert snapshot.step(2).name == "Step 2"
        assert snapshot.step(3) is None
        assert snapshot.step(None) is None

    def test_missing_policy_defaults_to_hard_restart(self):
        data = {"id": str(uuid4()), "name": "W", "version": 1, "steps": [_step(1)]}
        assert WorkflowSnapshot.from_dict(data).on_return_policy is ReturnPolicy.HARD_RESTART


class TestWorkflowConditions:

    def test_empty_conditions_are_unconditional(self):
        assert parse_conditions(None).is_unconditional
        assert parse_conditions({}).is_unconditional

    def test_amount_min_zero_is_unconditional(self):
        assert parse_conditions({"amount_min": 0}).is_unconditional

    def test_amount_floor_is_conditional(self):
        conditions = parse_conditions({"amount_min": "1000"})
        assert conditions.amount_min == Decimal("1000")
        assert not conditions.is_unconditional

    def test_department_filter_is_conditional(self):
        assert not parse_conditions({"departments": ["ENG"]}).is_unconditional
