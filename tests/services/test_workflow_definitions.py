"""
Tests for WorkflowDefinitionStore and WorkflowResolver.

Covers:
- Definitions are validated before every write; all problems are listed.
- Edits bump version by one and write a workflow.update audit entry.
- Resolution: assignments by priority, then amount_min; otherwise the
  earliest active unconditional workflow; otherwise None.
- Snapshots taken before an edit are unaffected by it.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from expense_kernel.exceptions import (
    InvalidWorkflowDefinitionError,
    ValidationError,
    WorkflowNotFoundError,
)
from expense_kernel.services.workflow_definitions import snapshot_of

MANAGER_STEP = {
    "step_number": 1,
    "name": "Manager Approval",
    "target_type": "relationship",
    "target_value": "direct_manager",
}

FINANCE_STEP = {
    "step_number": 2,
    "name": "Finance Review",
    "target_type": "role",
    "target_value": "finance",
    "required_if": {"field": "totalAmount", "operator": "greater_than", "value": 2000},
}

TWO_STEP_WORKFLOW = [MANAGER_STEP, FINANCE_STEP]


class TestCreateWorkflow:

    def test_created_at_version_one(self, workflow_store):
        workflow = workflow_store.create_workflow("Travel", TWO_STEP_WORKFLOW)
        assert workflow.version == 1
        assert workflow.is_active
        assert [s["step_number"] for s in workflow.steps] == [1, 2]
        assert workflow.on_return_policy == "hard_restart"

    def test_every_problem_reported(self, workflow_store):
        bad_steps = [
            {"step_number": 1, "target_type": "role", "required_if": {"field": "colour", "operator": "equals", "value": "x"}},
            {"step_number": 3, "target_type": "role"},
        ]
        with pytest.raises(InvalidWorkflowDefinitionError) as exc_info:
            workflow_store.create_workflow("Broken", bad_steps, on_return_policy="sideways")
        errors = exc_info.value.errors
        assert any("contiguous" in e for e in errors)
        assert any("unknown field 'colour'" in e for e in errors)
        assert any("on_return_policy" in e for e in errors)

    def test_non_integer_step_number_is_a_validation_error(self, workflow_store):
        bad_steps = [{"step_number": "one", "target_type": "role", "target_value": "approver"}]
        with pytest.raises(InvalidWorkflowDefinitionError) as exc_info:
            workflow_store.create_workflow("Bad", bad_steps)
        assert any("step_number must be an integer" in e for e in exc_info.value.errors)

    def test_empty_steps_rejected(self, workflow_store):
        with pytest.raises(InvalidWorkflowDefinitionError):
            workflow_store.create_workflow("Empty", [])

    def test_name_required(self, workflow_store):
        with pytest.raises(InvalidWorkflowDefinitionError):
            workflow_store.create_workflow("", TWO_STEP_WORKFLOW)

    def test_unknown_workflow(self, workflow_store):
        with pytest.raises(WorkflowNotFoundError):
            workflow_store.get_workflow(uuid4())


class TestUpdateWorkflow:

    def test_edit_bumps_version_and_audits(self, workflow_store, audit_ledger, make_workflow):
        workflow = make_workflow(TWO_STEP_WORKFLOW)
        actor = uuid4()

        updated = workflow_store.update_workflow(workflow.id, actor, steps=[MANAGER_STEP])

        assert updated.version == 2
        assert len(updated.steps) == 1
        (entry,) = audit_ledger.get_resource_audit_history("workflow", workflow.id)
        assert entry.action == "workflow.update"
        assert entry.actor_id == actor
        assert entry.resource_version == 2
        assert entry.changes == {"version": {"from": 1, "to": 2}}

    def test_every_edit_is_one_version(self, workflow_store, make_workflow):
        workflow = make_workflow()
        for expected in (2, 3, 4):
            assert workflow_store.update_workflow(workflow.id, None, description="d").version == expected

    def test_invalid_edit_changes_nothing(self, workflow_store, make_workflow):
        workflow = make_workflow()
        with pytest.raises(InvalidWorkflowDefinitionError):
            workflow_store.update_workflow(workflow.id, None, steps=[{"step_number": 2}])
        assert workflow.version == 1

    def test_snapshot_taken_before_edit_is_unchanged(self, workflow_store, make_workflow):
        workflow = make_workflow(TWO_STEP_WORKFLOW)
        before = snapshot_of(workflow)

        workflow_store.update_workflow(workflow.id, None, steps=[MANAGER_STEP])

        assert before.total_steps == 2
        assert before.version == 1
        assert snapshot_of(workflow).total_steps == 1

    def test_deactivate_audits_once(self, workflow_store, audit_ledger, make_workflow):
        workflow = make_workflow()
        workflow_store.deactivate_workflow(workflow.id, None)
        workflow_store.deactivate_workflow(workflow.id, None)
        actions = [e.action for e in audit_ledger.get_resource_audit_history("workflow", workflow.id)]
        assert actions == ["workflow.deactivate"]


class TestAssignments:

    def test_min_above_max_rejected(self, workflow_store, make_workflow):
        workflow = make_workflow()
        with pytest.raises(ValidationError):
            workflow_store.create_assignment(workflow.id, amount_min=Decimal("10"), amount_max=Decimal("5"))

    def test_assignment_for_unknown_workflow(self, workflow_store):
        with pytest.raises(WorkflowNotFoundError):
            workflow_store.create_assignment(uuid4())

    def test_listed_by_priority(self, workflow_store, make_workflow):
        workflow = make_workflow()
        low = workflow_store.create_assignment(workflow.id, priority=1)
        high = workflow_store.create_assignment(workflow.id, priority=5)
        assert [a.id for a in workflow_store.list_assignments(workflow.id)] == [high.id, low.id]


class TestResolver:

    def test_amount_band_assignment_wins_over_default(
        self, seeded_governance, workflow_store, workflow_resolver, make_workflow
    ):
        (default,) = workflow_store.list_active_workflows()
        assert default.name == "Standard Two-Level Approval"
        mid_band = make_workflow(name="Mid Band")
        workflow_store.create_assignment(
            mid_band.id, amount_min=Decimal("1000"), amount_max=Decimal("5000"), priority=10
        )

        assert workflow_resolver.resolve(department_id=None, total_amount=Decimal("1500")).id == mid_band.id
        assert workflow_resolver.resolve(department_id=None, total_amount=Decimal("500")).id == default.id
        assert workflow_resolver.resolve(department_id=None, total_amount=Decimal("5000")).id == mid_band.id
        assert workflow_resolver.resolve(department_id=None, total_amount=Decimal("5000.01")).id == default.id

    def test_priority_then_amount_min(self, workflow_store, workflow_resolver, make_workflow):
        broad = make_workflow(name="Broad")
        narrow = make_workflow(name="Narrow")
        urgent = make_workflow(name="Urgent")
        workflow_store.create_assignment(broad.id, priority=1)
        workflow_store.create_assignment(narrow.id, amount_min=Decimal("100"), priority=1)

        assert workflow_resolver.resolve(department_id=None, total_amount=Decimal("200")).id == narrow.id

        workflow_store.create_assignment(urgent.id, priority=2)
        assert workflow_resolver.resolve(department_id=None, total_amount=Decimal("200")).id == urgent.id

    def test_department_and_category_filters(self, workflow_store, workflow_resolver, make_workflow, make_department):
        eng = make_department()
        travel = make_workflow(name="Eng Travel", conditions={"departments": ["ENG"]})
        workflow_store.create_assignment(travel.id, department_id=eng.id, expense_category="travel")

        hit = workflow_resolver.resolve(
            department_id=eng.id, total_amount=Decimal("50"), expense_categories=["meals", "travel"]
        )
        assert hit.id == travel.id
        assert workflow_resolver.resolve(
            department_id=eng.id, total_amount=Decimal("50"), expense_categories=["meals"]
        ) is None
        assert workflow_resolver.resolve(
            department_id=uuid4(), total_amount=Decimal("50"), expense_categories=["travel"]
        ) is None

    def test_inactive_workflow_skipped(self, workflow_store, workflow_resolver, make_workflow):
        workflow = make_workflow()
        workflow_store.create_assignment(workflow.id)
        workflow_store.deactivate_workflow(workflow.id, None)
        assert workflow_resolver.resolve(department_id=None, total_amount=Decimal("1")) is None

    def test_default_is_earliest_unconditional(self, workflow_resolver, make_workflow):
        make_workflow(name="Large only", conditions={"amount_min": 5000})
        first = make_workflow(name="First")
        make_workflow(name="Second")
        assert workflow_resolver.resolve(department_id=None, total_amount=Decimal("10")).id == first.id

    def test_nothing_configured(self, workflow_resolver):
        assert workflow_resolver.resolve(department_id=None, total_amount=Decimal("10")) is None
