"""
Workflow definitions -- versioned storage and report-to-workflow resolution.

Responsibility:
    ``WorkflowDefinitionStore`` validates and persists approval workflow
    definitions and their routing assignments.  ``WorkflowResolver`` picks
    the definition a report is submitted against.

Architecture position:
    Kernel > Services.  The store writes through the caller's session and
    audits edits through AuditLedger.  The resolver is read-only and is
    called by WorkflowEngine at submit time.

Invariants enforced:
    - Steps are validated before every write: contiguous numbering from 1,
      known condition fields and operators, list values for in / not_in.
    - ``version`` starts at 1 and increases by exactly one per edit.
    - Resolution order: active assignments on active workflows, ordered by
      priority DESC then amount_min DESC NULLS LAST; otherwise the
      earliest-created active unconditional workflow.

Failure modes:
    - InvalidWorkflowDefinitionError listing every validation problem.
    - WorkflowNotFoundError for unknown ids.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from expense_kernel.domain.clock import Clock
from expense_kernel.domain.workflow import (
    ReturnPolicy,
    WorkflowDefinitionInvalid,
    WorkflowSnapshot,
    parse_conditions,
    parse_steps,
)
from expense_kernel.exceptions import (
    InvalidWorkflowDefinitionError,
    ValidationError,
    WorkflowNotFoundError,
)
from expense_kernel.logging_config import get_logger
from expense_kernel.models.workflow import WorkflowAssignmentModel, WorkflowDefinitionModel
from expense_kernel.services.audit_ledger import AuditLedger
from expense_kernel.services.base import BaseService
from expense_kernel.utils.hashing import to_json_safe

logger = get_logger("services.workflow_definitions")


def _normalize_definition(
    steps: list[dict[str, Any]],
    conditions: Mapping[str, Any] | None,
    on_return_policy: str,
) -> tuple[list[dict[str, Any]], dict[str, Any], str]:
    errors: list[str] = []
    parsed_steps: list[dict[str, Any]] = []
    try:
        parsed_steps = [s.to_dict() for s in parse_steps(list(steps or []))]
    except WorkflowDefinitionInvalid as exc:
        errors.extend(exc.errors)

    normalized_conditions: dict[str, Any] = {}
    try:
        normalized_conditions = parse_conditions(dict(conditions or {})).to_dict()
    except (ArithmeticError, ValueError) as exc:
        errors.append(f"conditions: {exc}")

    try:
        policy = ReturnPolicy(on_return_policy).value
    except ValueError:
        errors.append(f"unknown on_return_policy {on_return_policy!r}")
        policy = ReturnPolicy.HARD_RESTART.value

    if errors:
        raise InvalidWorkflowDefinitionError(errors)
    return to_json_safe(parsed_steps), normalized_conditions, policy


def snapshot_of(definition: WorkflowDefinitionModel) -> WorkflowSnapshot:
    """By-value snapshot of ``definition`` as it stands now."""
    return WorkflowSnapshot.from_dict({
        "id": definition.id,
        "name": definition.name,
        "version": definition.version,
        "steps": definition.steps,
        "on_return_policy": definition.on_return_policy,
    })


class WorkflowDefinitionStore(BaseService):
    """
    Contract:
        Create, edit, deactivate, and look up workflow definitions and
        assignments.  Flushes only.

    Guarantees:
        - A stored definition always parses.
        - Editing a definition never touches the snapshots in-flight reports
          carry.
    """

    def __init__(
        self,
        session: Session,
        audit_ledger: AuditLedger,
        clock: Clock | None = None,
    ):
        super().__init__(session, clock)
        self._audit = audit_ledger

    def get_workflow(self, workflow_id: UUID) -> WorkflowDefinitionModel:
        workflow = self.session.get(WorkflowDefinitionModel, workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(str(workflow_id))
        return workflow

    def list_active_workflows(self) -> list[WorkflowDefinitionModel]:
        return list(
            self.session.execute(
                select(WorkflowDefinitionModel)
                .where(WorkflowDefinitionModel.is_active.is_(True))
                .order_by(WorkflowDefinitionModel.name)
            ).scalars()
        )

    def create_workflow(
        self,
        name: str,
        steps: list[dict[str, Any]],
        description: str | None = None,
        conditions: Mapping[str, Any] | None = None,
        on_return_policy: str = ReturnPolicy.HARD_RESTART.value,
        created_by: UUID | None = None,
    ) -> WorkflowDefinitionModel:
        if not name:
            raise InvalidWorkflowDefinitionError(["workflow name is required"])
        stored_steps, stored_conditions, policy = _normalize_definition(
            steps, conditions, on_return_policy
        )

        workflow = WorkflowDefinitionModel(
            name=name,
            description=description,
            version=1,
            is_active=True,
            conditions=stored_conditions,
            steps=stored_steps,
            on_return_policy=policy,
            created_by=created_by,
            created_at=self.clock.now(),
        )
        self.session.add(workflow)
        self.session.flush()

        logger.info(
            "workflow_created",
            extra={
                "workflow_id": str(workflow.id),
                "workflow_name": name,
                "step_count": len(stored_steps),
            },
        )
        return workflow

    def update_workflow(
        self,
        workflow_id: UUID,
        updated_by: UUID | None,
        description: str | None = None,
        conditions: Mapping[str, Any] | None = None,
        steps: list[dict[str, Any]] | None = None,
        on_return_policy: str | None = None,
    ) -> WorkflowDefinitionModel:
        """Merge the given fields, bump ``version``, and audit the edit."""
        workflow = self.get_workflow(workflow_id)

        stored_steps, stored_conditions, policy = _normalize_definition(
            steps if steps is not None else workflow.steps,
            conditions if conditions is not None else workflow.conditions,
            on_return_policy or workflow.on_return_policy,
        )

        previous_version = workflow.version
        if description is not None:
            workflow.description = description
        workflow.steps = stored_steps
        workflow.conditions = stored_conditions
        workflow.on_return_policy = policy
        workflow.version = previous_version + 1
        workflow.updated_at = self.clock.now()
        self.session.flush()

        self._audit.log_audit_event(
            actor_id=updated_by,
            action="workflow.update",
            action_category="workflow",
            resource_type="workflow",
            resource_id=workflow.id,
            resource_version=workflow.version,
            changes={"version": {"from": previous_version, "to": workflow.version}},
        )

        logger.info(
            "workflow_updated",
            extra={
                "workflow_id": str(workflow.id),
                "from_version": previous_version,
                "to_version": workflow.version,
            },
        )
        return workflow

    def deactivate_workflow(
        self,
        workflow_id: UUID,
        deactivated_by: UUID | None,
    ) -> WorkflowDefinitionModel:
        workflow = self.get_workflow(workflow_id)
        if not workflow.is_active:
            return workflow

        workflow.is_active = False
        workflow.updated_at = self.clock.now()
        self.session.flush()

        self._audit.log_audit_event(
            actor_id=deactivated_by,
            action="workflow.deactivate",
            action_category="workflow",
            resource_type="workflow",
            resource_id=workflow.id,
            resource_version=workflow.version,
            changes={"is_active": {"from": True, "to": False}},
        )
        return workflow

    # =========================================================================
    # Assignments
    # =========================================================================

    def create_assignment(
        self,
        workflow_id: UUID,
        department_id: UUID | None = None,
        expense_category: str | None = None,
        amount_min: Decimal | None = None,
        amount_max: Decimal | None = None,
        priority: int = 0,
    ) -> WorkflowAssignmentModel:
        self.get_workflow(workflow_id)
        if amount_min is not None and amount_max is not None and amount_min > amount_max:
            raise ValidationError("amount_min must not exceed amount_max")

        assignment = WorkflowAssignmentModel(
            workflow_id=workflow_id,
            department_id=department_id,
            expense_category=expense_category,
            amount_min=amount_min,
            amount_max=amount_max,
            priority=priority,
            is_active=True,
            created_at=self.clock.now(),
        )
        self.session.add(assignment)
        self.session.flush()
        return assignment

    def list_assignments(
        self,
        workflow_id: UUID | None = None,
        active_only: bool = True,
    ) -> list[WorkflowAssignmentModel]:
        stmt = select(WorkflowAssignmentModel)
        if workflow_id is not None:
            stmt = stmt.where(WorkflowAssignmentModel.workflow_id == workflow_id)
        if active_only:
            stmt = stmt.where(WorkflowAssignmentModel.is_active.is_(True))
        return list(
            self.session.execute(
                stmt.order_by(
                    WorkflowAssignmentModel.priority.desc(),
                    WorkflowAssignmentModel.created_at,
                )
            ).scalars()
        )


class WorkflowResolver:
    """Selects the workflow definition a report is routed through."""

    def __init__(self, session: Session):
        self._session = session

    def resolve(
        self,
        *,
        department_id: UUID | None,
        total_amount: Decimal,
        expense_categories: Iterable[str] = (),
    ) -> WorkflowDefinitionModel | None:
        wa = WorkflowAssignmentModel
        wd = WorkflowDefinitionModel
        categories = sorted(set(expense_categories))

        workflow = self._session.execute(
            select(wd)
            .join(wa, wa.workflow_id == wd.id)
            .where(
                wa.is_active.is_(True),
                wd.is_active.is_(True),
                or_(wa.department_id.is_(None), wa.department_id == department_id),
                or_(wa.expense_category.is_(None), wa.expense_category.in_(categories)),
                or_(wa.amount_min.is_(None), wa.amount_min <= total_amount),
                or_(wa.amount_max.is_(None), wa.amount_max >= total_amount),
            )
            .order_by(wa.priority.desc(), wa.amount_min.desc().nulls_last())
            .limit(1)
        ).scalar_one_or_none()

        if workflow is not None:
            logger.debug(
                "workflow_resolved_by_assignment",
                extra={"workflow_id": str(workflow.id), "total_amount": total_amount},
            )
            return workflow

        return self._default_workflow()

    def _default_workflow(self) -> WorkflowDefinitionModel | None:
        candidates = self._session.execute(
            select(WorkflowDefinitionModel)
            .where(WorkflowDefinitionModel.is_active.is_(True))
            .order_by(WorkflowDefinitionModel.created_at, WorkflowDefinitionModel.id)
        ).scalars()
        for candidate in candidates:
            if parse_conditions(candidate.conditions).is_unconditional:
                logger.debug(
                    "workflow_resolved_by_default",
                    extra={"workflow_id": str(candidate.id)},
                )
                return candidate
        return None
