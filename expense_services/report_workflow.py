"""
expense_services.report_workflow -- Permission-checked workflow entry points.

Responsibility:
    The public face of WorkflowEngine.  Resolves the actor's auth context,
    checks the permission the action requires (per governance config), and
    then delegates to the engine, which owns locking, guard checks, history,
    and audit.

Architecture position:
    Services layer.  Builds the kernel services with thresholds from
    expense_config so the kernel never reads configuration itself.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from expense_config.schema import GovernanceConfig
from expense_kernel.domain.access import UserAuthContext
from expense_kernel.domain.clock import Clock, SystemClock
from expense_kernel.domain.report import ApprovalOutcome
from expense_kernel.exceptions import InsufficientPermissionError
from expense_kernel.models.expense_report import ExpenseReport
from expense_kernel.services.approval_guard import ApprovalGuard
from expense_kernel.services.audit_ledger import AuditLedger
from expense_kernel.services.permission_registry import PermissionRegistry
from expense_kernel.services.workflow_engine import WorkflowEngine
from expense_services.rbac_authority import get_permission_for_action, require_permission


def build_approval_guard(
    session: Session,
    clock: Clock,
    config: GovernanceConfig | None,
) -> ApprovalGuard:
    if config is None:
        return ApprovalGuard(session, clock)
    settings = config.approval_guard
    return ApprovalGuard(
        session,
        clock,
        same_department_threshold=settings.same_department_threshold,
        circular_window_days=settings.circular_window_days,
        manager_chain_max_depth=settings.manager_chain_max_depth,
    )


class ReportWorkflowService:
    """
    Contract:
        Same operations as WorkflowEngine, plus an actor permission check in
        front of each.  ``InsufficientPermissionError`` is raised before the
        engine is touched.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: GovernanceConfig | None = None,
        auto_commit: bool = True,
    ):
        self._clock = clock or SystemClock()
        self._registry = PermissionRegistry(session, self._clock)
        self._guard = build_approval_guard(session, self._clock, config)
        self._audit = AuditLedger(
            session,
            self._clock,
            sensitive_actions=config.audit.sensitive_actions if config else None,
        )
        self._engine = WorkflowEngine(
            session,
            clock=self._clock,
            audit_ledger=self._audit,
            approval_guard=self._guard,
            auto_commit=auto_commit,
        )
        self._action_permissions = config.workflow_action_permissions if config else None

    @property
    def engine(self) -> WorkflowEngine:
        return self._engine

    def _authorize(self, actor_id: UUID, action: str) -> UserAuthContext:
        context = self._registry.get_user_auth_context(actor_id)
        permission = get_permission_for_action(action, self._action_permissions)
        if context is None:
            raise InsufficientPermissionError(
                str(actor_id), permission or action, "Unknown or inactive user"
            )
        if permission is not None:
            require_permission(actor_id, context.permissions, permission)
        return context

    def submit_report(self, report_id: UUID, actor_id: UUID) -> ExpenseReport:
        self._authorize(actor_id, "submit")
        return self._engine.submit_report(report_id, actor_id)

    def approve_report(
        self,
        report_id: UUID,
        actor_id: UUID,
        comment: str | None = None,
    ) -> ApprovalOutcome:
        context = self._authorize(actor_id, "approve")
        return self._engine.approve_report(report_id, actor_id, context.email, comment)

    def reject_report(
        self,
        report_id: UUID,
        actor_id: UUID,
        comment: str | None = None,
        rejection_category: str | None = None,
    ) -> ExpenseReport:
        context = self._authorize(actor_id, "reject")
        return self._engine.reject_report(
            report_id, actor_id, context.email, comment, rejection_category
        )

    def return_report(
        self,
        report_id: UUID,
        actor_id: UUID,
        comment: str | None = None,
    ) -> ExpenseReport:
        context = self._authorize(actor_id, "return")
        return self._engine.return_report(report_id, actor_id, context.email, comment)

    def withdraw_report(self, report_id: UUID, actor_id: UUID) -> ExpenseReport:
        self._authorize(actor_id, "withdraw")
        return self._engine.withdraw_report(report_id, actor_id)

    def get_report_workflow_status(self, report_id: UUID, actor_id: UUID) -> dict[str, Any]:
        context = self._registry.get_user_auth_context(actor_id)
        permissions = context.permissions if context is not None else frozenset()
        access = self._guard.can_access_report(actor_id, report_id, permissions)
        if not access.allowed:
            # same refusal whether or not the report exists
            raise InsufficientPermissionError(
                str(actor_id), "report.view", "Insufficient permissions to access this report"
            )
        return self._engine.get_report_workflow_status(report_id)

    def get_pending_approvals(self, actor_id: UUID) -> list[ExpenseReport]:
        context = self._authorize(actor_id, "approve")
        return self._guard.get_pending_approvals_for_user(actor_id, context.roles)
