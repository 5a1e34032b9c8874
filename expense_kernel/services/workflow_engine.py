"""
WorkflowEngine -- the expense report approval state machine.

Responsibility:
    Drives a report through submit, approve, reject, return, and withdraw.
    Each transition locks the report row, checks the source status, records
    approval history where applicable, bumps ``version``, and appends one
    audit entry, all inside a single transaction.

Architecture position:
    Kernel > Services.  Top of the kernel dependency graph: composes
    ApprovalGuard, WorkflowResolver, AuditLedger, and the routing engine.
    Permission checks belong to the caller layer (expense_services).

Invariants enforced:
    - The report row is locked (SELECT ... FOR UPDATE) before status or
      current_step is read.
    - Status moves only along REPORT_TRANSITIONS.
    - ApprovalGuard runs before approve and reject, never before return.
    - The workflow snapshot taken at submit time is the only definition an
      in-flight report is routed through.
    - Every successful transition writes exactly one audit entry.

Failure modes:
    - ReportNotFoundError, ReportOwnershipError, ApprovalDeniedError,
      InvalidReportTransitionError, NoWorkflowConfiguredError,
      InvalidWorkflowStepError.  With ``auto_commit=True`` the session is
      rolled back before the exception propagates.

Audit relevance:
    Audit actions: report.submit, report.approve, report.reject,
    report.return, report.withdraw (category ``workflow``, resource type
    ``expense_report``).
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from expense_engines.routing import next_applicable_step
from expense_kernel.domain.clock import Clock, SystemClock
from expense_kernel.domain.report import (
    ApprovalAction,
    ApprovalOutcome,
    ReportFacts,
    ReportStatus,
    WorkflowAction,
    can_start,
)
from expense_kernel.domain.workflow import ReturnPolicy, WorkflowSnapshot
from expense_kernel.exceptions import (
    ApprovalDeniedError,
    InvalidReportTransitionError,
    InvalidWorkflowStepError,
    NoWorkflowConfiguredError,
    ReportNotFoundError,
    ReportOwnershipError,
)
from expense_kernel.logging_config import LogContext, get_logger
from expense_kernel.models.expense_report import ExpenseReport
from expense_kernel.selectors.report_selector import ReportSelector
from expense_kernel.services.approval_guard import ApprovalGuard
from expense_kernel.services.audit_ledger import AuditLedger
from expense_kernel.services.workflow_definitions import WorkflowResolver, snapshot_of
from expense_kernel.utils.hashing import to_json_safe

logger = get_logger("services.workflow_engine")

T = TypeVar("T")

AUDIT_CATEGORY = "workflow"
RESOURCE_TYPE = "expense_report"


class WorkflowEngine:
    """
    Contract:
        One public method per workflow operation.  Each either completes the
        whole transition or changes nothing.

    Guarantees:
        - With ``auto_commit=True`` (default) the session is committed on
          success and rolled back on any exception.
        - With ``auto_commit=False`` the engine only flushes; the caller owns
          the transaction boundary.

    Non-goals:
        - Does NOT check role permissions (see expense_services.report_workflow).
        - Does NOT post approved reports to the ledger.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        audit_ledger: AuditLedger | None = None,
        approval_guard: ApprovalGuard | None = None,
        resolver: WorkflowResolver | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._audit = audit_ledger or AuditLedger(session, self._clock)
        self._guard = approval_guard or ApprovalGuard(session, self._clock)
        self._resolver = resolver or WorkflowResolver(session)
        self._reports = ReportSelector(session)
        self._auto_commit = auto_commit

    # =========================================================================
    # Transaction wrapper
    # =========================================================================

    def _run(
        self,
        operation: str,
        report_id: UUID,
        actor_id: UUID,
        body: Callable[[], T],
    ) -> T:
        with LogContext.bind(
            correlation_id=str(uuid4()),
            report_id=str(report_id),
            actor_id=str(actor_id),
        ):
            logger.info(f"report_{operation}_started")
            t0 = time.monotonic()
            try:
                result = body()
                if self._auto_commit:
                    self._session.commit()
                duration_ms = round((time.monotonic() - t0) * 1000, 2)
                logger.info(
                    f"report_{operation}_completed",
                    extra={"duration_ms": duration_ms},
                )
                return result
            except Exception:
                duration_ms = round((time.monotonic() - t0) * 1000, 2)
                if self._auto_commit:
                    self._session.rollback()
                logger.error(
                    f"report_{operation}_failed",
                    extra={"duration_ms": duration_ms},
                    exc_info=True,
                )
                raise

    # =========================================================================
    # Helpers
    # =========================================================================

    def _lock_report(self, report_id: UUID) -> ExpenseReport:
        report = self._reports.get_report(report_id, for_update=True)
        if report is None:
            raise ReportNotFoundError(str(report_id))
        return report

    @staticmethod
    def _require_source_status(report: ExpenseReport, action: WorkflowAction) -> None:
        if not can_start(action, report.status):
            raise InvalidReportTransitionError(str(report.id), action.value, report.status)

    def _facts(self, report: ExpenseReport) -> ReportFacts:
        return ReportFacts(
            report_id=report.id,
            user_id=report.user_id,
            department_id=report.department_id,
            status=report.status,
            total_amount=report.total_amount,
            current_step=report.current_step,
            expense_categories=self._reports.line_categories(report.id),
        )

    @staticmethod
    def _snapshot(report: ExpenseReport) -> WorkflowSnapshot | None:
        if not report.workflow_snapshot:
            return None
        return WorkflowSnapshot.from_dict(report.workflow_snapshot)

    def _guard_approver(self, report: ExpenseReport, approver_id: UUID) -> None:
        check = self._guard.can_approve_report(approver_id, report.id)
        if not check.allowed:
            raise ApprovalDeniedError(
                str(report.id),
                str(approver_id),
                check.reason or "Cannot approve this report",
                check.check_type.value if check.check_type else None,
            )

    def _audit_transition(
        self,
        report: ExpenseReport,
        *,
        action: str,
        actor_id: UUID,
        from_status: str,
        metadata: dict[str, Any],
        actor_email: str | None = None,
    ) -> None:
        self._audit.log_audit_event(
            actor_id=actor_id,
            actor_email=actor_email,
            action=action,
            action_category=AUDIT_CATEGORY,
            resource_type=RESOURCE_TYPE,
            resource_id=report.id,
            resource_version=report.version,
            changes={"status": {"from": from_status, "to": report.status}},
            metadata=metadata,
        )

    # =========================================================================
    # Submit
    # =========================================================================

    def submit_report(self, report_id: UUID, user_id: UUID) -> ExpenseReport:
        """
        Submit a draft or returned report for approval.

        Postconditions:
            - status is ``submitted`` and ``workflow_snapshot`` holds the
              resolved definition by value.
            - ``current_step`` is 1.

        Raises:
            ReportOwnershipError: ``user_id`` does not own the report.
            InvalidReportTransitionError: report is not draft or returned.
            NoWorkflowConfiguredError: no assignment or default workflow fits.
        """
        return self._run("submit", report_id, user_id, lambda: self._submit(report_id, user_id))

    def _submit(self, report_id: UUID, user_id: UUID) -> ExpenseReport:
        report = self._lock_report(report_id)
        if report.user_id != user_id:
            raise ReportOwnershipError(str(report_id), str(user_id), "submit")
        self._require_source_status(report, WorkflowAction.SUBMIT)

        from_status = report.status
        report.total_amount = self._reports.sum_line_amounts(report_id)

        # a soft-restart return keeps the original snapshot
        snapshot = self._snapshot(report)
        if snapshot is None:
            workflow = self._resolver.resolve(
                department_id=report.department_id,
                total_amount=report.total_amount,
                expense_categories=self._reports.line_categories(report_id),
            )
            if workflow is None:
                raise NoWorkflowConfiguredError(str(report_id))
            snapshot = snapshot_of(workflow)
            report.workflow_id = workflow.id
            report.workflow_snapshot = to_json_safe(snapshot.to_dict())

        report.status = ReportStatus.SUBMITTED.value
        report.current_step = 1
        report.submitted_at = self._clock.now()
        report.version += 1
        self._session.flush()

        self._audit_transition(
            report,
            action="report.submit",
            actor_id=user_id,
            from_status=from_status,
            metadata={
                "workflow_id": str(snapshot.workflow_id),
                "workflow_name": snapshot.name,
                "total_amount": report.total_amount,
            },
        )

        logger.info(
            "report_submitted",
            extra={
                "workflow_id": str(snapshot.workflow_id),
                "workflow_version": snapshot.version,
                "current_step": report.current_step,
                "total_amount": str(report.total_amount),
            },
        )
        return report

    # =========================================================================
    # Approve / reject
    # =========================================================================

    def approve_report(
        self,
        report_id: UUID,
        approver_id: UUID,
        approver_email: str | None = None,
        comment: str | None = None,
    ) -> ApprovalOutcome:
        """
        Approve the report's current step.

        Routing skips every later step whose conditions say it does not
        apply.  When no step is left the report is ``approved``; otherwise
        it is ``pending`` at the next applicable step.

        Raises:
            ApprovalDeniedError: ApprovalGuard refused the approver.
            InvalidReportTransitionError: report is not submitted or pending.
            InvalidWorkflowStepError: current_step is not in the snapshot.
        """
        return self._run(
            "approve",
            report_id,
            approver_id,
            lambda: self._approve(report_id, approver_id, approver_email, comment),
        )

    def _approve(
        self,
        report_id: UUID,
        approver_id: UUID,
        approver_email: str | None,
        comment: str | None,
    ) -> ApprovalOutcome:
        report = self._lock_report(report_id)
        self._guard_approver(report, approver_id)
        self._require_source_status(report, WorkflowAction.APPROVE)

        current_step = report.current_step or 1
        snapshot = self._snapshot(report)
        step = snapshot.step(current_step) if snapshot is not None else None
        if step is None:
            raise InvalidWorkflowStepError(str(report_id), current_step)

        self._guard.record_approval_action(
            report,
            step_number=current_step,
            step_name=step.name,
            actor_id=approver_id,
            actor_email=approver_email,
            action=ApprovalAction.APPROVE,
            comment=comment,
        )

        from_status = report.status
        upcoming = next_applicable_step(
            snapshot=snapshot,
            facts=self._facts(report),
            after_step=current_step,
        )
        is_fully_approved = upcoming is None
        if is_fully_approved:
            report.status = ReportStatus.APPROVED.value
            report.approved_at = self._clock.now()
        else:
            report.status = ReportStatus.PENDING.value
            report.current_step = upcoming.step_number
        report.version += 1
        self._session.flush()

        self._audit_transition(
            report,
            action="report.approve",
            actor_id=approver_id,
            actor_email=approver_email,
            from_status=from_status,
            metadata={
                "step_number": current_step,
                "step_name": step.name,
                "is_fully_approved": is_fully_approved,
                "comment": comment,
            },
        )

        outcome = ApprovalOutcome(
            report_id=report.id,
            is_fully_approved=is_fully_approved,
            next_step=None if is_fully_approved else upcoming.step_number,
            status=ReportStatus(report.status),
        )
        logger.info(
            "report_approved",
            extra={
                "step_number": current_step,
                "is_fully_approved": is_fully_approved,
                "next_step": outcome.next_step,
            },
        )
        return outcome

    def reject_report(
        self,
        report_id: UUID,
        approver_id: UUID,
        approver_email: str | None = None,
        comment: str | None = None,
        rejection_category: str | None = None,
    ) -> ExpenseReport:
        """Reject the report.  ``rejected`` is terminal."""
        return self._run(
            "reject",
            report_id,
            approver_id,
            lambda: self._reject(
                report_id, approver_id, approver_email, comment, rejection_category
            ),
        )

    def _reject(
        self,
        report_id: UUID,
        approver_id: UUID,
        approver_email: str | None,
        comment: str | None,
        rejection_category: str | None,
    ) -> ExpenseReport:
        report = self._lock_report(report_id)
        self._guard_approver(report, approver_id)
        self._require_source_status(report, WorkflowAction.REJECT)

        current_step = report.current_step or 1
        snapshot = self._snapshot(report)
        step = snapshot.step(current_step) if snapshot is not None else None

        self._guard.record_approval_action(
            report,
            step_number=current_step,
            step_name=step.name if step is not None else f"Step {current_step}",
            actor_id=approver_id,
            actor_email=approver_email,
            action=ApprovalAction.REJECT,
            comment=comment,
            rejection_category=rejection_category,
        )

        from_status = report.status
        report.status = ReportStatus.REJECTED.value
        report.version += 1
        self._session.flush()

        self._audit_transition(
            report,
            action="report.reject",
            actor_id=approver_id,
            actor_email=approver_email,
            from_status=from_status,
            metadata={
                "step_number": current_step,
                "comment": comment,
                "rejection_category": rejection_category,
            },
        )
        logger.info(
            "report_rejected",
            extra={"step_number": current_step, "rejection_category": rejection_category},
        )
        return report

    # =========================================================================
    # Return / withdraw
    # =========================================================================

    def return_report(
        self,
        report_id: UUID,
        approver_id: UUID,
        approver_email: str | None = None,
        comment: str | None = None,
    ) -> ExpenseReport:
        """
        Send the report back to its owner for corrections.

        ``hard_restart`` clears progress and the snapshot, so the next submit
        resolves the workflow again.  ``soft_restart`` keeps the snapshot and
        restarts at step 1.
        """
        return self._run(
            "return",
            report_id,
            approver_id,
            lambda: self._return(report_id, approver_id, approver_email, comment),
        )

    def _return(
        self,
        report_id: UUID,
        approver_id: UUID,
        approver_email: str | None,
        comment: str | None,
    ) -> ExpenseReport:
        report = self._lock_report(report_id)
        self._require_source_status(report, WorkflowAction.RETURN)

        current_step = report.current_step or 1
        snapshot = self._snapshot(report)
        step = snapshot.step(current_step) if snapshot is not None else None

        self._guard.record_approval_action(
            report,
            step_number=current_step,
            step_name=step.name if step is not None else f"Step {current_step}",
            actor_id=approver_id,
            actor_email=approver_email,
            action=ApprovalAction.RETURN,
            comment=comment,
        )

        policy = snapshot.on_return_policy if snapshot is not None else ReturnPolicy.HARD_RESTART
        from_status = report.status
        report.status = ReportStatus.RETURNED.value
        if policy is ReturnPolicy.HARD_RESTART:
            report.current_step = None
            report.workflow_snapshot = None
        else:
            report.current_step = 1
        report.version += 1
        self._session.flush()

        self._audit_transition(
            report,
            action="report.return",
            actor_id=approver_id,
            actor_email=approver_email,
            from_status=from_status,
            metadata={
                "step_number": current_step,
                "comment": comment,
                "return_policy": policy.value,
            },
        )
        logger.info(
            "report_returned",
            extra={"step_number": current_step, "return_policy": policy.value},
        )
        return report

    def withdraw_report(self, report_id: UUID, user_id: UUID) -> ExpenseReport:
        """Owner pulls an in-flight report back to draft."""
        return self._run(
            "withdraw", report_id, user_id, lambda: self._withdraw(report_id, user_id)
        )

    def _withdraw(self, report_id: UUID, user_id: UUID) -> ExpenseReport:
        report = self._lock_report(report_id)
        if report.user_id != user_id:
            raise ReportOwnershipError(str(report_id), str(user_id), "withdraw")
        self._require_source_status(report, WorkflowAction.WITHDRAW)

        from_status = report.status
        report.status = ReportStatus.DRAFT.value
        report.current_step = None
        report.workflow_id = None
        report.workflow_snapshot = None
        report.submitted_at = None
        report.version += 1
        self._session.flush()

        self._audit_transition(
            report,
            action="report.withdraw",
            actor_id=user_id,
            from_status=from_status,
            metadata={},
        )
        logger.info("report_withdrawn")
        return report

    # =========================================================================
    # Status
    # =========================================================================

    def get_report_workflow_status(self, report_id: UUID) -> dict[str, Any]:
        report = self._reports.get_report(report_id)
        if report is None:
            raise ReportNotFoundError(str(report_id))

        snapshot = self._snapshot(report)
        return {
            "status": report.status,
            "current_step": report.current_step,
            "total_steps": snapshot.total_steps if snapshot is not None else 0,
            "workflow": report.workflow_snapshot,
            "history": self._guard.get_approval_history(report_id),
        }
