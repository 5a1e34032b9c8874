"""
ApprovalGuard -- self-transaction prevention for report approvals.

Responsibility:
    Decides whether an actor may approve (or reject) a report, records
    approval-history rows, and answers the related access questions: who
    may see a report, who may submit it, and which reports are waiting on
    a given approver.

Architecture position:
    Kernel > Services.  Called by WorkflowEngine while the report row is
    locked.  Reads reports, users, and approval history through selectors.

Invariants enforced (checks run in order, the first failure wins):
    1. direct_self  -- nobody approves their own report.
    2. temporal     -- nobody acts twice on the same report.
    3. same_entity  -- above the threshold, the approver must come from a
                       different department than the report.
    4. circular     -- if the submitter approved one of the approver's
                       reports inside the window, the approver may not
                       approve the submitter's.
    5. reporting chain -- advisory only: logged, never blocks.

Failure modes:
    - ReportNotFoundError when the report does not exist.
    - Denials are returned as ``ApprovalCheckResult`` data; the engine
      raises ApprovalDeniedError.

Audit relevance:
    Every denial is logged at WARNING with its check_type.  History rows
    carry a SHA-256 of the report state at the time of the action.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from expense_kernel.domain.access import (
    AccessCheckResult,
    ApprovalCheckResult,
    ApprovalCheckType,
)
from expense_kernel.domain.clock import Clock
from expense_kernel.domain.report import ApprovalAction, SUBMITTABLE_STATUSES, ReportStatus
from expense_kernel.exceptions import ReportNotFoundError
from expense_kernel.logging_config import get_logger
from expense_kernel.models.approval_history import ApprovalHistory
from expense_kernel.models.expense_report import ExpenseReport
from expense_kernel.selectors.report_selector import ReportSelector
from expense_kernel.selectors.user_selector import DEFAULT_CHAIN_DEPTH, UserSelector
from expense_kernel.services.base import BaseService
from expense_kernel.utils.hashing import hash_payload

logger = get_logger("services.approval_guard")

DEFAULT_SAME_DEPARTMENT_THRESHOLD = Decimal("1000")
DEFAULT_CIRCULAR_WINDOW_DAYS = 30

APPROVER_ROLE = "approver"


def report_state_hash(report: ExpenseReport) -> str:
    """SHA-256 of the report's workflow-relevant state."""
    return hash_payload({
        "id": report.id,
        "user_id": report.user_id,
        "department_id": report.department_id,
        "title": report.title,
        "total_amount": report.total_amount,
        "status": report.status,
        "workflow_id": report.workflow_id,
        "current_step": report.current_step,
        "version": report.version,
        "submitted_at": report.submitted_at,
    })


def _format_amount(amount: Decimal) -> str:
    return format(amount.normalize(), "f")


class ApprovalGuard(BaseService):
    """
    Contract:
        ``can_approve_report`` never writes.  ``record_approval_action``
        flushes one ApprovalHistory row.

    Guarantees:
        - A report's owner is always denied with ``direct_self``.
        - Once an actor has a history row on a report, every later check for
          that pair is denied with ``temporal``.

    Non-goals:
        - Does NOT check permissions; the caller layer does.
        - Does NOT lock the report; WorkflowEngine already holds the lock.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        same_department_threshold: Decimal = DEFAULT_SAME_DEPARTMENT_THRESHOLD,
        circular_window_days: int = DEFAULT_CIRCULAR_WINDOW_DAYS,
        manager_chain_max_depth: int = DEFAULT_CHAIN_DEPTH,
    ):
        super().__init__(session, clock)
        self._reports = ReportSelector(session)
        self._users = UserSelector(session)
        self._threshold = Decimal(same_department_threshold)
        self._window_days = circular_window_days
        self._chain_depth = manager_chain_max_depth

    def can_approve_report(self, approver_id: UUID, report_id: UUID) -> ApprovalCheckResult:
        report = self._reports.get_report(report_id)
        if report is None:
            raise ReportNotFoundError(str(report_id))

        if report.user_id == approver_id:
            return self._deny(
                ApprovalCheckType.DIRECT_SELF,
                "Cannot approve your own expense report",
                approver_id,
                report_id,
            )

        previous = self._reports.last_action_by(report_id, approver_id)
        if previous is not None:
            return self._deny(
                ApprovalCheckType.TEMPORAL,
                "Cannot approve a report you have already acted on "
                f"(previous action: {previous.action})",
                approver_id,
                report_id,
                previous_action=previous.action,
            )

        amount = report.total_amount or Decimal("0")
        if amount > self._threshold and report.department_id is not None:
            approver_department = self._users.get_department_id(approver_id)
            if approver_department is not None and approver_department == report.department_id:
                return self._deny(
                    ApprovalCheckType.SAME_ENTITY,
                    "Cannot approve same-department reports over "
                    f"${_format_amount(self._threshold)}. "
                    "Requires cross-department approval.",
                    approver_id,
                    report_id,
                    amount=amount,
                    department_id=str(report.department_id),
                )

        since = self.clock.now() - timedelta(days=self._window_days)
        if self._reports.has_approved_reports_of(report.user_id, approver_id, since):
            return self._deny(
                ApprovalCheckType.CIRCULAR,
                "Circular approval detected: the report submitter has approved "
                f"your reports within the last {self._window_days} days",
                approver_id,
                report_id,
                submitter_id=str(report.user_id),
            )

        if not self._users.is_in_manager_chain(approver_id, report.user_id, self._chain_depth):
            logger.info(
                "approver_outside_reporting_chain",
                extra={
                    "approver_id": str(approver_id),
                    "report_id": str(report_id),
                    "submitter_id": str(report.user_id),
                },
            )

        return ApprovalCheckResult.allow()

    def _deny(
        self,
        check_type: ApprovalCheckType,
        reason: str,
        approver_id: UUID,
        report_id: UUID,
        **context: Any,
    ) -> ApprovalCheckResult:
        logger.warning(
            "approval_blocked",
            extra={
                "check": check_type.value,
                "approver_id": str(approver_id),
                "report_id": str(report_id),
                **context,
            },
        )
        return ApprovalCheckResult.deny(check_type, reason)

    # =========================================================================
    # History
    # =========================================================================

    def record_approval_action(
        self,
        report: ExpenseReport,
        *,
        step_number: int | None,
        step_name: str | None,
        actor_id: UUID,
        actor_email: str | None,
        action: ApprovalAction,
        comment: str | None = None,
        rejection_category: str | None = None,
        sla_deadline: datetime | None = None,
        was_escalated: bool = False,
    ) -> ApprovalHistory:
        """Append a history row hashing ``report`` as it stands right now."""
        entry = ApprovalHistory(
            report_id=report.id,
            step_number=step_number,
            step_name=step_name,
            actor_id=actor_id,
            actor_email=actor_email,
            action=ApprovalAction(action).value,
            comment=comment,
            rejection_category=rejection_category,
            report_hash=report_state_hash(report),
            sla_deadline=sla_deadline,
            was_escalated=was_escalated,
            created_at=self.clock.now(),
        )
        self.session.add(entry)
        self.session.flush()

        logger.info(
            "approval_action_recorded",
            extra={
                "report_id": str(report.id),
                "step_number": step_number,
                "actor_id": str(actor_id),
                "action": entry.action,
            },
        )
        return entry

    def get_approval_history(self, report_id: UUID) -> list[ApprovalHistory]:
        return self._reports.get_history(report_id)

    # =========================================================================
    # Access questions
    # =========================================================================

    def can_access_report(
        self,
        user_id: UUID,
        report_id: UUID,
        permissions: frozenset[str] | set[str],
    ) -> AccessCheckResult:
        if "report.view.all" in permissions:
            return AccessCheckResult(allowed=True)

        report = self._reports.get_report(report_id)
        if report is None:
            return AccessCheckResult(allowed=False, reason="Report not found")

        if report.user_id == user_id and "report.view.own" in permissions:
            return AccessCheckResult(allowed=True)

        if "report.view.team" in permissions:
            submitter = self._users.get_user(report.user_id)
            if submitter is not None and submitter.manager_id == user_id:
                return AccessCheckResult(allowed=True)

        if "report.view.department" in permissions and report.department_id is not None:
            if self._users.get_department_id(user_id) == report.department_id:
                return AccessCheckResult(allowed=True)

        return AccessCheckResult(
            allowed=False,
            reason="Insufficient permissions to access this report",
        )

    def can_submit_report(self, user_id: UUID, report_id: UUID) -> AccessCheckResult:
        report = self._reports.get_report(report_id)
        if report is None:
            return AccessCheckResult(allowed=False, reason="Report not found")
        if report.user_id != user_id:
            return AccessCheckResult(allowed=False, reason="Can only submit your own reports")
        if ReportStatus(report.status) not in SUBMITTABLE_STATUSES:
            return AccessCheckResult(
                allowed=False,
                reason=f"Cannot submit report in {report.status} status",
            )
        if self._reports.count_lines(report_id) == 0:
            return AccessCheckResult(
                allowed=False,
                reason="Report must have at least one expense line",
            )
        return AccessCheckResult(allowed=True)

    def get_pending_approvals_for_user(
        self,
        user_id: UUID,
        user_roles: tuple[str, ...] | list[str],
    ) -> list[ExpenseReport]:
        """
        In-flight reports this user could act on, oldest submission first.

        A report qualifies when the user is the submitter's direct manager,
        or holds the approver role in the submitter's department.  Own
        reports and reports the user already acted on are excluded.
        """
        candidates = self._reports.in_flight_reports(exclude_user_id=user_id)
        if not candidates:
            return []

        acted_on = self._reports.reports_acted_on_by(user_id)
        submitters = {
            u.id: u for u in self._users.get_users(list({r.user_id for r in candidates}))
        }
        is_approver = APPROVER_ROLE in user_roles
        own_department = self._users.get_department_id(user_id) if is_approver else None

        pending = []
        for report in candidates:
            if report.id in acted_on:
                continue
            submitter = submitters.get(report.user_id)
            if submitter is None:
                continue
            if submitter.manager_id == user_id:
                pending.append(report)
            elif own_department is not None and submitter.department_id == own_department:
                pending.append(report)
        return pending
