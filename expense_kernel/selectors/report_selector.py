"""
Module: expense_kernel.selectors.report_selector
Responsibility: Read access to expense reports, their lines, and their
    approval history.
Architecture position: Kernel > Selectors.

get_report(for_update=True) is the locking read every workflow transition
starts with.  It returns the ORM row because the caller mutates it while
holding the lock.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from expense_kernel.domain.report import IN_FLIGHT_STATUSES
from expense_kernel.models.approval_history import ApprovalHistory
from expense_kernel.models.expense_report import ExpenseLine, ExpenseReport
from expense_kernel.selectors.base import BaseSelector


class ReportSelector(BaseSelector):

    def get_report(self, report_id: UUID, for_update: bool = False) -> ExpenseReport | None:
        stmt = select(ExpenseReport).where(ExpenseReport.id == report_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.execute(stmt).scalar_one_or_none()

    def sum_line_amounts(self, report_id: UUID) -> Decimal:
        total = self.session.execute(
            select(func.coalesce(func.sum(ExpenseLine.amount), 0)).where(
                ExpenseLine.report_id == report_id
            )
        ).scalar_one()
        return Decimal(str(total))

    def count_lines(self, report_id: UUID) -> int:
        return self.session.execute(
            select(func.count(ExpenseLine.id)).where(ExpenseLine.report_id == report_id)
        ).scalar_one()

    def line_categories(self, report_id: UUID) -> tuple[str, ...]:
        rows = self.session.execute(
            select(ExpenseLine.category)
            .where(ExpenseLine.report_id == report_id, ExpenseLine.category.is_not(None))
            .distinct()
            .order_by(ExpenseLine.category)
        ).scalars()
        return tuple(rows)

    def get_history(self, report_id: UUID) -> list[ApprovalHistory]:
        """Approval history oldest first."""
        return list(
            self.session.execute(
                select(ApprovalHistory)
                .where(ApprovalHistory.report_id == report_id)
                .order_by(ApprovalHistory.created_at, ApprovalHistory.id)
            ).scalars()
        )

    def last_action_by(self, report_id: UUID, actor_id: UUID) -> ApprovalHistory | None:
        return self.session.execute(
            select(ApprovalHistory)
            .where(
                ApprovalHistory.report_id == report_id,
                ApprovalHistory.actor_id == actor_id,
            )
            .order_by(ApprovalHistory.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def has_approved_reports_of(
        self,
        actor_id: UUID,
        report_owner_id: UUID,
        since: datetime,
    ) -> bool:
        """Did ``actor_id`` approve any report owned by ``report_owner_id`` after ``since``."""
        hit = self.session.execute(
            select(ApprovalHistory.id)
            .join(ExpenseReport, ExpenseReport.id == ApprovalHistory.report_id)
            .where(
                ApprovalHistory.actor_id == actor_id,
                ApprovalHistory.action == "approve",
                ExpenseReport.user_id == report_owner_id,
                ApprovalHistory.created_at > since,
            )
            .limit(1)
        ).first()
        return hit is not None

    def in_flight_reports(self, exclude_user_id: UUID | None = None) -> list[ExpenseReport]:
        stmt = select(ExpenseReport).where(
            ExpenseReport.status.in_([s.value for s in IN_FLIGHT_STATUSES])
        )
        if exclude_user_id is not None:
            stmt = stmt.where(ExpenseReport.user_id != exclude_user_id)
        return list(
            self.session.execute(stmt.order_by(ExpenseReport.submitted_at)).scalars()
        )

    def reports_acted_on_by(self, actor_id: UUID) -> set[UUID]:
        return set(
            self.session.execute(
                select(ApprovalHistory.report_id)
                .where(ApprovalHistory.actor_id == actor_id)
                .distinct()
            ).scalars()
        )
