"""
Module: expense_kernel.models.expense_report
Responsibility: ORM persistence for expense reports and their line items.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - status is a ReportStatus value; only WorkflowEngine changes it.
    - version increments on every workflow transition.
    - workflow_snapshot is write-once while in flight: it may be cleared
      (withdraw, hard-restart return) but never replaced by a different
      definition (ORM listener in db/immutability.py).
    - total_amount is recomputed from the lines at submit time.

Failure modes:
    - ImmutabilityViolationError when replacing a non-null snapshot.

Audit relevance:
    The report row is the unit of mutual exclusion: every transition locks it
    with SELECT ... FOR UPDATE before reading status or current_step.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from expense_kernel.db.base import TimestampedBase, UTCDateTime, UUIDString
from expense_kernel.domain.report import ReportStatus


class ExpenseReport(TimestampedBase):
    __tablename__ = "expense_reports"

    user_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    department_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("departments.id"),
        nullable=True,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0")
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ReportStatus.DRAFT.value,
        index=True,
    )

    workflow_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_definitions.id"),
        nullable=True,
    )
    workflow_snapshot: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    current_step: Mapped[int | None] = mapped_column(Integer, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    lines: Mapped[list["ExpenseLine"]] = relationship(
        back_populates="report",
        order_by="ExpenseLine.created_at",
    )

    def __repr__(self) -> str:
        return f"<ExpenseReport {self.id} {self.status} v{self.version}>"

    @property
    def status_enum(self) -> ReportStatus:
        return ReportStatus(self.status)


class ExpenseLine(TimestampedBase):
    """A single expense.  Read-only to the workflow kernel."""

    __tablename__ = "expense_lines"

    report_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("expense_reports.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    report: Mapped[ExpenseReport] = relationship(back_populates="lines")
