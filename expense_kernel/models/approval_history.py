"""
Module: expense_kernel.models.approval_history
Responsibility: ORM persistence for the per-report decision trail.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (ORM listener + PostgreSQL trigger).
    - report_hash is the SHA-256 of the report's state at action time, so a
      later reader can tell exactly which version was approved.

Audit relevance:
    The approval guard reads this table for the temporal check (has the
    approver acted on this report before) and the circular check (has the
    submitter recently approved the approver's reports).
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from expense_kernel.db.base import TimestampedBase, UTCDateTime, UUIDString


class ApprovalHistory(TimestampedBase):
    __tablename__ = "approval_history"

    __table_args__ = (
        Index("idx_approval_history_report", "report_id", "created_at"),
        Index("idx_approval_history_actor", "actor_id", "action", "created_at"),
    )

    report_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("expense_reports.id"),
        nullable=False,
    )
    step_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    step_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    actor_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("users.id"),
        nullable=False,
    )
    actor_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    action: Mapped[str] = mapped_column(String(20), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_category: Mapped[str | None] = mapped_column(String(100), nullable=True)

    report_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    sla_deadline: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    was_escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<ApprovalHistory {self.action} report={self.report_id} step={self.step_number}>"
