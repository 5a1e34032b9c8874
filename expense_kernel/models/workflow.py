"""
Module: expense_kernel.models.workflow
Responsibility: ORM persistence for approval workflow definitions and the
    routing assignments that select them.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - version starts at 1 and increments on every edit (WorkflowDefinitionStore).
    - steps holds the JSON shape parsed by expense_kernel.domain.workflow;
      the store validates it before every write.

Audit relevance:
    Reports carry a by-value snapshot of the definition (id, name, version,
    steps, on_return_policy), so the row here may change without altering
    the rules an in-flight report is judged by.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from expense_kernel.db.base import TimestampedBase, UUIDString


class WorkflowDefinitionModel(TimestampedBase):
    __tablename__ = "workflow_definitions"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    conditions: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    steps: Mapped[list] = mapped_column(JSON, nullable=False)
    on_return_policy: Mapped[str] = mapped_column(
        String(20), nullable=False, default="hard_restart"
    )
    created_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return f"<WorkflowDefinition {self.name} v{self.version}>"


class WorkflowAssignmentModel(TimestampedBase):
    """
    Routes reports to a workflow.

    NULL filters match anything; amount bounds are inclusive.  Among matching
    assignments the highest priority wins, then the highest amount_min.
    """

    __tablename__ = "workflow_assignments"

    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_definitions.id"),
        nullable=False,
        index=True,
    )
    department_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("departments.id"),
        nullable=True,
    )
    expense_category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    amount_min: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    amount_max: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
