"""
Expense report domain types (``expense_kernel.domain.report``).

Responsibility
--------------
Pure value objects for the report lifecycle: the status enum, the status
graph each workflow action may traverse, approval-history action kinds, and
the read-only facts a workflow condition is evaluated against.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* ``REPORT_TRANSITIONS`` is the only status graph.  ``rejected`` and
  ``posted`` have no outgoing edges here; ``approved -> posted`` belongs to
  the external posting collaborator.
* ``ACTION_SOURCE_STATUSES`` names, per workflow action, the statuses the
  action may start from.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from uuid import UUID


class ReportStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED = "returned"
    POSTED = "posted"


REPORT_TRANSITIONS: dict[ReportStatus, frozenset[ReportStatus]] = {
    ReportStatus.DRAFT: frozenset({ReportStatus.SUBMITTED}),
    ReportStatus.RETURNED: frozenset({ReportStatus.SUBMITTED}),
    ReportStatus.SUBMITTED: frozenset({
        ReportStatus.PENDING,
        ReportStatus.APPROVED,
        ReportStatus.REJECTED,
        ReportStatus.RETURNED,
        ReportStatus.DRAFT,
    }),
    ReportStatus.PENDING: frozenset({
        ReportStatus.PENDING,
        ReportStatus.APPROVED,
        ReportStatus.REJECTED,
        ReportStatus.RETURNED,
        ReportStatus.DRAFT,
    }),
    ReportStatus.APPROVED: frozenset({ReportStatus.POSTED}),
    ReportStatus.REJECTED: frozenset(),
    ReportStatus.POSTED: frozenset(),
}

IN_FLIGHT_STATUSES: frozenset[ReportStatus] = frozenset({
    ReportStatus.SUBMITTED,
    ReportStatus.PENDING,
})

SUBMITTABLE_STATUSES: frozenset[ReportStatus] = frozenset({
    ReportStatus.DRAFT,
    ReportStatus.RETURNED,
})


class WorkflowAction(str, Enum):
    """Operations the workflow engine exposes on a report."""

    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    RETURN = "return"
    WITHDRAW = "withdraw"


ACTION_SOURCE_STATUSES: dict[WorkflowAction, frozenset[ReportStatus]] = {
    WorkflowAction.SUBMIT: SUBMITTABLE_STATUSES,
    WorkflowAction.APPROVE: IN_FLIGHT_STATUSES,
    WorkflowAction.REJECT: IN_FLIGHT_STATUSES,
    WorkflowAction.RETURN: IN_FLIGHT_STATUSES,
    WorkflowAction.WITHDRAW: IN_FLIGHT_STATUSES,
}


def is_valid_transition(from_status: ReportStatus, to_status: ReportStatus) -> bool:
    return to_status in REPORT_TRANSITIONS.get(from_status, frozenset())


def can_start(action: WorkflowAction, status: ReportStatus | str) -> bool:
    """True iff ``action`` may be applied to a report currently in ``status``."""
    try:
        current = ReportStatus(status)
    except ValueError:
        return False
    return current in ACTION_SOURCE_STATUSES[action]


class ApprovalAction(str, Enum):
    """Kinds of rows in the approval history."""

    APPROVE = "approve"
    REJECT = "reject"
    RETURN = "return"
    ESCALATE = "escalate"
    AUTO_APPROVE = "auto_approve"


@dataclass(frozen=True)
class ReportFacts:
    """The report attributes a workflow condition may read.

    Built from the locked report row at decision time; conditions never see
    the ORM object itself.
    """

    report_id: UUID
    user_id: UUID
    department_id: UUID | None
    status: str
    total_amount: Decimal
    current_step: int | None = None
    expense_categories: tuple[str, ...] = ()


@dataclass(frozen=True)
class ApprovalOutcome:
    """Result of approve_report."""

    report_id: UUID
    is_fully_approved: bool
    next_step: int | None
    status: ReportStatus
