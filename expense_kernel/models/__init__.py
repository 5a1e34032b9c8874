"""ORM models for the expense kernel."""

from expense_kernel.models.approval_history import ApprovalHistory
from expense_kernel.models.audit_log import AuditLogEntry
from expense_kernel.models.expense_report import ExpenseLine, ExpenseReport
from expense_kernel.models.organization import Department, User
from expense_kernel.models.rbac import (
    Permission,
    Role,
    RolePermission,
    SodRule,
    UserRole,
)
from expense_kernel.models.sequence import SequenceCounter
from expense_kernel.models.workflow import (
    WorkflowAssignmentModel,
    WorkflowDefinitionModel,
)

__all__ = [
    "ApprovalHistory",
    "AuditLogEntry",
    "Department",
    "ExpenseLine",
    "ExpenseReport",
    "Permission",
    "Role",
    "RolePermission",
    "SequenceCounter",
    "SodRule",
    "User",
    "UserRole",
    "WorkflowAssignmentModel",
    "WorkflowDefinitionModel",
]
