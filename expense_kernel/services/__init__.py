"""Services for the expense kernel (write side)."""

from expense_kernel.services.approval_guard import ApprovalGuard
from expense_kernel.services.audit_ledger import AuditLedger, calculate_changes
from expense_kernel.services.permission_registry import PermissionRegistry
from expense_kernel.services.sequence_service import SequenceService
from expense_kernel.services.sod_validator import SodValidator
from expense_kernel.services.workflow_definitions import (
    WorkflowDefinitionStore,
    WorkflowResolver,
)
from expense_kernel.services.workflow_engine import WorkflowEngine

__all__ = [
    "ApprovalGuard",
    "AuditLedger",
    "PermissionRegistry",
    "SequenceService",
    "SodValidator",
    "WorkflowDefinitionStore",
    "WorkflowEngine",
    "WorkflowResolver",
    "calculate_changes",
]
