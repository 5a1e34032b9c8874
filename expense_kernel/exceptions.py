"""
Typed exception hierarchy for the expense kernel.

Every error a kernel operation can raise is a typed class with a static,
machine-readable ``code`` and its context stored as attributes. Callers
catch by type and read attributes; they never parse messages.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from ExpenseKernelError:

    ExpenseKernelError (base)
    |
    +-- NotFoundError
    |   +-- ReportNotFoundError
    |   +-- UserNotFoundError
    |   +-- RoleNotFoundError
    |   +-- PermissionNotFoundError
    |   +-- WorkflowNotFoundError
    |   +-- SodRuleNotFoundError
    |
    +-- ForbiddenError
    |   +-- ReportOwnershipError
    |   +-- ApprovalDeniedError
    |   +-- SystemRoleProtectedError
    |   +-- RoleAssignmentForbiddenError
    |   +-- InsufficientPermissionError
    |
    +-- ValidationError
    |   +-- InvalidReportTransitionError
    |   +-- NoWorkflowConfiguredError
    |   +-- InvalidWorkflowStepError
    |   +-- InvalidWorkflowDefinitionError
    |   +-- SodViolationError
    |
    +-- ConflictError
    |   +-- PermissionAlreadyExistsError
    |   +-- PermissionInUseError
    |   +-- RoleAlreadyExistsError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |
    +-- ConcurrencyError
    |   +-- SequenceAllocationError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                          | When Raised
--------------|-------------------------------|---------------------------------
NotFound      | REPORT_NOT_FOUND              | Report ID doesn't exist
              | USER_NOT_FOUND                | User ID doesn't exist
              | ROLE_NOT_FOUND                | Role ID doesn't exist
              | PERMISSION_NOT_FOUND          | Permission ID doesn't exist
              | WORKFLOW_NOT_FOUND            | Workflow ID doesn't exist
--------------|-------------------------------|---------------------------------
Forbidden     | REPORT_OWNERSHIP              | Acting on someone else's report
              | APPROVAL_DENIED               | ApprovalGuard refused the actor
              | SYSTEM_ROLE_PROTECTED         | Editing/deleting a system role
              | ROLE_ASSIGNMENT_FORBIDDEN     | Missing role.assign.* authority
              | INSUFFICIENT_PERMISSION       | Actor lacks the required permission
--------------|-------------------------------|---------------------------------
Validation    | INVALID_REPORT_TRANSITION     | Action not allowed from status
              | NO_WORKFLOW_CONFIGURED        | Resolver found no workflow
              | INVALID_WORKFLOW_STEP         | current_step not in snapshot
              | INVALID_WORKFLOW_DEFINITION   | Malformed steps or conditions
              | SOD_VIOLATION                 | Toxic permission combination
--------------|-------------------------------|---------------------------------
Conflict      | PERMISSION_ALREADY_EXISTS     | Duplicate permission name
              | PERMISSION_IN_USE             | Deleting a referenced permission
              | ROLE_ALREADY_EXISTS           | Duplicate role name
--------------|-------------------------------|---------------------------------
Audit         | AUDIT_CHAIN_BROKEN            | Hash chain validation failed
Immutability  | IMMUTABILITY_VIOLATION        | Modifying an append-only record

The four request categories (NotFound, Forbidden, Validation, Conflict) map
one-to-one onto the 404 / 403 / 400 / 409 responses of the HTTP layer.
"""

from typing import Any


class ExpenseKernelError(Exception):
    """
    Base exception for all expense kernel errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "EXPENSE_KERNEL_ERROR"


# Not found


class NotFoundError(ExpenseKernelError):
    code: str = "NOT_FOUND"


class ReportNotFoundError(NotFoundError):
    code: str = "REPORT_NOT_FOUND"

    def __init__(self, report_id: str):
        self.report_id = str(report_id)
        super().__init__("Report not found")


class UserNotFoundError(NotFoundError):
    code: str = "USER_NOT_FOUND"

    def __init__(self, user_id: str):
        self.user_id = str(user_id)
        super().__init__("User not found")


class RoleNotFoundError(NotFoundError):
    code: str = "ROLE_NOT_FOUND"

    def __init__(self, role_id: str):
        self.role_id = str(role_id)
        super().__init__("Role not found")


class PermissionNotFoundError(NotFoundError):
    code: str = "PERMISSION_NOT_FOUND"

    def __init__(self, permission_id: str):
        self.permission_id = str(permission_id)
        super().__init__("Permission not found")


class WorkflowNotFoundError(NotFoundError):
    code: str = "WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_id: str):
        self.workflow_id = str(workflow_id)
        super().__init__("Workflow not found")


class SodRuleNotFoundError(NotFoundError):
    code: str = "SOD_RULE_NOT_FOUND"

    def __init__(self, rule_id: str):
        self.rule_id = str(rule_id)
        super().__init__("SoD rule not found")


# Forbidden


class ForbiddenError(ExpenseKernelError):
    code: str = "FORBIDDEN"


class ReportOwnershipError(ForbiddenError):
    """The actor tried to submit or withdraw a report they do not own."""

    code: str = "REPORT_OWNERSHIP"

    def __init__(self, report_id: str, actor_id: str, action: str):
        self.report_id = str(report_id)
        self.actor_id = str(actor_id)
        self.action = action
        super().__init__(f"Can only {action} your own reports")


class ApprovalDeniedError(ForbiddenError):
    """ApprovalGuard refused an approve/reject attempt."""

    code: str = "APPROVAL_DENIED"

    def __init__(
        self,
        report_id: str,
        approver_id: str,
        reason: str,
        check_type: str | None = None,
    ):
        self.report_id = str(report_id)
        self.approver_id = str(approver_id)
        self.reason = reason
        self.check_type = check_type
        super().__init__(reason)


class SystemRoleProtectedError(ForbiddenError):
    code: str = "SYSTEM_ROLE_PROTECTED"

    def __init__(self, role_id: str, operation: str):
        self.role_id = str(role_id)
        self.operation = operation
        super().__init__(f"Cannot {operation} system roles")


class RoleAssignmentForbiddenError(ForbiddenError):
    """Assigning admin or finance roles requires a dedicated permission."""

    code: str = "ROLE_ASSIGNMENT_FORBIDDEN"

    def __init__(self, role_name: str, required_permission: str, message: str):
        self.role_name = role_name
        self.required_permission = required_permission
        super().__init__(message)


class InsufficientPermissionError(ForbiddenError):
    code: str = "INSUFFICIENT_PERMISSION"

    def __init__(self, actor_id: str, required_permission: str, message: str | None = None):
        self.actor_id = str(actor_id)
        self.required_permission = required_permission
        super().__init__(
            message or f"Missing required permission: {required_permission}"
        )


# Validation


class ValidationError(ExpenseKernelError):
    code: str = "VALIDATION_ERROR"


class InvalidReportTransitionError(ValidationError):
    code: str = "INVALID_REPORT_TRANSITION"

    def __init__(self, report_id: str, action: str, status: str):
        self.report_id = str(report_id)
        self.action = action
        self.status = status
        super().__init__(f"Cannot {action} report in {status} status")


class NoWorkflowConfiguredError(ValidationError):
    code: str = "NO_WORKFLOW_CONFIGURED"

    def __init__(self, report_id: str):
        self.report_id = str(report_id)
        super().__init__("No workflow configured for this report type")


class InvalidWorkflowStepError(ValidationError):
    code: str = "INVALID_WORKFLOW_STEP"

    def __init__(self, report_id: str, step_number: int | None):
        self.report_id = str(report_id)
        self.step_number = step_number
        super().__init__("Invalid workflow step")


class InvalidWorkflowDefinitionError(ValidationError):
    code: str = "INVALID_WORKFLOW_DEFINITION"

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid workflow definition: " + "; ".join(self.errors))


class SodViolationError(ValidationError):
    """A role change would give a user a toxic permission combination."""

    code: str = "SOD_VIOLATION"

    def __init__(self, message: str, violations: list[Any]):
        self.violations = list(violations)
        super().__init__(message)


# Conflict


class ConflictError(ExpenseKernelError):
    code: str = "CONFLICT"


class PermissionAlreadyExistsError(ConflictError):
    code: str = "PERMISSION_ALREADY_EXISTS"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f'Permission with name "{name}" already exists')


class PermissionInUseError(ConflictError):
    code: str = "PERMISSION_IN_USE"

    def __init__(self, permission_id: str, role_count: int):
        self.permission_id = str(permission_id)
        self.role_count = role_count
        super().__init__("Cannot delete permission that is assigned to roles")


class RoleAlreadyExistsError(ConflictError):
    code: str = "ROLE_ALREADY_EXISTS"

    def __init__(self, name: str):
        self.name = name
        super().__init__("Role name already exists")


# Audit


class AuditError(ExpenseKernelError):
    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, event_id: str, expected_hash: str, actual_hash: str):
        self.event_id = str(event_id)
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {event_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )


# Concurrency


class ConcurrencyError(ExpenseKernelError):
    code: str = "CONCURRENCY_ERROR"


class SequenceAllocationError(ConcurrencyError):
    code: str = "SEQUENCE_ALLOCATION_FAILED"

    def __init__(self, sequence_name: str):
        self.sequence_name = sequence_name
        super().__init__(f"Could not allocate from sequence {sequence_name}")


# Immutability


class ImmutabilityError(ExpenseKernelError):
    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    ApprovalHistory and AuditLogEntry rows are append-only; a report's
    workflow snapshot is write-once.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
