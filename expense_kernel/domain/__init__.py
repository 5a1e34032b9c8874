"""
Pure domain layer.

Value objects and enums with NO dependencies on the ORM, the database,
or I/O.  All domain objects are immutable.
"""

from expense_kernel.domain.access import (
    AccessCheckResult,
    ApprovalCheckResult,
    ApprovalCheckType,
    PermissionCheckResult,
    RiskLevel,
    SodRuleSpec,
    SodValidationResult,
    SodViolation,
    UserAuthContext,
)
from expense_kernel.domain.audit import (
    AuditContext,
    AuditExport,
    AuditLogFilter,
    AuditLogPage,
    ChainIntegrityReport,
    ChainViolation,
    ChainViolationKind,
)
from expense_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from expense_kernel.domain.report import (
    ApprovalAction,
    ApprovalOutcome,
    ReportFacts,
    ReportStatus,
    WorkflowAction,
)
from expense_kernel.domain.workflow import (
    Condition,
    ConditionOperator,
    ReturnPolicy,
    TargetType,
    WorkflowConditions,
    WorkflowSnapshot,
    WorkflowStep,
)

__all__ = [
    "AccessCheckResult",
    "ApprovalAction",
    "ApprovalCheckResult",
    "ApprovalCheckType",
    "ApprovalOutcome",
    "AuditContext",
    "AuditExport",
    "AuditLogFilter",
    "AuditLogPage",
    "ChainIntegrityReport",
    "ChainViolation",
    "ChainViolationKind",
    "Clock",
    "Condition",
    "ConditionOperator",
    "DeterministicClock",
    "PermissionCheckResult",
    "ReportFacts",
    "ReportStatus",
    "ReturnPolicy",
    "RiskLevel",
    "SodRuleSpec",
    "SodValidationResult",
    "SodViolation",
    "SystemClock",
    "TargetType",
    "UserAuthContext",
    "WorkflowAction",
    "WorkflowConditions",
    "WorkflowSnapshot",
    "WorkflowStep",
]
