"""
Access-control domain types (``expense_kernel.domain.access``).

Responsibility
--------------
Pure value objects returned by the permission registry, the SoD validator,
and the approval guard.  Denials and violations are data: the caller
decides whether to raise.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class SodRuleSpec:
    """A toxic permission combination, decoupled from its storage row."""

    name: str
    description: str
    permission_set: frozenset[str]
    risk_level: RiskLevel = RiskLevel.HIGH


@dataclass(frozen=True)
class SodViolation:
    rule_name: str
    description: str
    conflicting_permissions: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_name": self.rule_name,
            "description": self.description,
            "conflicting_permissions": list(self.conflicting_permissions),
        }


@dataclass(frozen=True)
class SodValidationResult:
    """Outcome of an SoD evaluation.  ``valid`` iff there are no violations."""

    violations: tuple[SodViolation, ...] = ()

    @property
    def valid(self) -> bool:
        return not self.violations

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "violations": [v.to_dict() for v in self.violations],
        }


class ApprovalCheckType(str, Enum):
    """Which self-transaction rule denied an approval."""

    DIRECT_SELF = "direct_self"
    TEMPORAL = "temporal"
    SAME_ENTITY = "same_entity"
    CIRCULAR = "circular"


@dataclass(frozen=True)
class ApprovalCheckResult:
    allowed: bool
    reason: str | None = None
    check_type: ApprovalCheckType | None = None

    @classmethod
    def allow(cls) -> ApprovalCheckResult:
        return cls(allowed=True)

    @classmethod
    def deny(cls, check_type: ApprovalCheckType, reason: str) -> ApprovalCheckResult:
        return cls(allowed=False, reason=reason, check_type=check_type)


@dataclass(frozen=True)
class AccessCheckResult:
    """Answer to "may this user see / submit this report"."""

    allowed: bool
    reason: str | None = None


@dataclass(frozen=True)
class PermissionCheckResult:
    allowed: bool
    missing_permissions: tuple[str, ...] = ()
    reason: str | None = None


@dataclass(frozen=True)
class UserAuthContext:
    """What an auth token is built from.  ``roles_version`` revokes it."""

    user_id: UUID
    email: str
    roles: tuple[str, ...]
    roles_version: int
    permissions: frozenset[str] = field(default_factory=frozenset)
    department_id: UUID | None = None
    manager_id: UUID | None = None
