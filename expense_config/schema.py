"""
Governance configuration schema.

Frozen dataclasses the YAML governance file is parsed into.  The kernel
never imports this package; expense_services translates these values into
constructor arguments of kernel services.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class ApprovalGuardSettings:
    same_department_threshold: Decimal = Decimal("1000")
    circular_window_days: int = 30
    manager_chain_max_depth: int = 10


@dataclass(frozen=True)
class AuditSettings:
    sensitive_actions: frozenset[str] = frozenset()


@dataclass(frozen=True)
class RoleAssignmentSettings:
    """Roles whose assignment requires a dedicated permission."""

    admin_roles: frozenset[str] = frozenset({"admin", "super_admin"})
    admin_permission: str = "role.assign.admin"
    finance_roles: frozenset[str] = frozenset({"finance"})
    finance_permission: str = "role.assign.finance"


@dataclass(frozen=True)
class PermissionDef:
    name: str
    description: str | None = None
    category: str | None = None
    risk_level: str | None = None
    requires_mfa: bool = False


@dataclass(frozen=True)
class RoleDef:
    name: str
    description: str | None
    permissions: tuple[str, ...]
    is_system: bool = True


@dataclass(frozen=True)
class SodRuleDef:
    name: str
    description: str
    permission_set: tuple[str, ...]
    risk_level: str = "high"


@dataclass(frozen=True)
class WorkflowDef:
    """A workflow definition in its stored JSON shape."""

    name: str
    description: str | None
    conditions: dict[str, Any]
    steps: tuple[dict[str, Any], ...]
    on_return_policy: str = "hard_restart"


@dataclass(frozen=True)
class GovernanceConfig:
    """The complete, validated governance configuration."""

    version: int
    approval_guard: ApprovalGuardSettings
    audit: AuditSettings
    role_assignment: RoleAssignmentSettings
    workflow_action_permissions: dict[str, str]
    permissions: tuple[PermissionDef, ...] = ()
    roles: tuple[RoleDef, ...] = ()
    sod_rules: tuple[SodRuleDef, ...] = ()
    default_workflow: WorkflowDef | None = None
    checksum: str = field(default="", compare=False)

    @property
    def permission_names(self) -> frozenset[str]:
        return frozenset(p.name for p in self.permissions)
