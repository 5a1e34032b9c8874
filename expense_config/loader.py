"""
Governance configuration loader (``expense_config.loader``).

Responsibility
--------------
Load the YAML governance file and parse it into the frozen dataclasses of
``expense_config.schema``.  The runtime entry point is
``expense_config.get_active_config()``; nothing else calls this module.

Invariants enforced
-------------------
* Every permission a role, SoD rule, or action mapping names is declared
  in ``permissions``.
* SoD rules name at least two permissions.
* ``compute_checksum`` is deterministic for identical input.

Failure modes
-------------
* Missing file -> ``FileNotFoundError`` propagates.
* Malformed YAML -> ``yaml.YAMLError`` propagates.
* Missing required keys -> ``KeyError``; inconsistent references ->
  ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from expense_config.schema import (
    ApprovalGuardSettings,
    AuditSettings,
    GovernanceConfig,
    PermissionDef,
    RoleAssignmentSettings,
    RoleDef,
    SodRuleDef,
    WorkflowDef,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_permission(data: dict[str, Any]) -> PermissionDef:
    return PermissionDef(
        name=data["name"],
        description=data.get("description"),
        category=data.get("category"),
        risk_level=data.get("risk_level"),
        requires_mfa=bool(data.get("requires_mfa", False)),
    )


def parse_role(data: dict[str, Any], all_permissions: tuple[str, ...]) -> RoleDef:
    """A role's ``permissions`` may be ``"*"`` (every declared permission)
    narrowed by an ``exclude`` list."""
    raw = data.get("permissions") or []
    if raw == "*":
        excluded = set(data.get("exclude") or ())
        names = tuple(p for p in all_permissions if p not in excluded)
    else:
        names = tuple(raw)
    return RoleDef(
        name=data["name"],
        description=data.get("description"),
        permissions=names,
        is_system=bool(data.get("is_system", True)),
    )


def parse_sod_rule(data: dict[str, Any]) -> SodRuleDef:
    return SodRuleDef(
        name=data["name"],
        description=data["description"],
        permission_set=tuple(data["permission_set"]),
        risk_level=data.get("risk_level", "high"),
    )


def parse_workflow(data: dict[str, Any]) -> WorkflowDef:
    return WorkflowDef(
        name=data["name"],
        description=data.get("description"),
        conditions=dict(data.get("conditions") or {}),
        steps=tuple(data["steps"]),
        on_return_policy=data.get("on_return_policy", "hard_restart"),
    )


def _validate(config: GovernanceConfig) -> list[str]:
    known = config.permission_names
    errors: list[str] = []

    for role in config.roles:
        for name in role.permissions:
            if name not in known:
                errors.append(f"role {role.name!r} references unknown permission {name!r}")

    for rule in config.sod_rules:
        if len(set(rule.permission_set)) < 2:
            errors.append(f"SoD rule {rule.name!r} must name at least two permissions")
        for name in rule.permission_set:
            if name not in known:
                errors.append(f"SoD rule {rule.name!r} references unknown permission {name!r}")

    for action, name in config.workflow_action_permissions.items():
        if name not in known:
            errors.append(f"action {action!r} maps to unknown permission {name!r}")

    ra = config.role_assignment
    for name in (ra.admin_permission, ra.finance_permission):
        if name not in known:
            errors.append(f"role assignment references unknown permission {name!r}")

    return errors


def parse_governance(data: dict[str, Any]) -> GovernanceConfig:
    guard = data.get("approval_guard") or {}
    audit = data.get("audit") or {}
    assignment = data.get("role_assignment") or {}

    permissions = tuple(parse_permission(p) for p in data.get("permissions") or ())
    permission_names = tuple(p.name for p in permissions)

    defaults = RoleAssignmentSettings()
    config = GovernanceConfig(
        version=int(data.get("version", 1)),
        approval_guard=ApprovalGuardSettings(
            same_department_threshold=Decimal(
                str(guard.get("same_department_threshold", "1000"))
            ),
            circular_window_days=int(guard.get("circular_window_days", 30)),
            manager_chain_max_depth=int(guard.get("manager_chain_max_depth", 10)),
        ),
        audit=AuditSettings(
            sensitive_actions=frozenset(audit.get("sensitive_actions") or ()),
        ),
        role_assignment=RoleAssignmentSettings(
            admin_roles=frozenset(assignment.get("admin_roles") or defaults.admin_roles),
            admin_permission=assignment.get("admin_permission", defaults.admin_permission),
            finance_roles=frozenset(assignment.get("finance_roles") or defaults.finance_roles),
            finance_permission=assignment.get("finance_permission", defaults.finance_permission),
        ),
        workflow_action_permissions=dict(data.get("workflow_action_permissions") or {}),
        permissions=permissions,
        roles=tuple(parse_role(r, permission_names) for r in data.get("roles") or ()),
        sod_rules=tuple(parse_sod_rule(r) for r in data.get("sod_rules") or ()),
        default_workflow=(
            parse_workflow(data["default_workflow"]) if data.get("default_workflow") else None
        ),
        checksum=compute_checksum(data),
    )

    errors = _validate(config)
    if errors:
        raise ValueError(
            "Governance configuration validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )
    return config
