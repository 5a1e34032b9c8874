"""
expense_config -- single public entrypoint for governance configuration.

Responsibility:
    ``get_active_config()`` is the only way to obtain configuration at
    runtime: approval-guard thresholds, the sensitive audit action list,
    the special permissions for admin/finance role assignment, the
    permission each workflow action requires, and the reference data
    (permissions, system roles, SoD rules, default workflow) that
    bootstrap seeds.

Architecture position:
    Configuration sits above ``expense_kernel`` and below
    ``expense_services``.  The kernel MUST NEVER import from here;
    services pass the values into kernel constructors.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ValueError`` -- references to undeclared permissions, degenerate
      SoD rules.

Audit relevance:
    Every call emits an ``EXPENSE_CONFIG_TRACE`` log entry carrying the
    version and checksum of the file that governed the process.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from expense_config.loader import load_yaml_file, parse_governance
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

_logger = logging.getLogger("expense_kernel.config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "governance.yaml"

CONFIG_PATH_ENV = "EXPENSE_CONFIG_PATH"


def get_active_config(config_path: Path | None = None) -> GovernanceConfig:
    """The ONLY public configuration entrypoint.

    Resolution order: explicit ``config_path``, then the
    ``EXPENSE_CONFIG_PATH`` environment variable, then the bundled
    ``governance.yaml``.
    """
    path = config_path or Path(os.environ.get(CONFIG_PATH_ENV) or _DEFAULT_CONFIG_PATH)

    config = parse_governance(load_yaml_file(path))

    _logger.info(
        "EXPENSE_CONFIG_TRACE",
        extra={
            "trace_type": "EXPENSE_CONFIG_TRACE",
            "config_path": str(path),
            "config_version": config.version,
            "checksum": config.checksum,
            "permission_count": len(config.permissions),
            "role_count": len(config.roles),
            "sod_rule_count": len(config.sod_rules),
        },
    )
    return config


__all__ = [
    "ApprovalGuardSettings",
    "AuditSettings",
    "CONFIG_PATH_ENV",
    "GovernanceConfig",
    "PermissionDef",
    "RoleAssignmentSettings",
    "RoleDef",
    "SodRuleDef",
    "WorkflowDef",
    "get_active_config",
]
