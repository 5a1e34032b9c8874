"""
expense_services.rbac_authority -- Runtime permission enforcement at the caller boundary.

Responsibility:
    Map each workflow action to the permission it requires, and decide
    whether an actor may assign a given role.  Admin and finance roles need
    a dedicated ``role.assign.*`` permission on top of ``role.assign``.

Architecture position:
    Services layer.  Consumes GovernanceConfig from expense_config.  Called
    by ReportWorkflowService and RoleAdministrationService before they hand
    off to kernel services.

Invariants:
    - The kernel stays permission-agnostic; every permission check for the
      public operations lives here.
    - Checks raise typed Forbidden errors; they never return silently on
      denial.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from uuid import UUID

from expense_config.schema import RoleAssignmentSettings
from expense_kernel.exceptions import InsufficientPermissionError, RoleAssignmentForbiddenError
from expense_kernel.logging_config import get_logger

logger = get_logger("services.rbac_authority")

# workflow action -> permission (overridden by governance.yaml)
WORKFLOW_ACTION_TO_PERMISSION: dict[str, str] = {
    "submit": "report.submit",
    "approve": "report.approve",
    "reject": "report.reject",
    "return": "report.return",
    "withdraw": "report.withdraw",
}

ROLE_ASSIGN_PERMISSION = "role.assign"


def get_permission_for_action(
    action: str,
    mapping: Mapping[str, str] | None = None,
) -> str | None:
    """Return the permission required for this workflow action, or None if not in scope."""
    return (mapping if mapping is not None else WORKFLOW_ACTION_TO_PERMISSION).get(action)


def required_assignment_permission(
    role_name: str,
    settings: RoleAssignmentSettings,
) -> str | None:
    """The extra permission needed to assign ``role_name``, if any."""
    if role_name in settings.admin_roles:
        return settings.admin_permission
    if role_name in settings.finance_roles:
        return settings.finance_permission
    return None


def require_permission(
    actor_id: UUID,
    actor_permissions: frozenset[str],
    required_permission: str,
) -> None:
    if required_permission not in actor_permissions:
        logger.warning(
            "permission_denied",
            extra={"actor_id": str(actor_id), "required_permission": required_permission},
        )
        raise InsufficientPermissionError(str(actor_id), required_permission)


def check_role_assignment_authority(
    actor_permissions: frozenset[str],
    role_names: Iterable[str],
    settings: RoleAssignmentSettings,
) -> None:
    """
    Raise RoleAssignmentForbiddenError when any of ``role_names`` needs a
    special permission the actor does not hold.  Admin roles are checked
    before finance roles.
    """
    names = list(role_names)
    for name in names:
        if name in settings.admin_roles and settings.admin_permission not in actor_permissions:
            raise RoleAssignmentForbiddenError(
                name,
                settings.admin_permission,
                f"{settings.admin_permission} permission required to assign admin roles",
            )
    for name in names:
        if name in settings.finance_roles and settings.finance_permission not in actor_permissions:
            raise RoleAssignmentForbiddenError(
                name,
                settings.finance_permission,
                f"{settings.finance_permission} permission required to assign finance role",
            )
