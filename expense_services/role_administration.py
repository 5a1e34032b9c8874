"""
expense_services.role_administration -- Role and permission administration.

Responsibility:
    The administrative entry points for the permission registry: create,
    edit, and delete roles and permissions, and change which roles a user
    holds.  Each operation runs the authority check, the Separation-of-Duties
    gate, the registry mutation, and the audit entry in one transaction.

Architecture position:
    Services layer.  Composes PermissionRegistry, SodValidator, and
    AuditLedger from the kernel with settings from expense_config.

Invariants enforced:
    - Order per operation: actor permission, special-role authority, SoD,
      persist, audit.  Nothing is written when an earlier step refuses.
    - A change that would give any user a toxic permission combination
      raises SodViolationError carrying every violation.
    - Assigning an admin or finance role is audited under the sensitive
      actions ``role.assign.admin`` / ``role.assign.finance``.

Failure modes:
    - InsufficientPermissionError, RoleAssignmentForbiddenError,
      SodViolationError, SystemRoleProtectedError, and the registry's
      NotFound / Conflict errors.  With ``auto_commit=True`` the session is
      rolled back before the exception propagates.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from expense_config.schema import GovernanceConfig, RoleAssignmentSettings
from expense_kernel.domain.access import SodValidationResult
from expense_kernel.domain.clock import Clock, SystemClock
from expense_kernel.exceptions import SodViolationError, SystemRoleProtectedError
from expense_kernel.logging_config import LogContext, get_logger
from expense_kernel.models.rbac import Permission, Role
from expense_kernel.services.audit_ledger import AuditLedger
from expense_kernel.services.permission_registry import PermissionRegistry
from expense_kernel.services.sod_validator import SodValidator
from expense_services.rbac_authority import (
    ROLE_ASSIGN_PERMISSION,
    check_role_assignment_authority,
    require_permission,
    required_assignment_permission,
)

logger = get_logger("services.role_administration")

T = TypeVar("T")


def _raise_on_violation(result: SodValidationResult) -> None:
    if not result.valid:
        raise SodViolationError(
            "Role change would violate Separation of Duties rules",
            list(result.violations),
        )


class RoleAdministrationService:
    """
    Contract:
        Every public method takes the acting user's id first and either
        completes the whole change (registry rows, roles_version bumps, audit
        entry) or changes nothing.

    Guarantees:
        - SoD is evaluated on the proposed state before any write.
        - ``roles_version`` of every affected user is bumped in the same
          transaction as the change.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: GovernanceConfig | None = None,
        audit_ledger: AuditLedger | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._registry = PermissionRegistry(session, self._clock)
        self._sod = SodValidator(session, self._registry)
        self._audit = audit_ledger or AuditLedger(
            session,
            self._clock,
            sensitive_actions=config.audit.sensitive_actions if config else None,
        )
        self._assignment = config.role_assignment if config else RoleAssignmentSettings()
        self._auto_commit = auto_commit

    @property
    def registry(self) -> PermissionRegistry:
        return self._registry

    def _run(self, operation: str, actor_id: UUID, body: Callable[[], T]) -> T:
        with LogContext.bind(correlation_id=str(uuid4()), actor_id=str(actor_id)):
            t0 = time.monotonic()
            try:
                result = body()
                if self._auto_commit:
                    self._session.commit()
                logger.info(
                    f"{operation}_completed",
                    extra={"duration_ms": round((time.monotonic() - t0) * 1000, 2)},
                )
                return result
            except Exception:
                if self._auto_commit:
                    self._session.rollback()
                logger.error(
                    f"{operation}_failed",
                    extra={"duration_ms": round((time.monotonic() - t0) * 1000, 2)},
                    exc_info=True,
                )
                raise

    def _require(self, actor_id: UUID, permission: str) -> frozenset[str]:
        held = self._registry.get_user_permissions(actor_id)
        require_permission(actor_id, held, permission)
        return held

    def _log(self, actor_id: UUID, action: str, resource_type: str, resource_id: Any, **kw: Any) -> None:
        self._audit.log_audit_event(
            actor_id=actor_id,
            action=action,
            action_category="rbac",
            resource_type=resource_type,
            resource_id=resource_id,
            **kw,
        )

    # =========================================================================
    # Permissions
    # =========================================================================

    def create_permission(
        self,
        actor_id: UUID,
        name: str,
        description: str | None = None,
        category: str | None = None,
        risk_level: str | None = None,
        requires_mfa: bool = False,
    ) -> Permission:
        def body() -> Permission:
            self._require(actor_id, "permission.create")
            permission = self._registry.create_permission(
                name, description, category, risk_level, requires_mfa
            )
            self._log(
                actor_id,
                "permission.create",
                "permission",
                permission.id,
                metadata={"name": name, "risk_level": risk_level},
            )
            return permission

        return self._run("permission_create", actor_id, body)

    def update_permission(
        self,
        actor_id: UUID,
        permission_id: UUID,
        fields: Mapping[str, Any],
    ) -> Permission:
        def body() -> Permission:
            self._require(actor_id, "permission.edit")
            before = self._registry.get_permission(permission_id)
            old = {key: getattr(before, key) for key in fields if hasattr(before, key)}
            permission = self._registry.update_permission(permission_id, fields)
            changes = {
                key: {"from": old.get(key), "to": getattr(permission, key)}
                for key in fields
                if old.get(key) != getattr(permission, key)
            }
            self._log(
                actor_id,
                "permission.update",
                "permission",
                permission_id,
                changes=changes,
            )
            return permission

        return self._run("permission_update", actor_id, body)

    def delete_permission(self, actor_id: UUID, permission_id: UUID) -> None:
        def body() -> None:
            self._require(actor_id, "permission.delete")
            name = self._registry.get_permission(permission_id).name
            self._registry.delete_permission(permission_id)
            self._log(
                actor_id,
                "permission.delete",
                "permission",
                permission_id,
                metadata={"name": name},
            )

        self._run("permission_delete", actor_id, body)

    # =========================================================================
    # Roles
    # =========================================================================

    def create_role(
        self,
        actor_id: UUID,
        name: str,
        description: str | None,
        permission_ids: Iterable[UUID],
    ) -> Role:
        ids = list(permission_ids)

        def body() -> Role:
            self._require(actor_id, "role.create")
            names = self._registry.permission_names_for_ids(ids)
            _raise_on_violation(self._sod.validate_sod(names))
            role = self._registry.create_role(name, description, ids, actor_id)
            self._log(
                actor_id,
                "role.create",
                "role",
                role.id,
                metadata={"name": name, "permissions": sorted(names)},
            )
            return role

        return self._run("role_create", actor_id, body)

    def update_role_permissions(
        self,
        actor_id: UUID,
        role_id: UUID,
        permission_ids: Iterable[UUID],
    ) -> list[UUID]:
        """Replace the role's permissions.  Returns the users whose tokens are revoked."""
        ids = list(permission_ids)

        def body() -> list[UUID]:
            self._require(actor_id, "role.edit")
            role = self._registry.get_role(role_id)
            if role.is_system:
                raise SystemRoleProtectedError(str(role_id), "modify")

            old_names = self._registry.get_role_permission_names(role_id)
            new_names = self._registry.permission_names_for_ids(ids)
            _raise_on_violation(self._sod.validate_role_permission_change(role_id, new_names))

            holders = self._registry.update_role_permissions(role_id, ids, actor_id)
            self._log(
                actor_id,
                "role.update",
                "role",
                role_id,
                changes={"permissions": {"from": sorted(old_names), "to": sorted(new_names)}},
                metadata={"affected_users": [str(u) for u in holders]},
            )
            return holders

        return self._run("role_update", actor_id, body)

    def delete_role(self, actor_id: UUID, role_id: UUID) -> list[UUID]:
        def body() -> list[UUID]:
            self._require(actor_id, "role.delete")
            name = self._registry.get_role(role_id).name
            holders = self._registry.delete_role(role_id)
            self._log(
                actor_id,
                "role.delete",
                "role",
                role_id,
                metadata={"name": name, "affected_users": [str(u) for u in holders]},
            )
            return holders

        return self._run("role_delete", actor_id, body)

    # =========================================================================
    # User roles
    # =========================================================================

    def _assignment_action(self, role_names: Iterable[str]) -> str:
        specials = {required_assignment_permission(n, self._assignment) for n in role_names}
        if self._assignment.admin_permission in specials:
            return self._assignment.admin_permission
        if self._assignment.finance_permission in specials:
            return self._assignment.finance_permission
        return ROLE_ASSIGN_PERMISSION

    def assign_role_to_user(self, actor_id: UUID, user_id: UUID, role_id: UUID) -> bool:
        def body() -> bool:
            held = self._require(actor_id, ROLE_ASSIGN_PERMISSION)
            role = self._registry.get_role(role_id)
            check_role_assignment_authority(held, [role.name], self._assignment)
            _raise_on_violation(self._sod.validate_role_assignment_sod(user_id, [role_id]))

            created = self._registry.assign_role_to_user(user_id, role_id, actor_id)
            self._log(
                actor_id,
                self._assignment_action([role.name]),
                "user",
                user_id,
                metadata={"role_id": str(role_id), "role_name": role.name, "created": created},
            )
            return created

        return self._run("role_assign", actor_id, body)

    def set_user_roles(self, actor_id: UUID, user_id: UUID, role_ids: Iterable[UUID]) -> None:
        """Replace every role ``user_id`` holds."""
        ids = list(dict.fromkeys(role_ids))

        def body() -> None:
            held = self._require(actor_id, ROLE_ASSIGN_PERMISSION)
            names = [self._registry.get_role(rid).name for rid in ids]
            check_role_assignment_authority(held, names, self._assignment)
            _raise_on_violation(self._sod.validate_replacement_roles(user_id, ids))

            previous = self._registry.get_user_role_names(user_id)
            self._registry.set_user_roles(user_id, ids, actor_id)
            self._log(
                actor_id,
                self._assignment_action(names),
                "user",
                user_id,
                changes={"roles": {"from": sorted(previous), "to": sorted(names)}},
            )

        self._run("user_roles_set", actor_id, body)

    def remove_role_from_user(self, actor_id: UUID, user_id: UUID, role_id: UUID) -> bool:
        def body() -> bool:
            self._require(actor_id, ROLE_ASSIGN_PERMISSION)
            removed = self._registry.remove_role_from_user(user_id, role_id)
            self._log(
                actor_id,
                "role.remove",
                "user",
                user_id,
                metadata={"role_id": str(role_id), "removed": removed},
            )
            return removed

        return self._run("role_remove", actor_id, body)
