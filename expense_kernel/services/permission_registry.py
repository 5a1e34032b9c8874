"""
PermissionRegistry -- permissions, roles, and who holds them.

Responsibility:
    Owns the permission registry, the role <-> permission mapping, user role
    assignments, SoD rule storage, and the effective-permission queries every
    authorization decision starts from.

Architecture position:
    Kernel > Services.  Leaf component: depends only on models and the
    clock.  SodValidator reads from it; expense_services.role_administration
    wraps its mutations with authority checks, SoD gating, and audit.

Invariants enforced:
    - Effective permissions = union of the permissions of the user's
      *active* roles.
    - Every mutation that can change a user's effective permissions bumps
      ``users.roles_version`` in the same flush.
    - System roles are never edited or deleted.
    - A permission still referenced by a role cannot be deleted.
    - Permission names are immutable.

Failure modes:
    - NotFoundError subclasses for unknown ids.
    - ConflictError subclasses for duplicate names and in-use permissions.
    - SystemRoleProtectedError for system-role mutation.
    - ValidationError for malformed role names or empty SoD rules.

Audit relevance:
    This service does not write audit entries; the administration layer
    does, in the same transaction.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from expense_kernel.domain.access import (
    PermissionCheckResult,
    RiskLevel,
    SodRuleSpec,
    UserAuthContext,
)
from expense_kernel.domain.clock import Clock
from expense_kernel.exceptions import (
    PermissionAlreadyExistsError,
    PermissionInUseError,
    PermissionNotFoundError,
    RoleAlreadyExistsError,
    RoleNotFoundError,
    SodRuleNotFoundError,
    SystemRoleProtectedError,
    UserNotFoundError,
    ValidationError,
)
from expense_kernel.logging_config import get_logger
from expense_kernel.models.organization import User
from expense_kernel.models.rbac import Permission, Role, RolePermission, SodRule, UserRole
from expense_kernel.services.base import BaseService

logger = get_logger("services.permission_registry")

ROLE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")

UPDATABLE_PERMISSION_FIELDS = frozenset({
    "description",
    "category",
    "risk_level",
    "requires_mfa",
})


def _risk_value(risk_level: RiskLevel | str | None) -> str | None:
    if risk_level is None:
        return None
    try:
        return RiskLevel(risk_level).value
    except ValueError:
        raise ValidationError(f"Unknown risk level: {risk_level}") from None


class PermissionRegistry(BaseService):
    """
    Contract:
        Read and mutate the RBAC tables inside the caller's transaction.

    Guarantees:
        - roles_version bumps land in the same flush as the relation
          change that caused them.

    Non-goals:
        - Does NOT check the caller's authority or SoD; see
          expense_services.role_administration.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)

    # =========================================================================
    # Permissions
    # =========================================================================

    def get_permission(self, permission_id: UUID) -> Permission:
        permission = self.session.get(Permission, permission_id)
        if permission is None:
            raise PermissionNotFoundError(str(permission_id))
        return permission

    def get_permission_by_name(self, name: str) -> Permission | None:
        return self.session.execute(
            select(Permission).where(Permission.name == name)
        ).scalar_one_or_none()

    def list_permissions(
        self,
        category: str | None = None,
        risk_level: RiskLevel | str | None = None,
    ) -> list[Permission]:
        stmt = select(Permission)
        if category is not None:
            stmt = stmt.where(Permission.category == category)
        if risk_level is not None:
            stmt = stmt.where(Permission.risk_level == _risk_value(risk_level))
        return list(
            self.session.execute(stmt.order_by(Permission.category, Permission.name)).scalars()
        )

    def permission_ids_for_names(self, names: Iterable[str]) -> list[UUID]:
        wanted = set(names)
        found = dict(
            self.session.execute(
                select(Permission.name, Permission.id).where(Permission.name.in_(wanted))
            ).all()
        )
        missing = sorted(wanted - set(found))
        if missing:
            raise PermissionNotFoundError(", ".join(missing))
        return [found[name] for name in sorted(wanted)]

    def permission_names_for_ids(self, permission_ids: Iterable[UUID]) -> frozenset[str]:
        ids = set(permission_ids)
        rows = dict(
            self.session.execute(
                select(Permission.id, Permission.name).where(Permission.id.in_(ids))
            ).all()
        )
        missing = ids - set(rows)
        if missing:
            raise PermissionNotFoundError(", ".join(sorted(str(m) for m in missing)))
        return frozenset(rows.values())

    def create_permission(
        self,
        name: str,
        description: str | None = None,
        category: str | None = None,
        risk_level: RiskLevel | str | None = None,
        requires_mfa: bool = False,
    ) -> Permission:
        if self.get_permission_by_name(name) is not None:
            raise PermissionAlreadyExistsError(name)

        permission = Permission(
            name=name,
            description=description,
            category=category,
            risk_level=_risk_value(risk_level),
            requires_mfa=requires_mfa,
            created_at=self.clock.now(),
        )
        self.session.add(permission)
        self.session.flush()

        logger.info(
            "permission_created",
            extra={"permission_id": str(permission.id), "permission_name": name},
        )
        return permission

    def update_permission(self, permission_id: UUID, fields: Mapping[str, Any]) -> Permission:
        """Apply ``fields`` (description, category, risk_level, requires_mfa)."""
        if "name" in fields:
            raise ValidationError("Permission name cannot be changed")
        unknown = set(fields) - UPDATABLE_PERMISSION_FIELDS
        if unknown:
            raise ValidationError(f"Unknown permission fields: {', '.join(sorted(unknown))}")

        permission = self.get_permission(permission_id)
        for key, value in fields.items():
            if key == "risk_level":
                value = _risk_value(value)
            setattr(permission, key, value)
        if fields:
            permission.updated_at = self.clock.now()
            self.session.flush()
        return permission

    def delete_permission(self, permission_id: UUID) -> None:
        permission = self.get_permission(permission_id)
        role_count = self.session.execute(
            select(func.count(RolePermission.id)).where(
                RolePermission.permission_id == permission_id
            )
        ).scalar_one()
        if role_count > 0:
            raise PermissionInUseError(str(permission_id), role_count)

        self.session.delete(permission)
        self.session.flush()
        logger.info(
            "permission_deleted",
            extra={"permission_id": str(permission_id), "permission_name": permission.name},
        )

    # =========================================================================
    # Roles
    # =========================================================================

    def get_role(self, role_id: UUID) -> Role:
        role = self.session.get(Role, role_id)
        if role is None:
            raise RoleNotFoundError(str(role_id))
        return role

    def get_role_by_name(self, name: str) -> Role | None:
        return self.session.execute(select(Role).where(Role.name == name)).scalar_one_or_none()

    def list_roles(self, include_inactive: bool = False) -> list[Role]:
        stmt = select(Role)
        if not include_inactive:
            stmt = stmt.where(Role.is_active.is_(True))
        return list(self.session.execute(stmt.order_by(Role.name)).scalars())

    def get_role_permissions(self, role_id: UUID) -> list[Permission]:
        return list(
            self.session.execute(
                select(Permission)
                .join(RolePermission, RolePermission.permission_id == Permission.id)
                .where(RolePermission.role_id == role_id)
                .order_by(Permission.category, Permission.name)
            ).scalars()
        )

    def get_role_permission_names(self, role_id: UUID) -> frozenset[str]:
        return frozenset(
            self.session.execute(
                select(Permission.name)
                .join(RolePermission, RolePermission.permission_id == Permission.id)
                .where(RolePermission.role_id == role_id)
            ).scalars()
        )

    def role_holders(self, role_id: UUID) -> list[UUID]:
        return list(
            self.session.execute(
                select(UserRole.user_id).where(UserRole.role_id == role_id)
            ).scalars()
        )

    def create_role(
        self,
        name: str,
        description: str | None,
        permission_ids: Iterable[UUID],
        created_by: UUID | None,
        is_system: bool = False,
    ) -> Role:
        if not ROLE_NAME_PATTERN.match(name or ""):
            raise ValidationError(
                "Role name must start with a lowercase letter and contain only "
                "lowercase letters, digits, and underscores"
            )
        if self.get_role_by_name(name) is not None:
            raise RoleAlreadyExistsError(name)

        ids = list(dict.fromkeys(permission_ids))
        self.permission_names_for_ids(ids)

        now = self.clock.now()
        role = Role(
            name=name,
            description=description,
            is_system=is_system,
            is_active=True,
            created_at=now,
        )
        self.session.add(role)
        self.session.flush()

        self._grant(role.id, ids, created_by)
        self.session.flush()

        logger.info(
            "role_created",
            extra={
                "role_id": str(role.id),
                "role_name": name,
                "permission_count": len(ids),
            },
        )
        return role

    def update_role_permissions(
        self,
        role_id: UUID,
        permission_ids: Iterable[UUID],
        updated_by: UUID | None,
    ) -> list[UUID]:
        """Replace the role's permissions.  Returns the affected user ids."""
        role = self.get_role(role_id)
        if role.is_system:
            raise SystemRoleProtectedError(str(role_id), "modify")

        ids = list(dict.fromkeys(permission_ids))
        self.permission_names_for_ids(ids)

        self.session.execute(delete(RolePermission).where(RolePermission.role_id == role_id))
        self._grant(role_id, ids, updated_by)
        role.updated_at = self.clock.now()

        holders = self.role_holders(role_id)
        self._bump_roles_version(holders)
        self.session.flush()

        logger.info(
            "role_permissions_updated",
            extra={
                "role_id": str(role_id),
                "permission_count": len(ids),
                "affected_users": len(holders),
            },
        )
        return holders

    def delete_role(self, role_id: UUID) -> list[UUID]:
        """Delete a non-system role.  Returns the users who held it."""
        role = self.get_role(role_id)
        if role.is_system:
            raise SystemRoleProtectedError(str(role_id), "delete")

        holders = self.role_holders(role_id)
        self.session.execute(delete(UserRole).where(UserRole.role_id == role_id))
        self.session.execute(delete(RolePermission).where(RolePermission.role_id == role_id))
        self._bump_roles_version(holders)
        self.session.delete(role)
        self.session.flush()

        logger.info(
            "role_deleted",
            extra={
                "role_id": str(role_id),
                "role_name": role.name,
                "affected_users": len(holders),
            },
        )
        return holders

    def _grant(self, role_id: UUID, permission_ids: list[UUID], granted_by: UUID | None) -> None:
        now = self.clock.now()
        for permission_id in permission_ids:
            self.session.add(
                RolePermission(
                    role_id=role_id,
                    permission_id=permission_id,
                    granted_by=granted_by,
                    granted_at=now,
                )
            )

    # =========================================================================
    # User roles
    # =========================================================================

    def _require_user(self, user_id: UUID) -> User:
        user = self.session.get(User, user_id)
        if user is None:
            raise UserNotFoundError(str(user_id))
        return user

    def _bump_roles_version(self, user_ids: Iterable[UUID]) -> None:
        ids = list(set(user_ids))
        if not ids:
            return
        self.session.execute(
            update(User)
            .where(User.id.in_(ids))
            .values(roles_version=User.roles_version + 1)
            .execution_options(synchronize_session="fetch")
        )
        logger.debug("roles_version_bumped", extra={"user_count": len(ids)})

    def get_user_roles(self, user_id: UUID) -> list[Role]:
        return list(
            self.session.execute(
                select(Role)
                .join(UserRole, UserRole.role_id == Role.id)
                .where(UserRole.user_id == user_id, Role.is_active.is_(True))
                .order_by(Role.name)
            ).scalars()
        )

    def get_user_role_names(self, user_id: UUID) -> tuple[str, ...]:
        return tuple(role.name for role in self.get_user_roles(user_id))

    def get_user_role_ids(self, user_id: UUID) -> list[UUID]:
        return list(
            self.session.execute(
                select(UserRole.role_id).where(UserRole.user_id == user_id)
            ).scalars()
        )

    def get_user_permissions(
        self,
        user_id: UUID,
        exclude_role_id: UUID | None = None,
    ) -> frozenset[str]:
        """Effective permissions, optionally ignoring one of the user's roles."""
        stmt = (
            select(Permission.name)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .join(UserRole, UserRole.role_id == RolePermission.role_id)
            .join(Role, Role.id == UserRole.role_id)
            .where(UserRole.user_id == user_id, Role.is_active.is_(True))
        )
        if exclude_role_id is not None:
            stmt = stmt.where(UserRole.role_id != exclude_role_id)
        return frozenset(self.session.execute(stmt.distinct()).scalars())

    def permissions_for_roles(self, role_ids: Iterable[UUID]) -> frozenset[str]:
        ids = list(set(role_ids))
        if not ids:
            return frozenset()
        return frozenset(
            self.session.execute(
                select(Permission.name)
                .join(RolePermission, RolePermission.permission_id == Permission.id)
                .where(RolePermission.role_id.in_(ids))
                .distinct()
            ).scalars()
        )

    def assign_role_to_user(
        self,
        user_id: UUID,
        role_id: UUID,
        assigned_by: UUID | None,
    ) -> bool:
        """Idempotent.  True when a new assignment row was written."""
        self._require_user(user_id)
        self.get_role(role_id)

        existing = self.session.execute(
            select(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
        ).scalar_one_or_none()

        created = existing is None
        if created:
            self.session.add(
                UserRole(
                    user_id=user_id,
                    role_id=role_id,
                    assigned_by=assigned_by,
                    assigned_at=self.clock.now(),
                )
            )
        self._bump_roles_version([user_id])
        self.session.flush()

        logger.info(
            "role_assigned",
            extra={"user_id": str(user_id), "role_id": str(role_id), "row_created": created},
        )
        return created

    def remove_role_from_user(self, user_id: UUID, role_id: UUID) -> bool:
        self._require_user(user_id)
        result = self.session.execute(
            delete(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
        )
        self._bump_roles_version([user_id])
        self.session.flush()

        removed = bool(result.rowcount)
        logger.info(
            "role_removed",
            extra={"user_id": str(user_id), "role_id": str(role_id), "removed": removed},
        )
        return removed

    def set_user_roles(
        self,
        user_id: UUID,
        role_ids: Iterable[UUID],
        assigned_by: UUID | None,
    ) -> None:
        """Replace every role the user holds with ``role_ids``."""
        self._require_user(user_id)
        ids = list(dict.fromkeys(role_ids))
        for role_id in ids:
            self.get_role(role_id)

        self.session.execute(delete(UserRole).where(UserRole.user_id == user_id))
        now = self.clock.now()
        for role_id in ids:
            self.session.add(
                UserRole(
                    user_id=user_id,
                    role_id=role_id,
                    assigned_by=assigned_by,
                    assigned_at=now,
                )
            )
        self._bump_roles_version([user_id])
        self.session.flush()

        logger.info(
            "user_roles_replaced",
            extra={"user_id": str(user_id), "role_count": len(ids)},
        )

    # =========================================================================
    # Permission checks
    # =========================================================================

    def has_permission(self, user_id: UUID, permission_name: str) -> bool:
        return permission_name in self.get_user_permissions(user_id)

    def has_all_permissions(
        self,
        user_id: UUID,
        permission_names: Iterable[str],
    ) -> PermissionCheckResult:
        required = list(permission_names)
        if not required:
            return PermissionCheckResult(allowed=True)
        held = self.get_user_permissions(user_id)
        missing = tuple(p for p in required if p not in held)
        if missing:
            return PermissionCheckResult(
                allowed=False,
                missing_permissions=missing,
                reason=f"Missing required permissions: {', '.join(missing)}",
            )
        return PermissionCheckResult(allowed=True)

    def has_any_permission(self, user_id: UUID, permission_names: Iterable[str]) -> bool:
        wanted = list(permission_names)
        if not wanted:
            return True
        held = self.get_user_permissions(user_id)
        return any(p in held for p in wanted)

    def get_user_auth_context(self, user_id: UUID) -> UserAuthContext | None:
        """None for unknown or inactive users."""
        user = self.session.get(User, user_id)
        if user is None or not user.is_active:
            return None
        return UserAuthContext(
            user_id=user.id,
            email=user.email,
            roles=self.get_user_role_names(user_id),
            roles_version=user.roles_version,
            permissions=self.get_user_permissions(user_id),
            department_id=user.department_id,
            manager_id=user.manager_id,
        )

    # =========================================================================
    # SoD rules
    # =========================================================================

    def create_rule(
        self,
        name: str,
        description: str,
        permission_set: Iterable[str],
        risk_level: RiskLevel | str = RiskLevel.HIGH,
    ) -> SodRule:
        names = sorted(set(permission_set))
        if not names:
            raise ValidationError("SoD rule must name at least one permission")

        rule = SodRule(
            name=name,
            description=description,
            permission_set=names,
            risk_level=_risk_value(risk_level),
            is_active=True,
            created_at=self.clock.now(),
        )
        self.session.add(rule)
        self.session.flush()
        logger.info(
            "sod_rule_created",
            extra={"rule_name": name, "permission_set": names},
        )
        return rule

    def list_active_rules(self) -> list[SodRule]:
        return list(
            self.session.execute(
                select(SodRule).where(SodRule.is_active.is_(True)).order_by(SodRule.name)
            ).scalars()
        )

    def active_rule_specs(self) -> tuple[SodRuleSpec, ...]:
        return tuple(
            SodRuleSpec(
                name=rule.name,
                description=rule.description or "",
                permission_set=frozenset(rule.permission_set),
                risk_level=RiskLevel(rule.risk_level),
            )
            for rule in self.list_active_rules()
        )

    def deactivate_rule(self, rule_id: UUID) -> SodRule:
        rule = self.session.get(SodRule, rule_id)
        if rule is None:
            raise SodRuleNotFoundError(str(rule_id))
        rule.is_active = False
        rule.updated_at = self.clock.now()
        self.session.flush()
        logger.info("sod_rule_deactivated", extra={"rule_name": rule.name})
        return rule
