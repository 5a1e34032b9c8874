"""
Module: expense_kernel.models.rbac
Responsibility: ORM persistence for permissions, roles, their many-to-many
    links, user role assignments, and Separation-of-Duties rules.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - permissions.name and roles.name are unique.
    - (role_id, permission_id) and (user_id, role_id) are unique pairs.
    - A permission referenced by role_permissions cannot be deleted
      (FK, plus an explicit check in PermissionRegistry).
    - Roles with is_system=True are never edited or deleted (enforced by
      PermissionRegistry).

Audit relevance:
    granted_by / assigned_by record who widened someone's access.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from expense_kernel.db.base import Base, TimestampedBase, UTCDateTime, UUIDString


class Permission(TimestampedBase):
    """
    A named capability such as ``report.approve`` or ``audit.export``.

    The name is immutable once created; PermissionRegistry.update_permission
    does not accept it.
    """

    __tablename__ = "permissions"

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    risk_level: Mapped[str | None] = mapped_column(String(20), nullable=True)
    requires_mfa: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<Permission {self.name}>"


class Role(TimestampedBase):
    __tablename__ = "roles"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Role {self.name}{' (system)' if self.is_system else ''}>"


class RolePermission(Base):
    __tablename__ = "role_permissions"

    __table_args__ = (
        UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
    )

    role_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    permission_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("permissions.id"),
        nullable=False,
        index=True,
    )
    granted_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    granted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


class UserRole(Base):
    __tablename__ = "user_roles"

    __table_args__ = (
        UniqueConstraint("user_id", "role_id", name="uq_user_role"),
    )

    user_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    assigned_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


class SodRule(TimestampedBase):
    """
    A toxic permission combination.

    Fires when a subject's effective permission set is a superset of
    permission_set.
    """

    __tablename__ = "sod_rules"

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    permission_set: Mapped[list] = mapped_column(JSON, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False, default="high")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<SodRule {self.name}>"
