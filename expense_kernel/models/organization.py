"""
Module: expense_kernel.models.organization
Responsibility: ORM persistence for users and departments, the
    organizational data the approval guard and permission registry read.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - users.roles_version starts at 1 and only increases.  Every change to a
      user's effective permission set bumps it in the same transaction so
      tokens embedding the old version stop validating.
    - users.email is unique.

Audit relevance:
    department_id and manager_id drive the same-department and
    reporting-chain checks of the approval guard.
"""

from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from expense_kernel.db.base import TimestampedBase, UUIDString


class Department(TimestampedBase):
    __tablename__ = "departments"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str | None] = mapped_column(String(50), unique=True, nullable=True)

    def __repr__(self) -> str:
        return f"<Department {self.code or self.name}>"


class User(TimestampedBase):
    """
    A person who submits or approves expense reports.

    Contract:
        manager_id forms the reporting chain.  The chain may contain cycles
        in bad data; every traversal is bounded (see UserSelector).
    """

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    username: Mapped[str | None] = mapped_column(String(100), nullable=True)

    department_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("departments.id"),
        nullable=True,
    )

    manager_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("users.id"),
        nullable=True,
    )

    roles_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<User {self.email}>"
