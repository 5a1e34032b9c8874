"""
Module: expense_kernel.models.audit_log
Responsibility: ORM persistence for the tamper-evident audit hash chain.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (ORM listener + PostgreSQL trigger).
    - chain_hash = SHA256(prev.chain_hash | data_hash), or data_hash for the
      genesis entry.  Computed and verified by AuditLedger.
    - seq is unique and strictly increasing; allocated under the locked
      ``audit_log`` counter row, which also serializes reading the tail.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.

Audit relevance:
    This table IS the compliance record.  Every workflow transition, role
    or permission change, and audit export writes a row here.
"""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, BigInteger, Boolean, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from expense_kernel.db.base import Base, UTCDateTime, UUIDString


class AuditLogEntry(Base):
    """
    One link of the audit hash chain.

    Non-goals:
        The model does not compute hashes; AuditLedger does.
    """

    __tablename__ = "audit_log"

    __table_args__ = (
        Index("idx_audit_log_resource", "resource_type", "resource_id"),
        Index("idx_audit_log_actor", "actor_id"),
        Index("idx_audit_log_action", "action"),
        Index("idx_audit_log_timestamp", "timestamp", "seq"),
    )

    event_id: Mapped[UUID] = mapped_column(
        UUIDString(), nullable=False, unique=True, default=uuid4
    )
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    actor_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    actor_roles: Mapped[list | None] = mapped_column(JSON, nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    action: Mapped[str] = mapped_column(String(100), nullable=False)
    action_category: Mapped[str | None] = mapped_column(String(50), nullable=True)

    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resource_version: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    changes: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    data_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    chain_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    previous_event_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    is_sensitive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<AuditLogEntry #{self.seq} {self.action} {self.resource_type}:{self.resource_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.previous_event_id is None

    def to_dict(self) -> dict:
        return {
            "event_id": str(self.event_id),
            "seq": self.seq,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": str(self.actor_id) if self.actor_id else None,
            "actor_email": self.actor_email,
            "actor_roles": self.actor_roles,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "session_id": self.session_id,
            "action": self.action,
            "action_category": self.action_category,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "resource_version": self.resource_version,
            "changes": self.changes,
            "metadata": self.event_metadata,
            "data_hash": self.data_hash,
            "chain_hash": self.chain_hash,
            "previous_event_id": (
                str(self.previous_event_id) if self.previous_event_id else None
            ),
            "is_sensitive": self.is_sensitive,
        }
