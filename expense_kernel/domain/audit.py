"""
Audit ledger domain types (``expense_kernel.domain.audit``).

Responsibility
--------------
Pure value objects for the hash-chained audit ledger: filters for reading it,
the result of an integrity verification, and the export envelope.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* ``ChainIntegrityReport.verified`` counts entries whose chain hash was
  recomputed and matched; entries whose predecessor lies outside the
  verified range are counted in ``skipped`` instead.
* A violation is a chain hash mismatch, a stored data hash that no longer
  matches the entry content, or an entry chained after either one
  (``ChainViolationKind.PREDECESSOR_BROKEN``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


@dataclass(frozen=True)
class AuditContext:
    """Request metadata captured alongside an audit entry."""

    ip_address: str | None = None
    user_agent: str | None = None
    session_id: str | None = None


@dataclass(frozen=True)
class AuditLogFilter:
    actor_id: UUID | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    action: str | None = None
    action_category: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    is_sensitive: bool | None = None
    limit: int = 50
    offset: int = 0


class ChainViolationKind(str, Enum):
    HASH_MISMATCH = "hash_mismatch"
    DATA_MISMATCH = "data_mismatch"
    PREDECESSOR_BROKEN = "predecessor_broken"


@dataclass(frozen=True)
class ChainViolation:
    """One entry whose chain hash cannot be trusted."""

    event_id: UUID
    expected_hash: str
    actual_hash: str
    kind: ChainViolationKind = ChainViolationKind.HASH_MISMATCH
    seq: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": str(self.event_id),
            "expected_hash": self.expected_hash,
            "actual_hash": self.actual_hash,
            "kind": self.kind.value,
            "seq": self.seq,
        }


@dataclass(frozen=True)
class ChainIntegrityReport:
    total_events: int
    verified: int
    skipped: int = 0
    violations: tuple[ChainViolation, ...] = ()

    @property
    def is_intact(self) -> bool:
        return not self.violations

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_events": self.total_events,
            "verified": self.verified,
            "skipped": self.skipped,
            "violations": [v.to_dict() for v in self.violations],
        }


@dataclass(frozen=True)
class AuditLogPage:
    logs: tuple[Any, ...]
    total: int


@dataclass(frozen=True)
class AuditExport:
    """Compliance export: the records plus an integrity check over the range."""

    export_date: datetime
    start: datetime
    end: datetime
    total_records: int
    records: tuple[dict[str, Any], ...] = field(default_factory=tuple)
    integrity: ChainIntegrityReport | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "export_date": self.export_date.isoformat(),
            "date_range": {
                "start": self.start.isoformat(),
                "end": self.end.isoformat(),
            },
            "total_records": self.total_records,
            "records": list(self.records),
            "integrity_check": {
                "verified": self.integrity.verified if self.integrity else 0,
                "violations": len(self.integrity.violations) if self.integrity else 0,
            },
        }
