"""
AuditLedger -- hash-chained, tamper-evident action log.

Responsibility:
    Appends one ``AuditLogEntry`` per significant action (workflow
    transitions, role and permission changes, exports), links each entry to
    its predecessor through a SHA-256 chain, and verifies or exports ranges
    of the chain for compliance review.

Architecture position:
    Kernel > Services.  Called by WorkflowEngine, WorkflowDefinitionStore,
    and the expense_services administration layer, always inside the
    caller's transaction.

Invariants enforced:
    - data_hash = SHA256(canonical_json({event_id, timestamp, actor_id,
      action, resource_type, resource_id, changes, metadata})).
    - chain_hash = SHA256(prev.chain_hash + "|" + data_hash), or data_hash
      for the genesis entry.
    - Single writer at the tail: the ``audit_log`` sequence counter row is
      locked FOR UPDATE before the tail is read, and stays locked until the
      enclosing transaction ends.  Two appends can never claim the same
      predecessor.
    - Append-only: AuditLogEntry rows are protected by ORM listeners and,
      on PostgreSQL, by triggers.

Failure modes:
    - Database errors propagate; nothing is retried.  Because the append
      runs in the caller's transaction, a failed append rolls back the
      action it describes.

Audit relevance:
    Sensitive actions (allow-list) are flagged ``is_sensitive`` and echoed
    to the system log at WARNING.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from expense_kernel.domain.audit import (
    AuditContext,
    AuditExport,
    AuditLogFilter,
    AuditLogPage,
    ChainIntegrityReport,
    ChainViolation,
    ChainViolationKind,
)
from expense_kernel.domain.clock import Clock
from expense_kernel.logging_config import LogContext, get_logger
from expense_kernel.models.audit_log import AuditLogEntry
from expense_kernel.models.organization import User
from expense_kernel.models.rbac import Role, UserRole
from expense_kernel.services.base import BaseService
from expense_kernel.services.sequence_service import SequenceService
from expense_kernel.utils.hashing import hash_chain_link, hash_payload, to_json_safe

logger = get_logger("services.audit_ledger")

DEFAULT_SENSITIVE_ACTIONS: frozenset[str] = frozenset({
    "user.delete",
    "user.impersonate",
    "role.assign.admin",
    "role.assign.finance",
    "audit.export",
    "audit.archive",
    "system.restore",
    "emergency.access",
    "emergency.override",
    "report.force_approve",
    "workflow.override",
})

EXPORT_LIMIT = 100_000


def compute_data_hash(
    *,
    event_id: UUID,
    timestamp: datetime,
    actor_id: UUID | None,
    action: str,
    resource_type: str,
    resource_id: str | None,
    changes: Any,
    metadata: Any,
) -> str:
    """Hash of the fields an audit entry commits to."""
    return hash_payload({
        "event_id": str(event_id),
        "timestamp": timestamp.isoformat(),
        "actor_id": str(actor_id) if actor_id else None,
        "action": action,
        "resource_type": resource_type,
        "resource_id": resource_id,
        "changes": changes,
        "metadata": metadata,
    })


def calculate_changes(
    old: Mapping[str, Any],
    new: Mapping[str, Any],
    fields: Iterable[str] | None = None,
) -> dict[str, dict[str, Any]]:
    """``{field: {"from": old, "to": new}}`` for every field whose value differs."""
    names = list(fields) if fields is not None else sorted(set(old) | set(new))
    changes: dict[str, dict[str, Any]] = {}
    for name in names:
        before = to_json_safe(old.get(name))
        after = to_json_safe(new.get(name))
        if before != after:
            changes[name] = {"from": before, "to": after}
    return changes


class AuditLedger(BaseService):
    """
    Append, query, verify, and export the audit hash chain.

    Contract:
        ``log_audit_event`` flushes exactly one AuditLogEntry and returns its
        event_id.  It never commits.

    Guarantees:
        - Every flushed entry's chain_hash links to the entry with the next
          lower seq (or to nothing, for the first entry).
        - ``verify_chain_integrity`` over an untouched range reports no
          violations.

    Non-goals:
        - Does NOT archive or prune entries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        sensitive_actions: Iterable[str] | None = None,
    ):
        super().__init__(session, clock)
        self._sequence = SequenceService(session)
        self._sensitive_actions = (
            frozenset(sensitive_actions)
            if sensitive_actions is not None
            else DEFAULT_SENSITIVE_ACTIONS
        )

    def is_sensitive_action(self, action: str) -> bool:
        return action in self._sensitive_actions

    # =========================================================================
    # Append
    # =========================================================================

    def log_audit_event(
        self,
        *,
        action: str,
        resource_type: str,
        actor_id: UUID | None = None,
        resource_id: str | UUID | None = None,
        resource_version: int | None = None,
        changes: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
        actor_email: str | None = None,
        actor_roles: Iterable[str] | None = None,
        action_category: str | None = None,
        context: AuditContext | None = None,
    ) -> UUID:
        """
        Append one entry to the chain.

        Preconditions:
            - Called inside an open transaction; the tail lock is released
              only when that transaction ends.

        Postconditions:
            - The new entry is flushed with seq greater than every existing
              entry and chain_hash linked to the previous tail.
        """
        # Locks the tail; everything below runs single-writer.
        seq = self._sequence.next_value(SequenceService.AUDIT_LOG)

        tail = self.session.execute(
            select(AuditLogEntry).order_by(AuditLogEntry.seq.desc()).limit(1)
        ).scalar_one_or_none()

        event_id = uuid4()
        timestamp = self.clock.now()
        resource_key = str(resource_id) if resource_id is not None else None
        stored_changes = to_json_safe(dict(changes)) if changes is not None else None
        stored_metadata = to_json_safe(dict(metadata)) if metadata is not None else None

        data_hash = compute_data_hash(
            event_id=event_id,
            timestamp=timestamp,
            actor_id=actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_key,
            changes=stored_changes,
            metadata=stored_metadata,
        )
        chain_hash = hash_chain_link(tail.chain_hash if tail else None, data_hash)

        roles = list(actor_roles) if actor_roles is not None else None
        if actor_id is not None and (actor_email is None or roles is None):
            actor_email, roles = self._resolve_actor(actor_id, actor_email, roles)

        is_sensitive = self.is_sensitive_action(action)
        ctx = context or AuditContext()

        entry = AuditLogEntry(
            event_id=event_id,
            seq=seq,
            timestamp=timestamp,
            actor_id=actor_id,
            actor_email=actor_email,
            actor_roles=roles,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            session_id=ctx.session_id,
            action=action,
            action_category=action_category,
            resource_type=resource_type,
            resource_id=resource_key,
            resource_version=resource_version,
            changes=stored_changes,
            event_metadata=stored_metadata,
            data_hash=data_hash,
            chain_hash=chain_hash,
            previous_event_id=tail.event_id if tail else None,
            is_sensitive=is_sensitive,
        )
        self.session.add(entry)
        self.session.flush()

        with LogContext.bind(event_id=str(event_id)):
            logger.info(
                "audit_event_appended",
                extra={
                    "seq": seq,
                    "action": action,
                    "resource_type": resource_type,
                    "resource_id": resource_key,
                },
            )
            if is_sensitive:
                logger.warning(
                    "sensitive_action_performed",
                    extra={
                        "action": action,
                        "actor_id": str(actor_id) if actor_id else None,
                        "actor_email": actor_email,
                        "resource_type": resource_type,
                        "resource_id": resource_key,
                    },
                )

        return event_id

    def _resolve_actor(
        self,
        actor_id: UUID,
        actor_email: str | None,
        actor_roles: list[str] | None,
    ) -> tuple[str | None, list[str] | None]:
        if actor_email is None:
            user = self.session.get(User, actor_id)
            if user is not None:
                actor_email = user.email
        if actor_roles is None:
            actor_roles = list(
                self.session.execute(
                    select(Role.name)
                    .join(UserRole, UserRole.role_id == Role.id)
                    .where(UserRole.user_id == actor_id)
                    .order_by(Role.name)
                ).scalars()
            )
        return actor_email, actor_roles

    # =========================================================================
    # Queries
    # =========================================================================

    def get_audit_logs(self, filters: AuditLogFilter | None = None) -> AuditLogPage:
        """Filtered page of entries, newest first, with the unpaged total."""
        f = filters or AuditLogFilter()
        conditions = []
        if f.actor_id is not None:
            conditions.append(AuditLogEntry.actor_id == f.actor_id)
        if f.resource_type is not None:
            conditions.append(AuditLogEntry.resource_type == f.resource_type)
        if f.resource_id is not None:
            conditions.append(AuditLogEntry.resource_id == str(f.resource_id))
        if f.action is not None:
            conditions.append(AuditLogEntry.action == f.action)
        if f.action_category is not None:
            conditions.append(AuditLogEntry.action_category == f.action_category)
        if f.start is not None:
            conditions.append(AuditLogEntry.timestamp >= f.start)
        if f.end is not None:
            conditions.append(AuditLogEntry.timestamp <= f.end)
        if f.is_sensitive is not None:
            conditions.append(AuditLogEntry.is_sensitive == f.is_sensitive)

        total = self.session.execute(
            select(func.count(AuditLogEntry.id)).where(*conditions)
        ).scalar_one()

        logs = self.session.execute(
            select(AuditLogEntry)
            .where(*conditions)
            .order_by(AuditLogEntry.timestamp.desc(), AuditLogEntry.seq.desc())
            .limit(f.limit)
            .offset(f.offset)
        ).scalars()

        return AuditLogPage(logs=tuple(logs), total=total)

    def get_resource_audit_history(
        self,
        resource_type: str,
        resource_id: str | UUID,
    ) -> list[AuditLogEntry]:
        return list(
            self.session.execute(
                select(AuditLogEntry)
                .where(
                    AuditLogEntry.resource_type == resource_type,
                    AuditLogEntry.resource_id == str(resource_id),
                )
                .order_by(AuditLogEntry.timestamp, AuditLogEntry.seq)
            ).scalars()
        )

    # =========================================================================
    # Verification
    # =========================================================================

    def verify_chain_integrity(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ChainIntegrityReport:
        """
        Recompute every link in the range.

        For each entry the expected chain hash is derived from the stored
        chain hash of its recorded predecessor and its own stored data hash.
        The stored data hash is also recomputed from the entry's content.
        Entries whose predecessor lies outside the range are skipped.  Once
        an entry fails, every entry chained after it is reported as
        ``predecessor_broken``.
        """
        stmt = select(AuditLogEntry)
        if start is not None:
            stmt = stmt.where(AuditLogEntry.timestamp >= start)
        if end is not None:
            stmt = stmt.where(AuditLogEntry.timestamp <= end)
        entries = list(
            self.session.execute(
                stmt.order_by(AuditLogEntry.timestamp, AuditLogEntry.seq)
                .execution_options(populate_existing=True)
            ).scalars()
        )

        chain_by_event = {e.event_id: e.chain_hash for e in entries}
        broken: set[UUID] = set()
        violations: list[ChainViolation] = []
        verified = 0
        skipped = 0

        for entry in entries:
            if entry.previous_event_id is None:
                expected = entry.data_hash
            elif entry.previous_event_id in chain_by_event:
                expected = hash_chain_link(
                    chain_by_event[entry.previous_event_id], entry.data_hash
                )
            else:
                skipped += 1
                continue

            kind: ChainViolationKind | None = None
            if entry.chain_hash != expected:
                kind = ChainViolationKind.HASH_MISMATCH
            elif self._content_hash(entry) != entry.data_hash:
                kind = ChainViolationKind.DATA_MISMATCH
            elif entry.previous_event_id in broken:
                kind = ChainViolationKind.PREDECESSOR_BROKEN

            if kind is None:
                verified += 1
                continue

            broken.add(entry.event_id)
            violations.append(
                ChainViolation(
                    event_id=entry.event_id,
                    expected_hash=expected,
                    actual_hash=entry.chain_hash,
                    kind=kind,
                    seq=entry.seq,
                )
            )

        report = ChainIntegrityReport(
            total_events=len(entries),
            verified=verified,
            skipped=skipped,
            violations=tuple(violations),
        )
        if violations:
            logger.error(
                "audit_chain_violation_detected",
                extra={
                    "total_events": report.total_events,
                    "violation_count": len(violations),
                    "first_violation": str(violations[0].event_id),
                },
            )
        else:
            logger.info(
                "audit_chain_verified",
                extra={
                    "total_events": report.total_events,
                    "verified": verified,
                    "skipped": skipped,
                },
            )
        return report

    @staticmethod
    def _content_hash(entry: AuditLogEntry) -> str:
        return compute_data_hash(
            event_id=entry.event_id,
            timestamp=entry.timestamp,
            actor_id=entry.actor_id,
            action=entry.action,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            changes=entry.changes,
            metadata=entry.event_metadata,
        )

    # =========================================================================
    # Export
    # =========================================================================

    def export_audit_logs(
        self,
        start: datetime,
        end: datetime,
        resource_type: str | None = None,
        actor_id: UUID | None = None,
        exported_by: UUID | None = None,
    ) -> AuditExport:
        """
        Records in range plus an integrity check over the same range.

        When ``exported_by`` is given the export itself is appended to the
        ledger as ``audit.export``, after the records are read.
        """
        page = self.get_audit_logs(
            AuditLogFilter(
                actor_id=actor_id,
                resource_type=resource_type,
                start=start,
                end=end,
                limit=EXPORT_LIMIT,
                offset=0,
            )
        )
        integrity = self.verify_chain_integrity(start, end)

        export = AuditExport(
            export_date=self.clock.now(),
            start=start,
            end=end,
            total_records=page.total,
            records=tuple(e.to_dict() for e in page.logs),
            integrity=integrity,
        )

        if exported_by is not None:
            self.log_audit_event(
                action="audit.export",
                action_category="audit",
                resource_type="audit_log",
                actor_id=exported_by,
                metadata={
                    "start": start,
                    "end": end,
                    "resource_type": resource_type,
                    "actor_id": actor_id,
                    "total_records": page.total,
                },
            )

        return export
