"""
ORM-level immutability enforcement (layer 1 of 2).

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity            | When Immutable                     | Layer 2 (PostgreSQL)
------------------|------------------------------------|-----------------------
ApprovalHistory   | ALWAYS (from creation)             | 01_approval_history.sql
AuditLogEntry     | ALWAYS (from creation)             | 02_audit_log.sql
ExpenseReport     | workflow_snapshot once set may     | (ORM only)
                  | only be cleared, never replaced    |

SQLAlchemy fires mapper events before UPDATE/DELETE reaches the database.
The listeners below raise ImmutabilityViolationError and the flush aborts.

The snapshot rule allows exactly two writes to a non-null snapshot: clearing
it (withdraw, return with hard_restart) and re-setting it after it has been
cleared (re-submit).  Replacing one snapshot with a different one in a single
flush is a violation: in-flight reports keep the definition they started with.

===============================================================================
USAGE
===============================================================================

    from expense_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

To simulate tampering (TESTS ONLY):

    unregister_immutability_listeners()
    ...
    register_immutability_listeners()
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from expense_kernel.exceptions import ImmutabilityViolationError
from expense_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _block(entity_type: str, entity_id: str, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "operation": operation,
            "reason": reason,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
    )


def _check_approval_history_update(mapper, connection, target):
    _block(
        "ApprovalHistory",
        str(target.id),
        "UPDATE",
        "Approval history is append-only",
    )


def _check_approval_history_delete(mapper, connection, target):
    _block(
        "ApprovalHistory",
        str(target.id),
        "DELETE",
        "Approval history is append-only",
    )


def _check_audit_log_update(mapper, connection, target):
    _block(
        "AuditLogEntry",
        str(target.event_id),
        "UPDATE",
        "Audit log entries are append-only",
    )


def _check_audit_log_delete(mapper, connection, target):
    _block(
        "AuditLogEntry",
        str(target.event_id),
        "DELETE",
        "Audit log entries are append-only",
    )


def _check_workflow_snapshot_write_once(mapper, connection, target):
    """Block replacing one non-null workflow snapshot with another."""
    history = get_history(target, "workflow_snapshot")
    if not history.has_changes():
        return

    old_values = [v for v in history.deleted if v is not None]
    new_values = [v for v in history.added if v is not None]
    if old_values and new_values and old_values[0] != new_values[0]:
        _block(
            "ExpenseReport",
            str(target.id),
            "UPDATE",
            "Workflow snapshot is write-once while the report is in flight",
        )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Call after models are imported and before any database work.
    Idempotent: already-registered listeners are not added twice.
    """
    from expense_kernel.models.approval_history import ApprovalHistory
    from expense_kernel.models.audit_log import AuditLogEntry
    from expense_kernel.models.expense_report import ExpenseReport

    _safe_add_listener(ApprovalHistory, "before_update", _check_approval_history_update)
    _safe_add_listener(ApprovalHistory, "before_delete", _check_approval_history_delete)

    _safe_add_listener(AuditLogEntry, "before_update", _check_audit_log_update)
    _safe_add_listener(AuditLogEntry, "before_delete", _check_audit_log_delete)

    _safe_add_listener(ExpenseReport, "before_update", _check_workflow_snapshot_write_once)


def _safe_add_listener(target, event_name, listener_fn):
    if not event.contains(target, event_name, listener_fn):
        event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if it was never registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only for tests that need to simulate tampering.
    """
    from expense_kernel.models.approval_history import ApprovalHistory
    from expense_kernel.models.audit_log import AuditLogEntry
    from expense_kernel.models.expense_report import ExpenseReport

    _safe_remove_listener(ApprovalHistory, "before_update", _check_approval_history_update)
    _safe_remove_listener(ApprovalHistory, "before_delete", _check_approval_history_delete)

    _safe_remove_listener(AuditLogEntry, "before_update", _check_audit_log_update)
    _safe_remove_listener(AuditLogEntry, "before_delete", _check_audit_log_delete)

    _safe_remove_listener(ExpenseReport, "before_update", _check_workflow_snapshot_write_once)
