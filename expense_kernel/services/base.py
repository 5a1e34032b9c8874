"""
BaseService -- abstract base for kernel services that write.

Responsibility:
    Common constructor and session contract.  Concrete services receive a
    SQLAlchemy ``Session`` and persist with ``session.flush()``; they never
    commit or roll back.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries belong to the caller (WorkflowEngine with
      ``auto_commit``, RoleAdministrationService, ``session_scope()``, or
      the test harness).
"""

from abc import ABC

from sqlalchemy.orm import Session

from expense_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Contract:
        Accepts a Session from the caller and flushes within its
        transaction.

    Non-goals:
        - Does NOT manage the transaction lifecycle.
        - Read-only lookups belong in ``expense_kernel/selectors/``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
