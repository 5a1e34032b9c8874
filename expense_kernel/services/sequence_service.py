"""
SequenceService -- monotonic allocation through locked counter rows.

Responsibility:
    Hands out strictly increasing numbers per named sequence.  Each
    allocation locks the counter row (``SELECT ... FOR UPDATE``) and holds
    the lock until the caller's transaction ends.

Architecture position:
    Kernel > Services.  Used by AuditLedger, whose ``audit_log`` counter
    doubles as the single-writer lock on the ledger tail.

Invariants enforced:
    - Monotonicity: the locked counter row is the only source of the next
      value.  Aggregate-max-plus-one is never used.
    - Transactional: a rolled-back transaction returns its value.

Failure modes:
    - IntegrityError on concurrent first-use creation: handled with a
      savepoint and a locked re-read.
    - SequenceAllocationError if the counter row cannot be found after the
      race retry.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from expense_kernel.exceptions import SequenceAllocationError
from expense_kernel.logging_config import get_logger
from expense_kernel.models.sequence import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    """
    Contract:
        ``next_value(name)`` returns an integer > 0, greater than every value
        previously committed for ``name``.

    Non-goals:
        - Does NOT commit.  Callers must be inside a transaction for the
          row lock to mean anything.
    """

    AUDIT_LOG = "audit_log"

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        # populate_existing refreshes an identity-mapped counter without
        # expiring the rest of the session's pending state
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        self._session.flush()

        counter = self._locked_counter(sequence_name)

        if counter is None:
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._locked_counter(sequence_name)
                if counter is None:
                    raise SequenceAllocationError(sequence_name)

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return counter.current_value if counter else None
