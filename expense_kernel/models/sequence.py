"""
Module: expense_kernel.models.sequence
Responsibility: Named counter rows used as locked serialization points.
Architecture position: Kernel > Models.  May import from db/ only.

The ``audit_log`` row is locked FOR UPDATE by every audit append; holding it
until commit is what guarantees one writer at a time at the ledger tail.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from expense_kernel.db.base import Base


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
