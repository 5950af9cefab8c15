"""
SequenceService -- numbered counters for journal rows, audit events and codes.

Responsibility:
    Hands out the next integer of a named counter.  The ledger numbers
    journal rows and audit events from global counters, and batch codes,
    child batch suffixes, brandy batch suffixes and lot codes from scoped
    ones (one counter per year, parent batch, distillation reference or
    batch-and-day).

Architecture position:
    Kernel > Services -- used by JournalWriter, AuditorService,
    BatchService, PackagingService and the distillation handler.

Invariants enforced:
    - A counter row is read with ``SELECT ... FOR UPDATE`` before it is
      incremented, so two transactions never receive the same value.
      Counters are never derived from MAX(seq) + 1.
    - The first value of every counter is 1.
    - Values become visible with the caller's commit; a rollback hands the
      value back.

Failure modes:
    - Two transactions creating the same counter at once: the loser's
      INSERT fails inside a savepoint and it re-reads the winner's row.
"""

from uuid import UUID

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from cellar_kernel.db.base import Base
from cellar_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    # "journal_entry", "audit_event", "batch_code:2026", "lot:<batch_id>:260315", ...
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


def batch_code_counter(year: int) -> str:
    return f"batch_code:{year}"


def split_counter(parent_batch_id: UUID) -> str:
    return f"split:{parent_batch_id}"


def brandy_counter(distillation_ref: str) -> str:
    return f"brandy:{distillation_ref}"


class SequenceService:
    """
    Contract:
        Flushes the counter row; never commits.  The row lock is held until
        the caller's transaction ends.
    """

    JOURNAL_ENTRY = "journal_entry"
    AUDIT_EVENT = "audit_event"

    def __init__(self, session: Session):
        self._session = session

    def _lock(self, name: str) -> SequenceCounter | None:
        # populate_existing refreshes this row only; the caller's pending
        # objects stay untouched.
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _create(self, name: str) -> SequenceCounter:
        savepoint = self._session.begin_nested()
        counter = SequenceCounter(name=name, current_value=0)
        self._session.add(counter)
        try:
            self._session.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("sequence_counter_race", extra={"sequence_name": name})
            existing = self._lock(name)
            if existing is None:
                raise
            return existing
        savepoint.commit()
        return counter

    def next_value(self, name: str) -> int:
        counter = self._lock(name) or self._create(name)
        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": name, "value": counter.current_value},
        )
        return counter.current_value
