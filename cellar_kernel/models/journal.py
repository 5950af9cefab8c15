"""
Module: cellar_kernel.models.journal
Responsibility: ORM persistence for the operation journal -- one immutable
    row per state-changing event on a batch.
Architecture position: Kernel > Models.  May import from db/ and the pure
    domain enumerations only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (ORM listeners in db/immutability.py).
      Corrections are new offsetting rows, linked by reverses_entry_id.
    - seq is unique and monotonic, allocated from a locked counter row.
    - Source conservation (checked by JournalWriter before INSERT):
          source_volume_before - source_volume_after
              == volume_moved + volume_lost
                 - (volume_moved if dest_batch_id == source_batch_id)

Audit relevance:
    The journal is the history from which every batch volume can be
    replayed and from which reconciliation totals are summed.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from cellar_kernel.db.base import TrackedBase, UUIDString
from cellar_kernel.db.types import enum_column
from cellar_kernel.domain.operations import OperationKind


class OperationJournalEntry(TrackedBase):
    """
    A single journaled operation.

    Guarantees:
        - volume_moved / volume_lost are canonical liters, never negative.
        - before/after columns snapshot the source and destination batch
          volumes around the operation.
        - proof_gallons is set for distillation legs.
        - payload holds kind-specific detail as JSON.
    """

    __tablename__ = "operation_journal"

    __table_args__ = (
        Index("idx_journal_seq", "seq"),
        Index("idx_journal_source_batch", "source_batch_id"),
        Index("idx_journal_dest_batch", "dest_batch_id"),
        Index("idx_journal_occurred", "occurred_at"),
        Index("idx_journal_external_ref", "external_ref"),
    )

    seq: Mapped[int] = mapped_column(nullable=False, unique=True)

    kind: Mapped[OperationKind] = mapped_column(
        enum_column(OperationKind),
        nullable=False,
    )

    source_batch_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("batches.id"), nullable=True
    )
    source_vessel_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("vessels.id"), nullable=True
    )
    dest_batch_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("batches.id"), nullable=True
    )
    dest_vessel_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("vessels.id"), nullable=True
    )

    volume_moved: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    volume_lost: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    source_volume_before: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    source_volume_after: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    dest_volume_before: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    dest_volume_after: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    abv: Mapped[Decimal | None] = mapped_column(Numeric(9, 4), nullable=True)
    proof_gallons: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    external_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)

    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    reverses_entry_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("operation_journal.id"), nullable=True
    )

    def __repr__(self) -> str:
        return f"<OperationJournalEntry #{self.seq} {self.kind.value}>"

    @property
    def is_in_place(self) -> bool:
        """True when the liquid stays in the source batch (racking, relocation)."""
        return self.dest_batch_id is not None and self.dest_batch_id == self.source_batch_id
