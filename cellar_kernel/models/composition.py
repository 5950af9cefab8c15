"""
Module: cellar_kernel.models.composition
Responsibility: ORM persistence for the composition ledger -- the weighted
    set of source inputs that make up a batch.
Architecture position: Kernel > Models.  May import from db/ and the pure
    domain enumerations only.

Invariants enforced:
    - Tagged source: exactly one of press_run_id, juice_purchase_id,
      distillation_ref, source_batch_id is set, and it matches source_kind.
      The CHECK constraint backs the rule checked in CompositionService.
    - Entries are append-only.  The only permitted change is the one-way
      soft delete (deleted_at / deleted_by_id set once), enforced by the
      ORM listeners in db/immutability.py.
    - The sum of volume_liters over non-deleted entries equals the batch's
      cumulative inbound volume.

Audit relevance:
    Each entry references the journal row that brought its volume in, and a
    soft delete references the composition_reversal row that took it out.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from cellar_kernel.db.base import TrackedBase, UUIDString
from cellar_kernel.db.types import enum_column


class SourceKind(str, Enum):
    BASE_FRUIT = "base_fruit"
    JUICE_PURCHASE = "juice_purchase"
    BRANDY = "brandy"
    BATCH_TRANSFER = "batch_transfer"


# Column that must be populated for each source kind
SOURCE_REFERENCE_COLUMNS: dict[SourceKind, str] = {
    SourceKind.BASE_FRUIT: "press_run_id",
    SourceKind.JUICE_PURCHASE: "juice_purchase_id",
    SourceKind.BRANDY: "distillation_ref",
    SourceKind.BATCH_TRANSFER: "source_batch_id",
}

_EXACTLY_ONE_SOURCE = (
    "(CASE WHEN press_run_id IS NOT NULL THEN 1 ELSE 0 END"
    " + CASE WHEN juice_purchase_id IS NOT NULL THEN 1 ELSE 0 END"
    " + CASE WHEN distillation_ref IS NOT NULL THEN 1 ELSE 0 END"
    " + CASE WHEN source_batch_id IS NOT NULL THEN 1 ELSE 0 END) = 1"
)


class CompositionEntry(TrackedBase):
    """
    One source input of a batch.

    Guarantees:
        - fraction_of_batch is volume / batch total at the time of entry.
        - abv is the ABV of the contributed liquid.
    """

    __tablename__ = "composition_entries"

    __table_args__ = (
        CheckConstraint(_EXACTLY_ONE_SOURCE, name="ck_composition_single_source"),
        CheckConstraint("volume_liters > 0", name="ck_composition_volume_positive"),
        Index("idx_composition_batch", "batch_id"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("batches.id"),
        nullable=False,
    )

    source_kind: Mapped[SourceKind] = mapped_column(
        enum_column(SourceKind),
        nullable=False,
    )

    press_run_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    juice_purchase_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    distillation_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    source_batch_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("batches.id"),
        nullable=True,
    )

    volume_liters: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    abv: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    fraction_of_batch: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    journal_entry_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("operation_journal.id"),
        nullable=False,
    )

    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return f"<CompositionEntry {self.source_kind.value} {self.volume_liters}L @ {self.abv}%>"

    @property
    def source_ref(self) -> str | None:
        value = getattr(self, SOURCE_REFERENCE_COLUMNS[self.source_kind])
        return None if value is None else str(value)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
