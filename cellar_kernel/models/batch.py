"""
Module: cellar_kernel.models.batch
Responsibility: ORM persistence for an in-process batch of liquid and its
    materialized volume / ABV projection.
Architecture position: Kernel > Models.  May import from db/ and the pure
    domain enumerations only.

Invariants enforced:
    - batch_code is unique; it prefixes every lot code cut from the batch.
    - current_volume_liters >= 0 (CHECK constraint).  The column is the single
      source of truth for volume and is written only by the journal writer.
    - vessel_id is set only while the batch is active, so the UNIQUE
      constraint on vessel_id gives one active batch per vessel.
    - version_id increments on every UPDATE (optimistic concurrency).

Audit relevance:
    Status changes produce batch_status_changed audit events; every volume
    change has a matching operation journal row, so current_volume_liters
    can be rebuilt by replaying the journal.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from cellar_kernel.db.base import TrackedBase, UUIDString
from cellar_kernel.db.types import enum_column
from cellar_kernel.domain.carbonation import CarbonationLevel
from cellar_kernel.domain.lifecycle import ACTIVE_STATUSES, BatchStatus, ProductKind


class Batch(TrackedBase):
    """
    A batch of cider, perry, brandy or pommeau moving through production.

    Contract:
        Volume is held in canonical liters.  ``display_unit`` records the
        unit the operator entered so the display value can be derived; it is
        never a second stored volume.

    Guarantees:
        - parent_batch_id is set when the batch was split off another.
        - estimated_abv / actual_abv are maintained by AbvService.
        - actual_abv_source tells a lab measurement ("lab") from a
          gravity-derived value ("gravity").
    """

    __tablename__ = "batches"

    __table_args__ = (
        UniqueConstraint("vessel_id", name="uq_batch_vessel"),
        CheckConstraint("current_volume_liters >= 0", name="ck_batch_volume_non_negative"),
        Index("idx_batch_status", "status"),
        Index("idx_batch_parent", "parent_batch_id"),
    )

    batch_code: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
    )

    status: Mapped[BatchStatus] = mapped_column(
        enum_column(BatchStatus),
        nullable=False,
        default=BatchStatus.FERMENTATION,
    )

    product_kind: Mapped[ProductKind] = mapped_column(
        enum_column(ProductKind),
        nullable=False,
        default=ProductKind.CIDER,
    )

    initial_volume_liters: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
    )

    current_volume_liters: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
    )

    display_unit: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="L",
    )

    estimated_abv: Mapped[Decimal | None] = mapped_column(Numeric(9, 4), nullable=True)
    actual_abv: Mapped[Decimal | None] = mapped_column(Numeric(9, 4), nullable=True)
    actual_abv_source: Mapped[str | None] = mapped_column(String(20), nullable=True)

    original_gravity: Mapped[Decimal | None] = mapped_column(Numeric(9, 4), nullable=True)
    final_gravity: Mapped[Decimal | None] = mapped_column(Numeric(9, 4), nullable=True)

    carbonation_level: Mapped[CarbonationLevel] = mapped_column(
        enum_column(CarbonationLevel),
        nullable=False,
        default=CarbonationLevel.STILL,
    )

    co2_volumes: Mapped[Decimal | None] = mapped_column(Numeric(9, 2), nullable=True)

    # Where the liquid came from, e.g. ("press_run", "PR-2024-07")
    origin_kind: Mapped[str] = mapped_column(String(30), nullable=False)
    origin_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)

    vessel_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("vessels.id"),
        nullable=True,
    )

    parent_batch_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("batches.id"),
        nullable=True,
    )

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    discarded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    discard_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # UI flag only; history is never hidden from the ledger
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Batch {self.batch_code}: {self.status.value} {self.current_volume_liters}L>"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def effective_abv(self) -> Decimal | None:
        """Lab / gravity measurement when present, else the estimate."""
        return self.actual_abv if self.actual_abv is not None else self.estimated_abv
