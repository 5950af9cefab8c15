"""
Module: cellar_kernel.models.packaging
Responsibility: ORM persistence for packaging runs and the finished-goods
    lots they produce.
Architecture position: Kernel > Models.  May import from db/ and the pure
    domain enumerations only.

Invariants enforced:
    - loss_liters = volume_taken_liters - unit_size_liters * units_produced
      and loss_liters >= 0 (CHECK constraint plus PackagingService).
    - lot_code is UNIQUE on both tables.  The lot sequence comes from a
      locked counter row; the constraint catches any race that slips past.
    - Packaging runs and lots are immutable once written.

Audit relevance:
    Every run references the packaging_draw journal row that debited the
    batch, so a lot code traces back to the exact liquid it came from.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from cellar_kernel.db.base import TrackedBase, UUIDString
from cellar_kernel.db.types import enum_column
from cellar_kernel.domain.carbonation import CarbonationLevel
from cellar_kernel.domain.packaging import PackageType


class PackagingRun(TrackedBase):
    """A single draw of liquid from a batch into packages."""

    __tablename__ = "packaging_runs"

    __table_args__ = (
        CheckConstraint("loss_liters >= 0", name="ck_packaging_loss_non_negative"),
        CheckConstraint("units_produced >= 0", name="ck_packaging_units_non_negative"),
        Index("idx_packaging_batch", "batch_id"),
    )

    batch_id: Mapped[UUID] = mapped_column(UUIDString(), ForeignKey("batches.id"), nullable=False)
    vessel_id: Mapped[UUID] = mapped_column(UUIDString(), ForeignKey("vessels.id"), nullable=False)

    packaged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    package_type: Mapped[PackageType] = mapped_column(enum_column(PackageType), nullable=False)
    unit_size_liters: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    units_produced: Mapped[int] = mapped_column(nullable=False)

    volume_taken_liters: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    loss_liters: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    loss_percentage: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)

    lot_code: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    lot_sequence: Mapped[int] = mapped_column(nullable=False)

    abv: Mapped[Decimal | None] = mapped_column(Numeric(9, 4), nullable=True)
    carbonation_level: Mapped[CarbonationLevel] = mapped_column(
        enum_column(CarbonationLevel), nullable=False
    )
    co2_volumes: Mapped[Decimal | None] = mapped_column(Numeric(9, 2), nullable=True)

    journal_entry_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("operation_journal.id"), nullable=False
    )

    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    def __repr__(self) -> str:
        return f"<PackagingRun {self.lot_code}: {self.units_produced} x {self.unit_size_liters}L>"


class FinishedGoodsLot(TrackedBase):
    """Inventory item created by a packaging run."""

    __tablename__ = "finished_goods_lots"

    lot_code: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    packaging_run_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("packaging_runs.id"), nullable=False
    )
    batch_id: Mapped[UUID] = mapped_column(UUIDString(), ForeignKey("batches.id"), nullable=False)

    package_type: Mapped[PackageType] = mapped_column(enum_column(PackageType), nullable=False)
    unit_size_liters: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    quantity: Mapped[int] = mapped_column(nullable=False)

    abv: Mapped[Decimal | None] = mapped_column(Numeric(9, 4), nullable=True)
    expiration_date: Mapped[date] = mapped_column(Date, nullable=False)

    def __repr__(self) -> str:
        return f"<FinishedGoodsLot {self.lot_code}: {self.quantity}>"
