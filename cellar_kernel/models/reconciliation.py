"""
Module: cellar_kernel.models.reconciliation
Responsibility: ORM persistence for period reconciliation snapshots and the
    reasoned adjustments that explain their variance.
Architecture position: Kernel > Models.  May import from db/ and the pure
    domain enumerations only.

Invariants enforced:
    - At most one draft exists per (period, corrects_snapshot_id); a second
      concurrent first run fails on uq_recon_open_draft.
    - A draft snapshot may be recomputed in place; the draft -> finalized
      transition is one-way.
    - Once finalized, the snapshot and its adjustments are immutable
      (ORM listeners in db/immutability.py).  Correcting a finalized
      period means a new snapshot with corrects_snapshot_id set.
    - content_hash covers the period, unit, figures and the last journal
      sequence seen, so a later journal row makes the snapshot stale.

Audit relevance:
    Finalized snapshots are the regulatory record of each period.  Their
    physical count carries forward as the next period's opening balance.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, DateTime, ForeignKey, Index, Numeric, String, text
from sqlalchemy.orm import Mapped, mapped_column

from cellar_kernel.db.base import TrackedBase, UUIDString
from cellar_kernel.db.types import enum_column
from cellar_kernel.domain.reconciliation import AdjustmentReason, SnapshotStatus


class ReconciliationSnapshot(TrackedBase):
    """
    Ledger balance vs physical count for one period.

    Guarantees:
        - All figures are in ``unit`` (the regulatory unit, US wine gallons
          by default).
        - variance = physical_count - calculated_closing.
    """

    __tablename__ = "reconciliation_snapshots"

    __table_args__ = (
        Index("idx_recon_period", "period_start", "period_end"),
        Index("idx_recon_status", "status"),
        # At most one open draft per period and correction target.
        Index(
            "uq_recon_open_draft",
            "period_start",
            "period_end",
            text("coalesce(corrects_snapshot_id, '')"),
            unique=True,
            sqlite_where=text("status = 'draft'"),
            postgresql_where=text("status = 'draft'"),
        ),
    )

    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    unit: Mapped[str] = mapped_column(String(20), nullable=False)

    opening_balance: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    production_volume: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    tax_paid_removals: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    distilled_out: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    other_losses: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    calculated_closing: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    physical_count: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    variance: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    status: Mapped[SnapshotStatus] = mapped_column(
        enum_column(SnapshotStatus),
        nullable=False,
        default=SnapshotStatus.DRAFT,
    )

    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    last_journal_seq: Mapped[int | None] = mapped_column(nullable=True)

    corrects_snapshot_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("reconciliation_snapshots.id"), nullable=True
    )

    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finalized_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ReconciliationSnapshot {self.period_start}..{self.period_end}: "
            f"{self.status.value}>"
        )

    @property
    def is_finalized(self) -> bool:
        return self.status == SnapshotStatus.FINALIZED


class ReconciliationAdjustment(TrackedBase):
    """A signed, reasoned explanation for part of a snapshot's variance."""

    __tablename__ = "reconciliation_adjustments"

    __table_args__ = (Index("idx_recon_adjustment_snapshot", "snapshot_id"),)

    snapshot_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("reconciliation_snapshots.id"), nullable=False
    )
    adjustment_date: Mapped[date] = mapped_column(Date, nullable=False)
    reason: Mapped[AdjustmentReason] = mapped_column(enum_column(AdjustmentReason), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    note: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    def __repr__(self) -> str:
        return f"<ReconciliationAdjustment {self.reason.value} {self.amount}>"
