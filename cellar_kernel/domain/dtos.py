"""
Domain DTOs -- frozen value objects returned across the kernel boundary.

Responsibility:
    Immutable read models built from ORM rows.  Selectors and the
    CellarLedger facade return these so callers never hold a live ORM
    object after the transaction closes.

Architecture position:
    Kernel > Domain.  ``from_model`` classmethods read attributes only; this
    module does not import the ORM models.

Invariants enforced:
    - All DTOs are frozen dataclasses.
    - Volumes are canonical liters; ``BatchState.current_volume`` is derived
      from canonical liters in the batch's display unit and never stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from cellar_kernel.domain.abv import effective_abv
from cellar_kernel.domain.units import Dimension, from_canonical


def _value(enum_or_str: Any) -> str | None:
    if enum_or_str is None:
        return None
    return getattr(enum_or_str, "value", enum_or_str)


@dataclass(frozen=True)
class BatchState:
    batch_id: UUID
    batch_code: str
    status: str
    product_kind: str
    vessel_id: UUID | None
    current_volume_liters: Decimal
    display_unit: str
    current_volume: Decimal
    initial_volume_liters: Decimal
    estimated_abv: Decimal | None
    actual_abv: Decimal | None
    abv: Decimal | None
    original_gravity: Decimal | None
    final_gravity: Decimal | None
    carbonation_level: str
    co2_volumes: Decimal | None
    parent_batch_id: UUID | None
    archived: bool

    @classmethod
    def from_model(cls, batch) -> BatchState:
        liters = Decimal(batch.current_volume_liters)
        return cls(
            batch_id=batch.id,
            batch_code=batch.batch_code,
            status=_value(batch.status),
            product_kind=_value(batch.product_kind),
            vessel_id=batch.vessel_id,
            current_volume_liters=liters,
            display_unit=batch.display_unit,
            current_volume=from_canonical(liters, batch.display_unit, Dimension.VOLUME),
            initial_volume_liters=Decimal(batch.initial_volume_liters),
            estimated_abv=batch.estimated_abv,
            actual_abv=batch.actual_abv,
            abv=effective_abv(batch.actual_abv, batch.estimated_abv),
            original_gravity=batch.original_gravity,
            final_gravity=batch.final_gravity,
            carbonation_level=_value(batch.carbonation_level),
            co2_volumes=batch.co2_volumes,
            parent_batch_id=batch.parent_batch_id,
            archived=batch.archived_at is not None,
        )


@dataclass(frozen=True)
class VesselInfo:
    vessel_id: UUID
    name: str
    status: str
    capacity_liters: Decimal
    capacity_unit: str
    max_pressure_psi: Decimal | None

    @classmethod
    def from_model(cls, vessel) -> VesselInfo:
        return cls(
            vessel_id=vessel.id,
            name=vessel.name,
            status=_value(vessel.status),
            capacity_liters=Decimal(vessel.capacity_liters),
            capacity_unit=vessel.capacity_unit,
            max_pressure_psi=vessel.max_pressure_psi,
        )


@dataclass(frozen=True)
class CompositionEntryRecord:
    entry_id: UUID
    batch_id: UUID
    source_kind: str
    source_ref: str | None
    volume_liters: Decimal
    abv: Decimal
    fraction_of_batch: Decimal
    journal_entry_id: UUID
    deleted: bool

    @classmethod
    def from_model(cls, entry) -> CompositionEntryRecord:
        return cls(
            entry_id=entry.id,
            batch_id=entry.batch_id,
            source_kind=_value(entry.source_kind),
            source_ref=entry.source_ref,
            volume_liters=Decimal(entry.volume_liters),
            abv=Decimal(entry.abv),
            fraction_of_batch=Decimal(entry.fraction_of_batch),
            journal_entry_id=entry.journal_entry_id,
            deleted=entry.deleted_at is not None,
        )


@dataclass(frozen=True)
class JournalEntryRecord:
    entry_id: UUID
    seq: int
    kind: str
    source_batch_id: UUID | None
    dest_batch_id: UUID | None
    source_vessel_id: UUID | None
    dest_vessel_id: UUID | None
    volume_moved: Decimal
    volume_lost: Decimal
    source_volume_before: Decimal | None
    source_volume_after: Decimal | None
    dest_volume_before: Decimal | None
    dest_volume_after: Decimal | None
    abv: Decimal | None
    proof_gallons: Decimal | None
    external_ref: str | None
    occurred_at: datetime
    actor_id: UUID
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, entry) -> JournalEntryRecord:
        return cls(
            entry_id=entry.id,
            seq=entry.seq,
            kind=_value(entry.kind),
            source_batch_id=entry.source_batch_id,
            dest_batch_id=entry.dest_batch_id,
            source_vessel_id=entry.source_vessel_id,
            dest_vessel_id=entry.dest_vessel_id,
            volume_moved=Decimal(entry.volume_moved),
            volume_lost=Decimal(entry.volume_lost),
            source_volume_before=entry.source_volume_before,
            source_volume_after=entry.source_volume_after,
            dest_volume_before=entry.dest_volume_before,
            dest_volume_after=entry.dest_volume_after,
            abv=entry.abv,
            proof_gallons=entry.proof_gallons,
            external_ref=entry.external_ref,
            occurred_at=entry.occurred_at,
            actor_id=entry.actor_id,
            payload=dict(entry.payload or {}),
        )


@dataclass(frozen=True)
class FinishedGoodsLotInfo:
    lot_code: str
    batch_id: UUID
    package_type: str
    unit_size_liters: Decimal
    quantity: int
    abv: Decimal | None
    expiration_date: date

    @classmethod
    def from_model(cls, lot) -> FinishedGoodsLotInfo:
        return cls(
            lot_code=lot.lot_code,
            batch_id=lot.batch_id,
            package_type=_value(lot.package_type),
            unit_size_liters=Decimal(lot.unit_size_liters),
            quantity=lot.quantity,
            abv=lot.abv,
            expiration_date=lot.expiration_date,
        )


@dataclass(frozen=True)
class DrawResult:
    """Outcome of one packaging draw."""

    loss_volume: Decimal
    loss_percentage: Decimal
    lot_code: str
    lot: FinishedGoodsLotInfo
    packaging_run_id: UUID
    journal_entry_id: UUID
    batch_status: str
    vessel_status: str
    remaining_volume_liters: Decimal


@dataclass(frozen=True)
class AdjustmentInfo:
    adjustment_id: UUID
    snapshot_id: UUID
    adjustment_date: date
    reason: str
    amount: Decimal
    note: str | None

    @classmethod
    def from_model(cls, adjustment) -> AdjustmentInfo:
        return cls(
            adjustment_id=adjustment.id,
            snapshot_id=adjustment.snapshot_id,
            adjustment_date=adjustment.adjustment_date,
            reason=_value(adjustment.reason),
            amount=Decimal(adjustment.amount),
            note=adjustment.note,
        )


@dataclass(frozen=True)
class ReconciliationSnapshotInfo:
    snapshot_id: UUID
    period_start: date
    period_end: date
    unit: str
    opening_balance: Decimal
    production_volume: Decimal
    tax_paid_removals: Decimal
    distilled_out: Decimal
    other_losses: Decimal
    calculated_closing: Decimal
    physical_count: Decimal
    variance: Decimal
    unexplained_variance: Decimal
    status: str
    content_hash: str
    corrects_snapshot_id: UUID | None
    adjustments: tuple[AdjustmentInfo, ...] = ()

    @property
    def is_finalized(self) -> bool:
        return self.status == "finalized"

    @classmethod
    def from_model(cls, snapshot, adjustments=()) -> ReconciliationSnapshotInfo:
        adjustment_infos = tuple(AdjustmentInfo.from_model(a) for a in adjustments)
        variance = Decimal(snapshot.variance)
        explained = sum((a.amount for a in adjustment_infos), Decimal("0"))
        return cls(
            snapshot_id=snapshot.id,
            period_start=snapshot.period_start,
            period_end=snapshot.period_end,
            unit=snapshot.unit,
            opening_balance=Decimal(snapshot.opening_balance),
            production_volume=Decimal(snapshot.production_volume),
            tax_paid_removals=Decimal(snapshot.tax_paid_removals),
            distilled_out=Decimal(snapshot.distilled_out),
            other_losses=Decimal(snapshot.other_losses),
            calculated_closing=Decimal(snapshot.calculated_closing),
            physical_count=Decimal(snapshot.physical_count),
            variance=variance,
            unexplained_variance=variance - explained,
            status=_value(snapshot.status),
            content_hash=snapshot.content_hash,
            corrects_snapshot_id=snapshot.corrects_snapshot_id,
            adjustments=adjustment_infos,
        )


@dataclass(frozen=True)
class ConservationReport:
    """Ledger-wide volume balance in canonical liters."""

    inbound: Decimal
    reversed_out: Decimal
    distilled_out: Decimal
    packaged: Decimal
    losses: Decimal
    expected_on_hand: Decimal
    actual_on_hand: Decimal
    difference: Decimal
    balanced: bool


@dataclass(frozen=True)
class ProjectionCheck:
    batch_id: UUID
    projected_volume: Decimal
    replayed_volume: Decimal
    consistent: bool
