"""
PackagingService -- terminal draw-down of a batch into finished goods.

Responsibility:
    Debits a batch by the volume taken, records the packaging loss, cuts a
    lot code and creates the finished-goods lot.  Runs the drain cascade
    when the draw empties the batch.

Architecture position:
    Kernel > Services -- imperative shell.  Called by CellarLedger.

Invariants enforced:
    - loss = volume_taken - unit_size * units_produced, never negative.
    - The batch is debited by volume_taken: the packaged part as
      volume_moved, the loss as volume_lost.
    - The journal row is dated packaged_at, which may not lie in the future
      or inside a finalized reconciliation period.
    - Lot sequence per batch and day comes from a locked counter row taken
      while the batch is locked; the UNIQUE lot_code constraint backs it.

Failure modes:
    - NegativeLossError, InsufficientVolumeError, VesselMismatchError,
      BatchNotActiveError, InvalidQuantityError.
    - IntegrityError on lot_code if the counter is bypassed; CellarLedger
      maps it to ConcurrencyConflictError.

Audit relevance:
    A packaging_drawn audit event links lot code, packaging run and the
    journal row that took the liquid out.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select

from cellar_kernel.domain.dtos import DrawResult, FinishedGoodsLotInfo
from cellar_kernel.domain.operations import OperationKind
from cellar_kernel.domain.packaging import (
    PackageType,
    compute_packaging_loss,
    expiration_date,
    format_lot_code,
    infer_package_type,
    lot_counter_name,
)
from cellar_kernel.domain.policy import LedgerPolicy
from cellar_kernel.domain.reconciliation import SnapshotStatus
from cellar_kernel.domain.units import to_decimal, to_liters
from cellar_kernel.exceptions import InsufficientVolumeError, InvalidQuantityError, VesselMismatchError
from cellar_kernel.logging_config import get_logger
from cellar_kernel.models.audit_event import AuditAction
from cellar_kernel.models.packaging import FinishedGoodsLot, PackagingRun
from cellar_kernel.models.reconciliation import ReconciliationSnapshot
from cellar_kernel.services.auditor_service import AuditorService
from cellar_kernel.services.base import BaseService, as_uuid
from cellar_kernel.services.batch_service import BatchService
from cellar_kernel.services.journal_writer import JournalWriter
from cellar_kernel.services.locking import lock_batches, lock_vessels
from cellar_kernel.services.sequence_service import SequenceService

logger = get_logger("services.packaging")


class PackagingService(BaseService):
    def __init__(
        self,
        session,
        clock,
        auditor: AuditorService,
        writer: JournalWriter,
        batches: BatchService,
        policy: LedgerPolicy | None = None,
    ):
        super().__init__(session, clock)
        self.auditor = auditor
        self.writer = writer
        self.batches = batches
        self.policy = policy or LedgerPolicy()
        self.sequence = SequenceService(session)

    def _packaging_time(self, packaged_at: datetime | None) -> datetime:
        now = self.clock.now()
        if packaged_at is None:
            return now
        if packaged_at.tzinfo is None:
            raise InvalidQuantityError("packaged_at", packaged_at, "must be timezone-aware")
        if packaged_at > now:
            raise InvalidQuantityError("packaged_at", packaged_at, "must not be in the future")
        closed_through = self.session.execute(
            select(func.max(ReconciliationSnapshot.period_end)).where(
                ReconciliationSnapshot.status == SnapshotStatus.FINALIZED
            )
        ).scalar_one_or_none()
        if closed_through is not None and packaged_at.astimezone(timezone.utc).date() <= closed_through:
            raise InvalidQuantityError(
                "packaged_at",
                packaged_at,
                f"falls in a reconciliation period finalized through {closed_through.isoformat()}",
            )
        return packaged_at

    def draw(
        self,
        batch_id: UUID | str,
        vessel_id: UUID | str,
        volume_taken: Any,
        unit_size: Any,
        units_produced: int,
        actor_id: UUID,
        *,
        unit: str = "L",
        package_type: PackageType | str | None = None,
        packaged_at: datetime | None = None,
        vessel_status: str | None = None,
        notes: str | None = None,
    ) -> DrawResult:
        """
        Draw ``volume_taken`` from the batch into ``units_produced`` packages
        of ``unit_size`` (both in ``unit``).
        """
        taken = to_liters(to_decimal(volume_taken, "volume_taken"), unit)
        size = to_liters(to_decimal(unit_size, "unit_size"), unit)
        loss = compute_packaging_loss(taken, size, units_produced)
        ptype = infer_package_type(size, package_type, self.policy.keg_min_unit_size_liters)
        when = self._packaging_time(packaged_at)

        bid, vid = as_uuid(batch_id), as_uuid(vessel_id)
        vessel = lock_vessels(self.session, [vid])[vid]
        batch = lock_batches(self.session, [bid])[bid]
        if batch.vessel_id != vid:
            raise VesselMismatchError(
                str(bid), str(vid), str(batch.vessel_id) if batch.vessel_id else None
            )
        self.batches.ensure_active(batch)
        available = Decimal(batch.current_volume_liters)
        if taken > available + self.writer.epsilon:
            raise InsufficientVolumeError(str(bid), available, taken)

        packaged_on = when.date()
        abv = batch.effective_abv

        entry = self.writer.write(
            OperationKind.PACKAGING_DRAW,
            actor_id,
            source=batch,
            volume_moved=loss.packaged_volume,
            volume_lost=min(loss.loss_volume, max(available - loss.packaged_volume, Decimal("0"))),
            source_vessel_id=vid,
            abv=abv,
            occurred_at=when,
            payload={
                "package_type": ptype.value,
                "unit_size_liters": size,
                "units_produced": units_produced,
                "volume_taken_liters": taken,
            },
        )

        sequence = self.sequence.next_value(lot_counter_name(bid, packaged_on))
        lot_code = format_lot_code(batch.batch_code, packaged_on, sequence)
        run = PackagingRun(
            batch_id=bid,
            vessel_id=vid,
            packaged_at=when,
            package_type=ptype,
            unit_size_liters=size,
            units_produced=units_produced,
            volume_taken_liters=taken,
            loss_liters=loss.loss_volume,
            loss_percentage=loss.loss_percentage,
            lot_code=lot_code,
            lot_sequence=sequence,
            abv=abv,
            carbonation_level=batch.carbonation_level,
            co2_volumes=batch.co2_volumes,
            journal_entry_id=entry.id,
            notes=notes,
            created_by_id=actor_id,
        )
        self.session.add(run)
        self.session.flush()
        lot = FinishedGoodsLot(
            lot_code=lot_code,
            packaging_run_id=run.id,
            batch_id=bid,
            package_type=ptype,
            unit_size_liters=size,
            quantity=units_produced,
            abv=abv,
            expiration_date=expiration_date(packaged_on, self.policy.shelf_life_days),
            created_by_id=actor_id,
        )
        self.session.add(lot)
        self.session.flush()

        self.auditor.record(
            "PackagingRun",
            run.id,
            AuditAction.PACKAGING_DRAWN,
            actor_id,
            {
                "batch_id": bid,
                "lot_code": lot_code,
                "volume_taken_liters": taken,
                "loss_liters": loss.loss_volume,
                "journal_entry_id": entry.id,
            },
        )
        logger.info(
            "packaging_drawn",
            extra={
                "batch_code": batch.batch_code,
                "lot_code": lot_code,
                "volume_taken_liters": str(taken),
                "loss_liters": str(loss.loss_volume),
                "loss_percentage": str(loss.loss_percentage),
            },
        )

        self.batches.settle_after_outflow(batch, actor_id, vessel_status)
        return DrawResult(
            loss_volume=loss.loss_volume,
            loss_percentage=loss.loss_percentage,
            lot_code=lot_code,
            lot=FinishedGoodsLotInfo.from_model(lot),
            packaging_run_id=run.id,
            journal_entry_id=entry.id,
            batch_status=batch.status.value,
            vessel_status=vessel.status.value,
            remaining_volume_liters=Decimal(batch.current_volume_liters),
        )
