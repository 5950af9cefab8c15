"""
OperationJournal -- typed, exhaustively dispatched ledger operations.

Responsibility:
    ``record_operation(kind, payload)`` parses the payload into the
    dataclass registered for ``kind`` and runs that kind's handler.  Each
    handler locks its rows, validates everything, then journals through
    JournalWriter and updates composition, ABV and vessel state.

Architecture position:
    Kernel > Services -- imperative shell.  Called by CellarLedger.

Invariants enforced:
    - Every caller-facing OperationKind has a handler; checked at import.
    - Validation happens before the first write of an operation, and the
      operation's rows commit or roll back together (caller's transaction).
    - Liquid that moves between batches carries a batch_transfer
      composition entry at the source's effective ABV.
    - A source that drains to the threshold runs the drain cascade.

Failure modes:
    - InvalidOperationPayloadError for malformed payloads.
    - InvalidAdjustmentError when a volume adjustment's sign does not fit
      its reason.
    - The ValidationError subclasses of the individual checks, plus
      CapacityExceededError.

Audit relevance:
    Every handler ends in at least one journal row (operation_recorded).
"""

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select

from cellar_kernel.db.types import round_volume
from cellar_kernel.domain.abv import validate_abv
from cellar_kernel.domain.carbonation import (
    CarbonationMethod,
    classify_level,
    co2_from_pressure,
    co2_from_sugar,
    validate_pressure,
)
from cellar_kernel.domain.composition import BatchTransferSource, BrandySource
from cellar_kernel.domain.lifecycle import BatchStatus, ProductKind, VesselStatus
from cellar_kernel.domain.operations import (
    CALLER_KINDS,
    CarbonationPayload,
    DiscardPayload,
    DistillationInPayload,
    DistillationOutPayload,
    FilterGrade,
    FilteringPayload,
    MergePayload,
    OperationKind,
    RackingPayload,
    TransferPayload,
    VolumeAdjustmentPayload,
    coerce_kind,
    parse_payload,
)
from cellar_kernel.domain.policy import LedgerPolicy
from cellar_kernel.domain.reconciliation import validate_adjustment
from cellar_kernel.domain.units import Dimension, normalize_unit, proof_gallons, to_decimal, to_kilograms, to_liters
from cellar_kernel.exceptions import (
    CapacityExceededError,
    DistillationReferenceError,
    InsufficientVolumeError,
    InvalidOperationPayloadError,
    InvalidQuantityError,
    PressureRatingExceededError,
    VesselMismatchError,
)
from cellar_kernel.logging_config import get_logger
from cellar_kernel.models.batch import Batch
from cellar_kernel.models.journal import OperationJournalEntry
from cellar_kernel.models.vessel import Vessel
from cellar_kernel.services.abv_service import AbvService
from cellar_kernel.services.auditor_service import AuditorService
from cellar_kernel.services.base import BaseService, as_uuid
from cellar_kernel.services.batch_service import BatchService, coerce_product_kind
from cellar_kernel.services.composition_service import append_entry
from cellar_kernel.services.journal_writer import JournalWriter
from cellar_kernel.services.locking import (
    lock_batches,
    lock_vessels,
    peek_batch,
    resident_batch_id,
)
from cellar_kernel.services.sequence_service import brandy_counter
from cellar_kernel.services.vessel_service import VesselService

logger = get_logger("services.operation_journal")

ZERO = Decimal("0")

# Handler method per caller-facing kind
_HANDLERS: dict[OperationKind, str] = {
    OperationKind.TRANSFER: "_transfer",
    OperationKind.MERGE: "_merge",
    OperationKind.RACKING: "_racking",
    OperationKind.FILTERING: "_filtering",
    OperationKind.CARBONATION: "_carbonation",
    OperationKind.DISTILLATION_OUT: "_distillation_out",
    OperationKind.DISTILLATION_IN: "_distillation_in",
    OperationKind.DISCARD: "_discard",
    OperationKind.VOLUME_ADJUSTMENT: "_volume_adjustment",
}

_missing = CALLER_KINDS - set(_HANDLERS)
if _missing:
    raise RuntimeError(
        f"operation kinds without a handler: {sorted(k.value for k in _missing)}"
    )


def _volume(value: Any, unit: str, field: str, *, positive: bool) -> Decimal:
    liters = to_liters(to_decimal(value, field), unit)
    if positive and liters <= 0:
        raise InvalidQuantityError(field, value, "must be positive")
    return liters


def _optional_uuid(value: Any, kind: OperationKind, field: str) -> UUID | None:
    if value is None:
        return None
    try:
        return as_uuid(value)
    except ValueError:
        raise InvalidOperationPayloadError(kind.value, f"{field} is not a valid id") from None


def _required_uuid(value: Any, kind: OperationKind, field: str) -> UUID:
    result = _optional_uuid(value, kind, field)
    if result is None:
        raise InvalidOperationPayloadError(kind.value, f"{field} is required")
    return result


def _release_status(value: str | None, default: VesselStatus) -> VesselStatus | str:
    return value if value is not None else default


class OperationJournal(BaseService):
    """
    Contract:
        ``record_operation`` returns the primary journal row of the
        operation.  Follow-on rows (residual write-off) share the same
        transaction.
    """

    def __init__(
        self,
        session,
        clock,
        auditor: AuditorService,
        writer: JournalWriter,
        abv: AbvService,
        vessels: VesselService,
        batches: BatchService,
        policy: LedgerPolicy | None = None,
    ):
        super().__init__(session, clock)
        self.auditor = auditor
        self.writer = writer
        self.abv = abv
        self.vessels = vessels
        self.batches = batches
        self.policy = policy or LedgerPolicy()

    def record_operation(
        self, kind: OperationKind | str, payload: Any, actor_id: UUID
    ) -> OperationJournalEntry:
        op_kind = coerce_kind(kind)
        parsed = parse_payload(op_kind, payload)
        handler = getattr(self, _HANDLERS[op_kind])
        logger.debug("operation_dispatched", extra={"kind": op_kind.value})
        return handler(parsed, actor_id)

    # Shared helpers

    def _blend_into(
        self,
        source: Batch,
        dest: Batch,
        entry: OperationJournalEntry,
        volume: Decimal,
        abv: Decimal | None,
        actor_id: UUID,
    ) -> None:
        append_entry(
            self.session,
            self.auditor,
            dest,
            BatchTransferSource(source.id),
            volume,
            abv if abv is not None else ZERO,
            entry,
            actor_id,
        )
        self.abv.recalculate(dest)

    def _check_capacity(self, vessel: Vessel, resulting: Decimal) -> None:
        if resulting > vessel.capacity_liters + self.writer.epsilon:
            raise CapacityExceededError(str(vessel.id), vessel.capacity_liters, resulting)

    def _check_available(self, batch: Batch, needed: Decimal) -> None:
        available = Decimal(batch.current_volume_liters)
        if needed > available + self.writer.epsilon:
            raise InsufficientVolumeError(str(batch.id), available, needed)

    # Transfer

    def _transfer(self, p: TransferPayload, actor_id: UUID) -> OperationJournalEntry:
        kind = OperationKind.TRANSFER
        source_id = _required_uuid(p.source_batch_id, kind, "source_batch_id")
        dest_vessel_id = _required_uuid(p.dest_vessel_id, kind, "dest_vessel_id")
        expected_dest_batch = _optional_uuid(p.dest_batch_id, kind, "dest_batch_id")
        volume = _volume(p.volume, p.unit, "volume", positive=True)
        lost = _volume(p.volume_lost, p.unit, "volume_lost", positive=False)

        source_vessel_id = peek_batch(self.session, source_id).vessel_id
        if source_vessel_id == dest_vessel_id:
            raise InvalidOperationPayloadError(kind.value, "destination is the source vessel")
        vessels = lock_vessels(self.session, [source_vessel_id, dest_vessel_id])
        resident_id = resident_batch_id(self.session, dest_vessel_id)
        if expected_dest_batch is not None and expected_dest_batch != resident_id:
            raise VesselMismatchError(
                str(expected_dest_batch),
                str(dest_vessel_id),
                str(resident_id) if resident_id else None,
            )
        batches = lock_batches(self.session, [source_id, resident_id])
        source = batches[source_id]
        self.batches.ensure_active(source)
        self.batches.ensure_in_vessel(source, source_vessel_id)
        self._check_available(source, volume + lost)
        dest_vessel = vessels[dest_vessel_id]
        source_vessel = vessels[source_vessel_id]
        abv = source.effective_abv
        details = {"notes": p.notes, "unit": p.unit}

        if resident_id is not None:
            resident = batches[resident_id]
            self.batches.ensure_active(resident)
            self._check_capacity(dest_vessel, Decimal(resident.current_volume_liters) + volume)
            entry = self.writer.write(
                kind,
                actor_id,
                source=source,
                dest=resident,
                volume_moved=volume,
                volume_lost=lost,
                source_vessel_id=source_vessel_id,
                dest_vessel=dest_vessel,
                abv=abv,
                payload={"mode": "blend", **details},
            )
            self._blend_into(source, resident, entry, volume, abv, actor_id)
            self.batches.settle_after_outflow(source, actor_id, p.source_vessel_status)
            return entry

        self.vessels.ensure_fillable(dest_vessel)
        self._check_capacity(dest_vessel, volume)
        remaining = Decimal(source.current_volume_liters) - volume - lost

        if remaining <= self.policy.drain_threshold_liters:
            # Whole batch moves under the same identity
            entry = self.writer.write(
                kind,
                actor_id,
                source=source,
                dest=source,
                volume_moved=volume,
                volume_lost=lost,
                source_vessel_id=source_vessel_id,
                dest_vessel_id=dest_vessel_id,
                abv=abv,
                payload={"mode": "relocate", **details},
            )
            if Decimal(source.current_volume_liters) > 0 and remaining > 0:
                self.writer.write(
                    OperationKind.RESIDUAL_WRITE_OFF,
                    actor_id,
                    source=source,
                    volume_lost=Decimal(source.current_volume_liters) - volume,
                    source_vessel_id=source_vessel_id,
                    payload={"left_in_vessel": True},
                )
            self.batches.relocate(
                source,
                source_vessel,
                dest_vessel,
                actor_id,
                _release_status(p.source_vessel_status, self.policy.post_drain_vessel_status),
            )
            return entry

        child = self.batches.new_batch(
            batch_code=self.batches.next_child_code(source),
            vessel=dest_vessel,
            initial_volume_liters=round_volume(volume),
            display_unit=source.display_unit,
            product_kind=source.product_kind,
            status=source.status,
            origin_kind="batch_transfer",
            origin_ref=source.batch_code,
            actor_id=actor_id,
            parent=source,
        )
        entry = self.writer.write(
            kind,
            actor_id,
            source=source,
            dest=child,
            volume_moved=volume,
            volume_lost=lost,
            source_vessel_id=source_vessel_id,
            dest_vessel=dest_vessel,
            abv=abv,
            payload={"mode": "split", **details},
        )
        self._blend_into(source, child, entry, volume, abv, actor_id)
        self.batches.settle_after_outflow(source, actor_id, p.source_vessel_status)
        return entry

    # Merge

    def _merge(self, p: MergePayload, actor_id: UUID) -> OperationJournalEntry:
        kind = OperationKind.MERGE
        source_id = _required_uuid(p.source_batch_id, kind, "source_batch_id")
        target_id = _required_uuid(p.target_batch_id, kind, "target_batch_id")
        if source_id == target_id:
            raise InvalidOperationPayloadError(kind.value, "cannot merge a batch into itself")
        lost = _volume(p.volume_lost, p.unit, "volume_lost", positive=False)

        source_vessel_id = peek_batch(self.session, source_id).vessel_id
        target_vessel_id = peek_batch(self.session, target_id).vessel_id
        vessels = lock_vessels(self.session, [source_vessel_id, target_vessel_id])
        batches = lock_batches(self.session, [source_id, target_id])
        source, target = batches[source_id], batches[target_id]
        for batch, vessel_id in ((source, source_vessel_id), (target, target_vessel_id)):
            self.batches.ensure_active(batch)
            self.batches.ensure_in_vessel(batch, vessel_id)
        self._check_available(source, lost)

        moved = max(Decimal(source.current_volume_liters) - lost, ZERO)
        target_vessel = vessels[target_vessel_id]
        self._check_capacity(target_vessel, Decimal(target.current_volume_liters) + moved)

        abv = source.effective_abv
        entry = self.writer.write(
            kind,
            actor_id,
            source=source,
            dest=target,
            volume_moved=moved,
            volume_lost=min(lost, Decimal(source.current_volume_liters)),
            source_vessel_id=source_vessel_id,
            dest_vessel=target_vessel,
            abv=abv,
            payload={"notes": p.notes, "unit": p.unit},
        )
        if moved > 0:
            self._blend_into(source, target, entry, moved, abv, actor_id)
        self.batches.settle_after_outflow(source, actor_id, p.source_vessel_status)
        return entry

    # Racking / filtering

    def _in_place(
        self,
        kind: OperationKind,
        batch_id: Any,
        volume_lost: Any,
        unit: str,
        dest_vessel_id: Any,
        source_vessel_status: str | None,
        actor_id: UUID,
        extra: dict[str, Any],
    ) -> OperationJournalEntry:
        bid = _required_uuid(batch_id, kind, "batch_id")
        new_vessel_id = _optional_uuid(dest_vessel_id, kind, "dest_vessel_id")
        lost = _volume(volume_lost, unit, "volume_lost", positive=False)

        current_vessel_id = peek_batch(self.session, bid).vessel_id
        moving = new_vessel_id is not None and new_vessel_id != current_vessel_id
        vessels = lock_vessels(
            self.session, [current_vessel_id, new_vessel_id if moving else None]
        )
        batch = lock_batches(self.session, [bid])[bid]
        self.batches.ensure_active(batch)
        self.batches.ensure_in_vessel(batch, current_vessel_id)
        self._check_available(batch, lost)

        kept = max(Decimal(batch.current_volume_liters) - lost, ZERO)
        if moving:
            new_vessel = vessels[new_vessel_id]
            self.vessels.ensure_fillable(new_vessel)
            self._check_capacity(new_vessel, kept)

        entry = self.writer.write(
            kind,
            actor_id,
            source=batch,
            dest=batch,
            volume_moved=kept,
            volume_lost=min(lost, Decimal(batch.current_volume_liters)),
            source_vessel_id=current_vessel_id,
            dest_vessel_id=new_vessel_id if moving else current_vessel_id,
            abv=batch.effective_abv,
            payload={"unit": unit, **extra},
        )
        if moving:
            self.batches.relocate(
                batch,
                vessels[current_vessel_id],
                vessels[new_vessel_id],
                actor_id,
                _release_status(source_vessel_status, self.policy.post_racking_vessel_status),
            )
        self.batches.settle_after_outflow(batch, actor_id, source_vessel_status)
        return entry

    def _racking(self, p: RackingPayload, actor_id: UUID) -> OperationJournalEntry:
        return self._in_place(
            OperationKind.RACKING,
            p.batch_id,
            p.volume_lost,
            p.unit,
            p.dest_vessel_id,
            p.source_vessel_status,
            actor_id,
            {"notes": p.notes},
        )

    def _filtering(self, p: FilteringPayload, actor_id: UUID) -> OperationJournalEntry:
        try:
            grade = FilterGrade(p.filter_grade)
        except ValueError:
            raise InvalidOperationPayloadError(
                OperationKind.FILTERING.value,
                f"filter_grade must be one of {[g.value for g in FilterGrade]}",
            ) from None
        return self._in_place(
            OperationKind.FILTERING,
            p.batch_id,
            p.volume_lost,
            p.unit,
            p.dest_vessel_id,
            p.source_vessel_status,
            actor_id,
            {"filter_grade": grade.value, "notes": p.notes},
        )

    # Carbonation

    def _carbonation(self, p: CarbonationPayload, actor_id: UUID) -> OperationJournalEntry:
        kind = OperationKind.CARBONATION
        try:
            method = CarbonationMethod(p.method)
        except ValueError:
            raise InvalidOperationPayloadError(
                kind.value, f"method must be one of {[m.value for m in CarbonationMethod]}"
            ) from None
        bid = _required_uuid(p.batch_id, kind, "batch_id")
        batch, vessel = self.batches.lock_batch_and_vessel(bid)
        self.batches.ensure_active(batch)

        target = to_decimal(p.target_co2_volumes, "target_co2_volumes") if p.target_co2_volumes is not None else None
        final = to_decimal(p.final_co2_volumes, "final_co2_volumes") if p.final_co2_volumes is not None else None
        detail: dict[str, Any] = {"method": method.value, "notes": p.notes}

        if method == CarbonationMethod.FORCED:
            vessel_id = _required_uuid(p.vessel_id, kind, "vessel_id")
            if vessel is None or vessel_id != vessel.id:
                raise VesselMismatchError(
                    str(batch.id), str(vessel_id), str(batch.vessel_id) if batch.vessel_id else None
                )
            if p.pressure_psi is None:
                raise InvalidOperationPayloadError(kind.value, "pressure_psi is required for forced carbonation")
            pressure = validate_pressure(to_decimal(p.pressure_psi, "pressure_psi"))
            if vessel.max_pressure_psi is None or vessel.max_pressure_psi < pressure:
                raise PressureRatingExceededError(str(vessel.id), pressure, vessel.max_pressure_psi)
            temperature = to_decimal(p.temperature_c, "temperature_c") if p.temperature_c is not None else None
            if final is None:
                if temperature is None:
                    raise InvalidOperationPayloadError(
                        kind.value, "temperature_c is required to compute final CO2 volumes"
                    )
                final = co2_from_pressure(pressure, temperature)
            detail.update({"pressure_psi": pressure, "temperature_c": temperature})
        else:
            if p.sugar_amount is None:
                raise InvalidOperationPayloadError(kind.value, "sugar_amount is required for natural carbonation")
            sugar_kg = to_kilograms(to_decimal(p.sugar_amount, "sugar_amount"), p.sugar_unit)
            if sugar_kg <= 0:
                raise InvalidQuantityError("sugar_amount", p.sugar_amount, "must be positive")
            if final is None:
                liters = Decimal(batch.current_volume_liters)
                if liters <= 0:
                    raise InsufficientVolumeError(str(batch.id), liters, ZERO)
                grams_per_liter = sugar_kg * 1000 / liters
                final = co2_from_sugar(grams_per_liter, p.sugar_type, batch.co2_volumes or ZERO)
            detail.update({"sugar_kg": sugar_kg, "sugar_type": p.sugar_type})

        level = classify_level(final)
        detail.update({"target_co2_volumes": target, "final_co2_volumes": final, "level": level.value})
        entry = self.writer.write(
            kind,
            actor_id,
            source=batch,
            dest=batch,
            source_vessel_id=batch.vessel_id,
            dest_vessel_id=batch.vessel_id,
            abv=batch.effective_abv,
            payload=detail,
        )
        batch.co2_volumes = final
        batch.carbonation_level = level
        batch.updated_by_id = actor_id
        self.session.flush()
        logger.info(
            "batch_carbonated",
            extra={"batch_code": batch.batch_code, "method": method.value, "co2_volumes": final},
        )
        return entry

    # Distillation

    def _distillation_out(self, p: DistillationOutPayload, actor_id: UUID) -> OperationJournalEntry:
        kind = OperationKind.DISTILLATION_OUT
        if not isinstance(p.external_ref, str) or not p.external_ref.strip():
            raise DistillationReferenceError(str(p.external_ref), "external_ref is required")
        ref = p.external_ref.strip()
        bid = _required_uuid(p.batch_id, kind, "batch_id")
        volume = _volume(p.volume, p.unit, "volume", positive=True)

        batch, _ = self.batches.lock_batch_and_vessel(bid)
        self.batches.ensure_active(batch)
        self._check_available(batch, volume)
        volume = min(volume, Decimal(batch.current_volume_liters))

        abv = validate_abv(p.abv) if p.abv is not None else batch.effective_abv
        proof = proof_gallons(volume, abv) if abv is not None else None
        entry = self.writer.write(
            kind,
            actor_id,
            source=batch,
            volume_moved=volume,
            source_vessel_id=batch.vessel_id,
            abv=abv,
            proof_gallons=proof,
            external_ref=ref,
            payload={"notes": p.notes, "unit": p.unit},
        )
        logger.info(
            "distillation_sent",
            extra={"external_ref": ref, "volume_liters": str(volume), "proof_gallons": proof},
        )
        self.batches.settle_after_outflow(batch, actor_id, p.source_vessel_status)
        return entry

    def _distillation_in(self, p: DistillationInPayload, actor_id: UUID) -> OperationJournalEntry:
        kind = OperationKind.DISTILLATION_IN
        if not isinstance(p.external_ref, str) or not p.external_ref.strip():
            raise DistillationReferenceError(str(p.external_ref), "external_ref is required")
        ref = p.external_ref.strip()
        volume = _volume(p.volume, p.unit, "volume", positive=True)
        abv = validate_abv(p.abv)
        dest_batch_id = _optional_uuid(p.dest_batch_id, kind, "dest_batch_id")
        dest_vessel_id = _optional_uuid(p.dest_vessel_id, kind, "dest_vessel_id")

        outbound_count, outbound_proof = self.session.execute(
            select(
                func.count(OperationJournalEntry.id),
                func.coalesce(func.sum(OperationJournalEntry.proof_gallons), 0),
            ).where(
                OperationJournalEntry.kind == OperationKind.DISTILLATION_OUT,
                OperationJournalEntry.external_ref == ref,
            )
        ).one()
        if not outbound_count:
            raise DistillationReferenceError(ref, "no outbound distillation leg with this reference")
        inbound_proof_before = self.session.execute(
            select(func.coalesce(func.sum(OperationJournalEntry.proof_gallons), 0)).where(
                OperationJournalEntry.kind == OperationKind.DISTILLATION_IN,
                OperationJournalEntry.external_ref == ref,
            )
        ).scalar_one()

        if dest_batch_id is not None:
            batch, vessel = self.batches.lock_batch_and_vessel(dest_batch_id)
            self.batches.ensure_active(batch)
            self._check_capacity(vessel, Decimal(batch.current_volume_liters) + volume)
        elif dest_vessel_id is not None:
            if p.product_kind is None:
                raise InvalidOperationPayloadError(
                    kind.value, "product_kind is required to start a new batch"
                )
            product_kind = coerce_product_kind(p.product_kind)
            vessel = lock_vessels(self.session, [dest_vessel_id])[dest_vessel_id]
            self.vessels.ensure_fillable(vessel)
            self._check_capacity(vessel, volume)
            code = (
                self.batches.ensure_code_free(p.batch_code)
                if p.batch_code is not None
                else f"{ref}-B{self.batches.sequence.next_value(brandy_counter(ref))}"
            )
            batch = self.batches.new_batch(
                batch_code=code,
                vessel=vessel,
                initial_volume_liters=round_volume(volume),
                display_unit=normalize_unit(p.unit, Dimension.VOLUME),
                product_kind=product_kind,
                status=BatchStatus.AGING if product_kind == ProductKind.BRANDY else BatchStatus.FERMENTATION,
                origin_kind="distillation",
                origin_ref=ref,
                actor_id=actor_id,
            )
        else:
            raise InvalidOperationPayloadError(
                kind.value, "dest_batch_id or dest_vessel_id is required"
            )

        proof_in = proof_gallons(volume, abv)
        outbound = Decimal(str(outbound_proof))
        inbound_total = Decimal(str(inbound_proof_before)) + proof_in
        entry = self.writer.write(
            kind,
            actor_id,
            dest=batch,
            volume_moved=volume,
            dest_vessel=vessel,
            abv=abv,
            proof_gallons=proof_in,
            external_ref=ref,
            payload={
                "notes": p.notes,
                "unit": p.unit,
                "outbound_proof_gallons": outbound,
                "inbound_proof_gallons": inbound_total,
                "yield_loss_proof_gallons": outbound - inbound_total,
            },
        )
        append_entry(
            self.session, self.auditor, batch, BrandySource(ref), volume, abv, entry, actor_id
        )
        self.abv.recalculate(batch)
        logger.info(
            "distillation_returned",
            extra={
                "external_ref": ref,
                "proof_gallons": proof_in,
                "yield_loss_proof_gallons": outbound - inbound_total,
            },
        )
        return entry

    # Discard

    def _discard(self, p: DiscardPayload, actor_id: UUID) -> OperationJournalEntry:
        bid = _required_uuid(p.batch_id, OperationKind.DISCARD, "batch_id")
        self.batches.discard_batch(bid, p.reason, actor_id, p.source_vessel_status)
        return self.session.execute(
            select(OperationJournalEntry)
            .where(
                OperationJournalEntry.kind == OperationKind.DISCARD,
                OperationJournalEntry.source_batch_id == bid,
            )
            .order_by(OperationJournalEntry.seq.desc())
            .limit(1)
        ).scalar_one()

    # Volume adjustment

    def _volume_adjustment(self, p: VolumeAdjustmentPayload, actor_id: UUID) -> OperationJournalEntry:
        kind = OperationKind.VOLUME_ADJUSTMENT
        bid = _required_uuid(p.batch_id, kind, "batch_id")
        value = to_decimal(p.amount, "amount")
        reason = validate_adjustment(p.reason, value)
        amount = to_liters(abs(value), p.unit).copy_sign(value)

        batch, vessel = self.batches.lock_batch_and_vessel(bid)
        self.batches.ensure_active(batch)
        detail = {"reason": reason.value, "amount": amount, "unit": p.unit, "notes": p.notes}

        if amount > 0:
            if vessel is not None:
                self._check_capacity(vessel, Decimal(batch.current_volume_liters) + amount)
            entry = self.writer.write(
                kind,
                actor_id,
                dest=batch,
                volume_moved=amount,
                dest_vessel=vessel,
                abv=batch.effective_abv,
                payload=detail,
            )
        else:
            self._check_available(batch, -amount)
            entry = self.writer.write(
                kind,
                actor_id,
                source=batch,
                volume_lost=min(-amount, Decimal(batch.current_volume_liters)),
                source_vessel_id=batch.vessel_id,
                abv=batch.effective_abv,
                payload=detail,
            )
        logger.info(
            "volume_adjusted",
            extra={"batch_code": batch.batch_code, "reason": reason.value, "amount_liters": str(amount)},
        )
        self.batches.settle_after_outflow(batch, actor_id, p.source_vessel_status)
        return entry
