"""
BatchService -- batch lifecycle and the drain cascade.

Responsibility:
    Creates batches (initial fill plus origin composition), applies status
    transitions, records gravity and lab ABV readings, discards and archives
    batches, and runs the drain cascade when an outflow leaves a batch at or
    below the drain threshold.

Architecture position:
    Kernel > Services -- imperative shell.  Volume changes go through
    JournalWriter; vessel status changes through VesselService.

Invariants enforced:
    - Status transitions follow domain/lifecycle.py.
    - One active batch per vessel: a batch is placed only in an available,
      empty vessel, and vessel_id is cleared when the batch terminates.
    - A drained batch has its residual written off, is completed, and its
      vessel released (available by default, or the routed status).
    - Completing by hand is only possible once the batch is drained.

Failure modes:
    - BatchNotFoundError, BatchNotActiveError, IllegalStatusTransitionError,
      VesselUnavailableError, VesselMismatchError, CapacityExceededError,
      InvalidGravityError, InvalidAbvError, DuplicateNameError.

Audit relevance:
    batch_created, batch_status_changed, batch_measured and batch_archived
    audit events; every volume effect is a journal row.
"""

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select

from cellar_kernel.domain.abv import validate_abv, validate_gravities
from cellar_kernel.domain.composition import CompositionSource, validate_source
from cellar_kernel.domain.lifecycle import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    BatchStatus,
    ProductKind,
    validate_transition,
)
from cellar_kernel.domain.operations import OperationKind
from cellar_kernel.domain.policy import LedgerPolicy
from cellar_kernel.domain.units import Dimension, normalize_unit, to_decimal, to_liters
from cellar_kernel.exceptions import (
    BatchNotActiveError,
    BatchNotFoundError,
    CapacityExceededError,
    DuplicateNameError,
    IllegalStatusTransitionError,
    InvalidOperationPayloadError,
    InvalidQuantityError,
    VesselMismatchError,
)
from cellar_kernel.logging_config import get_logger
from cellar_kernel.models.audit_event import AuditAction
from cellar_kernel.models.batch import Batch
from cellar_kernel.models.vessel import Vessel
from cellar_kernel.services.abv_service import LAB_SOURCE, AbvService
from cellar_kernel.services.auditor_service import AuditorService
from cellar_kernel.services.base import BaseService, as_uuid
from cellar_kernel.services.composition_service import append_entry, source_abv
from cellar_kernel.services.journal_writer import JournalWriter
from cellar_kernel.services.locking import lock_batches, lock_vessels, peek_batch
from cellar_kernel.services.sequence_service import SequenceService, batch_code_counter, split_counter
from cellar_kernel.services.vessel_service import VesselService

logger = get_logger("services.batch")


def coerce_product_kind(value: ProductKind | str) -> ProductKind:
    try:
        return ProductKind(value)
    except ValueError:
        raise InvalidOperationPayloadError(
            "product_kind", f"unknown product kind {value!r}"
        ) from None


class BatchService(BaseService):
    """
    Contract:
        Every public method locks the rows it touches (vessels, then
        batches) and flushes; the caller commits.

    Guarantees:
        - ``settle_after_outflow`` is idempotent on a terminal batch.
    """

    def __init__(
        self,
        session,
        clock,
        auditor: AuditorService,
        writer: JournalWriter,
        abv: AbvService,
        vessels: VesselService,
        policy: LedgerPolicy | None = None,
    ):
        super().__init__(session, clock)
        self.auditor = auditor
        self.writer = writer
        self.abv = abv
        self.vessels = vessels
        self.policy = policy or LedgerPolicy()
        self.sequence = SequenceService(session)

    # Guards

    def get_batch(self, batch_id: UUID | str) -> Batch:
        batch = self.session.get(Batch, as_uuid(batch_id))
        if batch is None:
            raise BatchNotFoundError(str(batch_id))
        return batch

    def ensure_active(self, batch: Batch) -> None:
        if batch.status not in ACTIVE_STATUSES:
            raise BatchNotActiveError(str(batch.id), batch.status.value)

    def ensure_in_vessel(self, batch: Batch, vessel_id: UUID | None) -> None:
        """Fails when the batch moved between the unlocked peek and the lock."""
        if batch.vessel_id is None or batch.vessel_id != vessel_id:
            raise VesselMismatchError(
                str(batch.id),
                str(vessel_id),
                str(batch.vessel_id) if batch.vessel_id else None,
            )

    def lock_batch_and_vessel(self, batch_id: UUID | str) -> tuple[Batch, Vessel | None]:
        bid = as_uuid(batch_id)
        vessel_id = peek_batch(self.session, bid).vessel_id
        vessels = lock_vessels(self.session, [vessel_id])
        batch = lock_batches(self.session, [bid])[bid]
        if batch.vessel_id != vessel_id:
            self.ensure_in_vessel(batch, vessel_id)
        return batch, vessels.get(vessel_id) if vessel_id else None

    # Creation

    def next_batch_code(self) -> str:
        year = self.clock.today().year
        seq = self.sequence.next_value(batch_code_counter(year))
        return f"{year}-{seq:03d}"

    def next_child_code(self, parent: Batch) -> str:
        seq = self.sequence.next_value(split_counter(parent.id))
        return f"{parent.batch_code}-{seq}"

    def ensure_code_free(self, batch_code: str) -> str:
        if not isinstance(batch_code, str) or not batch_code.strip():
            raise InvalidQuantityError("batch_code", batch_code, "must be a non-empty string")
        code = batch_code.strip()
        taken = self.session.execute(
            select(Batch.id).where(Batch.batch_code == code)
        ).scalar_one_or_none()
        if taken is not None:
            raise DuplicateNameError("Batch", code)
        return code

    def new_batch(
        self,
        *,
        batch_code: str,
        vessel: Vessel,
        initial_volume_liters: Decimal,
        display_unit: str,
        product_kind: ProductKind,
        status: BatchStatus,
        origin_kind: str,
        origin_ref: str | None,
        actor_id: UUID,
        parent: Batch | None = None,
        original_gravity: Decimal | None = None,
    ) -> Batch:
        """Insert an empty batch row placed in ``vessel``; the caller journals the fill."""
        batch = Batch(
            batch_code=batch_code,
            status=status,
            product_kind=product_kind,
            initial_volume_liters=initial_volume_liters,
            current_volume_liters=Decimal("0"),
            display_unit=display_unit,
            original_gravity=original_gravity,
            origin_kind=origin_kind,
            origin_ref=origin_ref,
            vessel_id=vessel.id,
            parent_batch_id=parent.id if parent is not None else None,
            started_at=self.clock.now(),
            created_by_id=actor_id,
        )
        if parent is not None:
            batch.carbonation_level = parent.carbonation_level
            batch.co2_volumes = parent.co2_volumes
        self.session.add(batch)
        self.session.flush()
        self.vessels.occupy(vessel, batch.id, actor_id)
        self.auditor.record(
            "Batch",
            batch.id,
            AuditAction.BATCH_CREATED,
            actor_id,
            {
                "batch_code": batch.batch_code,
                "vessel_id": vessel.id,
                "initial_volume_liters": initial_volume_liters,
                "product_kind": product_kind.value,
                "origin_kind": origin_kind,
                "origin_ref": origin_ref,
                "parent_batch_id": batch.parent_batch_id,
            },
        )
        logger.info(
            "batch_created",
            extra={
                "batch_code": batch.batch_code,
                "vessel_id": str(vessel.id),
                "initial_volume_liters": str(initial_volume_liters),
            },
        )
        return batch

    def create_batch(
        self,
        origin: CompositionSource,
        vessel_id: UUID | str,
        initial_volume: Any,
        unit: str,
        actor_id: UUID,
        *,
        batch_code: str | None = None,
        product_kind: ProductKind | str = ProductKind.CIDER,
        status: BatchStatus | str = BatchStatus.FERMENTATION,
        abv: Any = None,
        original_gravity: Any = None,
        details: dict[str, Any] | None = None,
    ) -> Batch:
        """
        Fill an available, empty vessel with a new batch.

        The origin becomes the batch's first composition entry and the fill
        is journaled as initial_fill.
        """
        origin = validate_source(origin)
        contributed_abv = source_abv(origin, abv)
        token = normalize_unit(unit, Dimension.VOLUME)
        liters = to_liters(to_decimal(initial_volume, "initial_volume"), token)
        if liters <= 0:
            raise InvalidQuantityError("initial_volume", initial_volume, "must be positive")
        kind = coerce_product_kind(product_kind)
        try:
            start_status = BatchStatus(status)
        except ValueError:
            raise IllegalStatusTransitionError("new", "none", str(status)) from None
        if start_status not in ACTIVE_STATUSES:
            raise IllegalStatusTransitionError("new", "none", start_status.value)
        og = None
        if original_gravity is not None:
            og = to_decimal(original_gravity, "original_gravity")
            validate_gravities(og, None)

        vid = as_uuid(vessel_id)
        vessel = lock_vessels(self.session, [vid])[vid]
        self.vessels.ensure_fillable(vessel)
        if liters > vessel.capacity_liters + self.writer.epsilon:
            raise CapacityExceededError(str(vessel.id), vessel.capacity_liters, liters)

        code = self.ensure_code_free(batch_code) if batch_code is not None else self.next_batch_code()
        batch = self.new_batch(
            batch_code=code,
            vessel=vessel,
            initial_volume_liters=liters,
            display_unit=token,
            product_kind=kind,
            status=start_status,
            origin_kind=origin.kind,
            origin_ref=str(origin.reference),
            actor_id=actor_id,
            original_gravity=og,
        )
        fill = self.writer.write(
            OperationKind.INITIAL_FILL,
            actor_id,
            dest=batch,
            volume_moved=liters,
            dest_vessel=vessel,
            abv=contributed_abv,
            payload={"source_kind": origin.kind, "reference": origin.reference},
        )
        append_entry(
            self.session,
            self.auditor,
            batch,
            origin,
            liters,
            contributed_abv,
            fill,
            actor_id,
            details,
        )
        self.abv.recalculate(batch)
        return batch

    # Status

    def change_status(
        self,
        batch_id: UUID | str,
        status: BatchStatus | str,
        actor_id: UUID,
        vessel_status: str | None = None,
    ) -> Batch:
        batch, vessel = self.lock_batch_and_vessel(batch_id)
        target = validate_transition(str(batch.id), batch.status, status)

        if target == BatchStatus.DISCARDED:
            return self._discard(batch, vessel, "status change", actor_id, vessel_status)
        if target == BatchStatus.COMPLETED:
            if Decimal(batch.current_volume_liters) > self.policy.drain_threshold_liters:
                raise IllegalStatusTransitionError(
                    str(batch.id),
                    batch.status.value,
                    target.value,
                    reason=(
                        f"{batch.current_volume_liters}L remain; package, transfer or "
                        "discard the batch first"
                    ),
                )
            self.settle_after_outflow(batch, actor_id, vessel_status)
            return batch

        self._set_status(batch, target, actor_id)
        return batch

    def _set_status(self, batch: Batch, target: BatchStatus, actor_id: UUID, **detail) -> None:
        previous = batch.status
        batch.status = target
        batch.updated_by_id = actor_id
        now = self.clock.now()
        if target == BatchStatus.COMPLETED:
            batch.completed_at = now
        elif target == BatchStatus.DISCARDED:
            batch.discarded_at = now
        if target in TERMINAL_STATUSES:
            batch.vessel_id = None
        self.session.flush()
        self.auditor.record(
            "Batch",
            batch.id,
            AuditAction.BATCH_STATUS_CHANGED,
            actor_id,
            {"from": previous.value, "to": target.value, **detail},
        )
        logger.info(
            "batch_status_changed",
            extra={
                "batch_code": batch.batch_code,
                "from_status": previous.value,
                "to_status": target.value,
            },
        )

    def settle_after_outflow(
        self,
        batch: Batch,
        actor_id: UUID,
        vessel_status: str | None = None,
    ) -> bool:
        """
        Run the drain cascade if ``batch`` is at or below the drain threshold.

        Returns True when the batch was completed and its vessel released.
        The caller must already hold the lock on the batch and its vessel.
        """
        if batch.status not in ACTIVE_STATUSES:
            return False
        residual = Decimal(batch.current_volume_liters)
        if residual > self.policy.drain_threshold_liters:
            return False

        vessel = self.session.get(Vessel, batch.vessel_id) if batch.vessel_id else None
        if residual > 0:
            self.writer.write(
                OperationKind.RESIDUAL_WRITE_OFF,
                actor_id,
                source=batch,
                volume_lost=residual,
                source_vessel_id=batch.vessel_id,
                payload={"drain_threshold_liters": self.policy.drain_threshold_liters},
            )
        validate_transition(str(batch.id), batch.status, BatchStatus.COMPLETED)
        self._set_status(batch, BatchStatus.COMPLETED, actor_id, reason="drained")
        if vessel is not None:
            self.vessels.release(
                vessel,
                vessel_status or self.policy.post_drain_vessel_status,
                actor_id,
                batch_id=batch.id,
            )
        logger.info(
            "batch_drained",
            extra={"batch_code": batch.batch_code, "residual_liters": str(residual)},
        )
        return True

    def relocate(
        self,
        batch: Batch,
        old_vessel: Vessel,
        new_vessel: Vessel,
        actor_id: UUID,
        old_vessel_status: str,
    ) -> None:
        """Move a batch under the same identity; the old vessel is released."""
        batch.vessel_id = None
        self.session.flush()
        self.vessels.release(old_vessel, old_vessel_status, actor_id, batch_id=batch.id)
        batch.vessel_id = new_vessel.id
        batch.updated_by_id = actor_id
        self.session.flush()
        self.vessels.occupy(new_vessel, batch.id, actor_id)
        logger.info(
            "batch_relocated",
            extra={
                "batch_code": batch.batch_code,
                "from_vessel_id": str(old_vessel.id),
                "to_vessel_id": str(new_vessel.id),
            },
        )

    # Readings

    def record_gravity(
        self,
        batch_id: UUID | str,
        actor_id: UUID,
        original_gravity: Any = None,
        final_gravity: Any = None,
    ) -> Batch:
        og = to_decimal(original_gravity, "original_gravity") if original_gravity is not None else None
        fg = to_decimal(final_gravity, "final_gravity") if final_gravity is not None else None
        if og is None and fg is None:
            raise InvalidQuantityError("gravity", None, "original or final gravity required")

        batch, _ = self.lock_batch_and_vessel(batch_id)
        self.ensure_active(batch)
        new_og = og if og is not None else batch.original_gravity
        new_fg = fg if fg is not None else batch.final_gravity
        validate_gravities(new_og, new_fg)

        batch.original_gravity = new_og
        batch.final_gravity = new_fg
        batch.updated_by_id = actor_id
        result = self.abv.recalculate(batch)
        self.session.flush()
        self.auditor.record(
            "Batch",
            batch.id,
            AuditAction.BATCH_MEASURED,
            actor_id,
            {
                "original_gravity": new_og,
                "final_gravity": new_fg,
                "rule": result.rule.value,
            },
        )
        return batch

    def record_lab_abv(self, batch_id: UUID | str, abv: Any, actor_id: UUID) -> Batch:
        """A lab measurement wins over any gravity-derived actual ABV."""
        value = validate_abv(abv)
        batch, _ = self.lock_batch_and_vessel(batch_id)
        self.ensure_active(batch)
        batch.actual_abv = value
        batch.actual_abv_source = LAB_SOURCE
        batch.updated_by_id = actor_id
        self.session.flush()
        self.auditor.record(
            "Batch",
            batch.id,
            AuditAction.BATCH_MEASURED,
            actor_id,
            {"actual_abv": value, "source": LAB_SOURCE},
        )
        logger.info("lab_abv_recorded", extra={"batch_code": batch.batch_code, "abv": value})
        return batch

    # Termination

    def discard_batch(
        self,
        batch_id: UUID | str,
        reason: str,
        actor_id: UUID,
        vessel_status: str | None = None,
    ) -> Batch:
        if not isinstance(reason, str) or not reason.strip():
            raise InvalidQuantityError("reason", reason, "a discard reason is required")
        batch, vessel = self.lock_batch_and_vessel(batch_id)
        validate_transition(str(batch.id), batch.status, BatchStatus.DISCARDED)
        return self._discard(batch, vessel, reason.strip(), actor_id, vessel_status)

    def _discard(
        self,
        batch: Batch,
        vessel: Vessel | None,
        reason: str,
        actor_id: UUID,
        vessel_status: str | None,
    ) -> Batch:
        remaining = Decimal(batch.current_volume_liters)
        self.writer.write(
            OperationKind.DISCARD,
            actor_id,
            source=batch,
            volume_lost=remaining,
            source_vessel_id=batch.vessel_id,
            payload={"reason": reason},
        )
        batch.discard_reason = reason
        self._set_status(batch, BatchStatus.DISCARDED, actor_id, reason=reason)
        if vessel is not None:
            self.vessels.release(
                vessel,
                vessel_status or self.policy.post_drain_vessel_status,
                actor_id,
                batch_id=batch.id,
            )
        logger.warning(
            "batch_discarded",
            extra={"batch_code": batch.batch_code, "volume_lost": str(remaining), "reason": reason},
        )
        return batch

    def archive_batch(self, batch_id: UUID | str, actor_id: UUID) -> Batch:
        """Hide a terminal batch from working lists; its history stays queryable."""
        bid = as_uuid(batch_id)
        batch = lock_batches(self.session, [bid])[bid]
        if batch.status not in TERMINAL_STATUSES:
            raise IllegalStatusTransitionError(
                str(batch.id),
                batch.status.value,
                "archived",
                reason="only completed or discarded batches can be archived",
            )
        if batch.archived_at is None:
            batch.archived_at = self.clock.now()
            batch.updated_by_id = actor_id
            self.session.flush()
            self.auditor.record("Batch", batch.id, AuditAction.BATCH_ARCHIVED, actor_id, {})
        return batch
