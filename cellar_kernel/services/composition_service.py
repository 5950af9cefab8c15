"""
CompositionService -- the composition ledger of each batch.

Responsibility:
    Records which source inputs make up a batch.  Adding an external source
    journals a composition_in leg; removing one soft-deletes the entry and
    journals a composition_reversal leg.  ABV is recalculated in the same
    transaction either way.

Architecture position:
    Kernel > Services -- imperative shell.  ``append_entry`` is also used by
    batch creation, transfer, merge and distillation inbound.

Invariants enforced:
    - Exactly one source reference per entry, matching its kind.
    - Sum of live entry volumes == the batch's cumulative inbound volume,
      because every entry is paired with the journal leg that brought the
      volume in, and every removal with the leg that took it out.
    - batch_transfer entries cannot be removed.

Failure modes:
    - CompositionSourceError, CompositionEntryNotFoundError,
      BatchNotActiveError, InsufficientVolumeError, CapacityExceededError.

Audit relevance:
    composition_added / composition_removed audit events reference the
    journal row of each leg.
"""

from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from cellar_kernel.db.types import round_volume
from cellar_kernel.domain.abv import validate_abv
from cellar_kernel.domain.composition import (
    BrandySource,
    CompositionSource,
    validate_source,
)
from cellar_kernel.domain.operations import OperationKind
from cellar_kernel.domain.units import to_decimal, to_liters
from cellar_kernel.exceptions import (
    BatchNotActiveError,
    CapacityExceededError,
    CompositionEntryNotFoundError,
    CompositionSourceError,
    InsufficientVolumeError,
    InvalidQuantityError,
)
from cellar_kernel.logging_config import get_logger
from cellar_kernel.models.audit_event import AuditAction
from cellar_kernel.models.batch import Batch
from cellar_kernel.models.composition import CompositionEntry, SourceKind
from cellar_kernel.models.journal import OperationJournalEntry
from cellar_kernel.services.auditor_service import AuditorService
from cellar_kernel.services.base import BaseService, as_uuid
from cellar_kernel.services.locking import lock_batches, lock_vessels, peek_batch

if TYPE_CHECKING:
    from cellar_kernel.services.abv_service import AbvService
    from cellar_kernel.services.batch_service import BatchService
    from cellar_kernel.services.journal_writer import JournalWriter

logger = get_logger("services.composition")


def append_entry(
    session,
    auditor: AuditorService,
    batch: Batch,
    source: CompositionSource,
    volume_liters: Decimal,
    abv: Decimal,
    journal_entry: OperationJournalEntry,
    actor_id: UUID,
    details: dict[str, Any] | None = None,
) -> CompositionEntry:
    """Insert the composition row paired with an inbound journal leg."""
    total = Decimal(batch.current_volume_liters)
    fraction = volume_liters / total if total > 0 else Decimal("1")
    entry = CompositionEntry(
        batch_id=batch.id,
        source_kind=SourceKind(source.kind),
        volume_liters=round_volume(volume_liters),
        abv=abv,
        fraction_of_batch=round_volume(fraction),
        journal_entry_id=journal_entry.id,
        details=details,
        created_by_id=actor_id,
    )
    setattr(entry, source.column, source.reference)
    session.add(entry)
    session.flush()

    auditor.record(
        "CompositionEntry",
        entry.id,
        AuditAction.COMPOSITION_ADDED,
        actor_id,
        {
            "batch_id": batch.id,
            "source_kind": source.kind,
            "reference": source.reference,
            "volume_liters": entry.volume_liters,
            "abv": abv,
            "journal_entry_id": journal_entry.id,
        },
    )
    logger.info(
        "composition_added",
        extra={
            "batch_id": str(batch.id),
            "entry_id": str(entry.id),
            "source_kind": source.kind,
            "volume_liters": str(entry.volume_liters),
        },
    )
    return entry


def source_abv(source: CompositionSource, abv: Any) -> Decimal:
    """ABV of an external source; fruit and juice default to 0, brandy must say."""
    if abv is None:
        if isinstance(source, BrandySource):
            raise CompositionSourceError(source.kind, "abv is required for a brandy source")
        return Decimal("0")
    return validate_abv(abv)


class CompositionService(BaseService):
    def __init__(
        self,
        session,
        clock,
        auditor: AuditorService,
        writer: "JournalWriter",
        abv: "AbvService",
        batches: "BatchService",
    ):
        super().__init__(session, clock)
        self.auditor = auditor
        self.writer = writer
        self.abv = abv
        self.batches = batches

    def add_composition(
        self,
        batch_id: UUID | str,
        source: CompositionSource,
        volume: Any,
        unit: str,
        actor_id: UUID,
        abv: Any = None,
        details: dict[str, Any] | None = None,
    ) -> CompositionEntry:
        source = validate_source(source)
        contributed_abv = source_abv(source, abv)
        liters = to_liters(to_decimal(volume, "volume"), unit)
        if liters <= 0:
            raise InvalidQuantityError("volume", volume, "must be positive")

        bid = as_uuid(batch_id)
        vessel_id = peek_batch(self.session, bid).vessel_id
        vessels = lock_vessels(self.session, [vessel_id])
        batch = lock_batches(self.session, [bid])[bid]
        self.batches.ensure_active(batch)
        self.batches.ensure_in_vessel(batch, vessel_id)
        vessel = vessels[vessel_id]

        resulting = Decimal(batch.current_volume_liters) + liters
        if resulting > vessel.capacity_liters + self.writer.epsilon:
            raise CapacityExceededError(str(vessel.id), vessel.capacity_liters, resulting)

        journal_entry = self.writer.write(
            OperationKind.COMPOSITION_IN,
            actor_id,
            dest=batch,
            volume_moved=liters,
            dest_vessel=vessel,
            abv=contributed_abv,
            payload={
                "source_kind": source.kind,
                "reference": source.reference,
                "details": details,
            },
        )
        entry = append_entry(
            self.session,
            self.auditor,
            batch,
            source,
            liters,
            contributed_abv,
            journal_entry,
            actor_id,
            details,
        )
        self.abv.recalculate(batch)
        return entry

    def remove_composition(
        self,
        entry_id: UUID | str,
        actor_id: UUID,
        vessel_status: str | None = None,
    ) -> CompositionEntry:
        """
        Soft-delete an external-source entry and debit its volume.

        The reversal can drain the batch; the usual drain cascade then runs.
        """
        eid = as_uuid(entry_id)
        entry = self.session.get(CompositionEntry, eid)
        if entry is None or entry.is_deleted:
            raise CompositionEntryNotFoundError(str(entry_id))
        if entry.source_kind == SourceKind.BATCH_TRANSFER:
            raise CompositionSourceError(
                entry.source_kind.value, "batch_transfer entries cannot be removed"
            )

        vessel_id = peek_batch(self.session, entry.batch_id).vessel_id
        lock_vessels(self.session, [vessel_id])
        batch = lock_batches(self.session, [entry.batch_id])[entry.batch_id]
        self.batches.ensure_active(batch)
        self.batches.ensure_in_vessel(batch, vessel_id)

        available = Decimal(batch.current_volume_liters)
        if Decimal(entry.volume_liters) > available + self.writer.epsilon:
            raise InsufficientVolumeError(str(batch.id), available, entry.volume_liters)

        reversal = self.writer.write(
            OperationKind.COMPOSITION_REVERSAL,
            actor_id,
            source=batch,
            volume_moved=min(Decimal(entry.volume_liters), available),
            source_vessel_id=batch.vessel_id,
            abv=entry.abv,
            payload={"composition_entry_id": entry.id, "source_kind": entry.source_kind.value},
            reverses_entry_id=entry.journal_entry_id,
        )
        entry.deleted_at = self.clock.now()
        entry.deleted_by_id = actor_id
        self.session.flush()

        self.auditor.record(
            "CompositionEntry",
            entry.id,
            AuditAction.COMPOSITION_REMOVED,
            actor_id,
            {"batch_id": batch.id, "reversal_entry_id": reversal.id},
        )
        logger.info(
            "composition_removed",
            extra={
                "batch_id": str(batch.id),
                "entry_id": str(entry.id),
                "volume_liters": str(entry.volume_liters),
            },
        )
        self.abv.recalculate(batch)
        self.batches.settle_after_outflow(batch, actor_id, vessel_status)
        return entry
