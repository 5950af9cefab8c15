"""
JournalWriter -- the single writer of batch volumes.

Responsibility:
    Appends one OperationJournalEntry per volume-affecting event and applies
    its effect to the materialized ``current_volume_liters`` of the source
    and destination batches.  No other code assigns that column.

Architecture position:
    Kernel > Services -- imperative shell.  Called by BatchService,
    CompositionService, OperationJournal and PackagingService after they
    have validated and locked everything.

Invariants enforced:
    - Source conservation within the volume epsilon:
          before - after == moved + lost - (moved if in place)
    - No batch volume goes below zero.
    - An inbound leg never pushes a batch above its vessel's capacity.
    - seq comes from the locked journal counter row.
    - occurred_at defaults to the clock; callers that pass an earlier
      business time (a back-dated packaging run) have validated it.

Failure modes:
    - InsufficientVolumeError: the source does not hold moved + lost.
    - CapacityExceededError: destination vessel would overflow.
    - InvalidQuantityError: negative moved / lost volume.

Audit relevance:
    Each row is audited as operation_recorded, and the journal itself is the
    replay log that BatchSelector.verify_projection checks against.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from cellar_kernel.db.types import VOLUME_EPSILON, round_volume
from cellar_kernel.domain.operations import OperationKind, source_conserves
from cellar_kernel.exceptions import (
    CapacityExceededError,
    InsufficientVolumeError,
    InvalidQuantityError,
)
from cellar_kernel.logging_config import get_logger
from cellar_kernel.models.audit_event import AuditAction
from cellar_kernel.models.batch import Batch
from cellar_kernel.models.journal import OperationJournalEntry
from cellar_kernel.models.vessel import Vessel
from cellar_kernel.services.auditor_service import AuditorService
from cellar_kernel.services.base import BaseService
from cellar_kernel.services.sequence_service import SequenceService
from cellar_kernel.utils.hashing import to_json_safe

logger = get_logger("services.journal_writer")

ZERO = Decimal("0")


class JournalWriter(BaseService):
    """
    Contract:
        ``write`` receives ORM rows the caller has already locked.  The
        source and destination may be the same batch (in-place operation).

    Non-goals:
        - Does NOT decide routing, status or composition; callers do.
    """

    def __init__(
        self,
        session,
        clock=None,
        auditor: AuditorService | None = None,
        epsilon: Decimal = VOLUME_EPSILON,
    ):
        super().__init__(session, clock)
        self.auditor = auditor or AuditorService(session, self.clock)
        self.sequence = SequenceService(session)
        self.epsilon = epsilon

    def write(
        self,
        kind: OperationKind,
        actor_id: UUID,
        *,
        source: Batch | None = None,
        dest: Batch | None = None,
        volume_moved: Decimal = ZERO,
        volume_lost: Decimal = ZERO,
        source_vessel_id: UUID | None = None,
        dest_vessel: Vessel | None = None,
        dest_vessel_id: UUID | None = None,
        abv: Decimal | None = None,
        proof_gallons: Decimal | None = None,
        external_ref: str | None = None,
        payload: dict[str, Any] | None = None,
        reverses_entry_id: UUID | None = None,
        occurred_at: datetime | None = None,
    ) -> OperationJournalEntry:
        moved = round_volume(volume_moved)
        lost = round_volume(volume_lost)
        if moved < 0:
            raise InvalidQuantityError("volume_moved", volume_moved, "must not be negative")
        if lost < 0:
            raise InvalidQuantityError("volume_lost", volume_lost, "must not be negative")

        in_place = source is not None and dest is source
        if dest_vessel is not None and dest_vessel_id is None:
            dest_vessel_id = dest_vessel.id

        source_before = source_after = dest_before = dest_after = None

        if source is not None:
            source_before = Decimal(source.current_volume_liters)
            debit = moved + lost - (moved if in_place else ZERO)
            remaining = source_before - debit
            if remaining < -self.epsilon:
                raise InsufficientVolumeError(str(source.id), source_before, debit)
            source_after = round_volume(max(remaining, ZERO))
            if not source_conserves(
                source_before, source_after, moved, lost, in_place, self.epsilon
            ):
                raise InsufficientVolumeError(str(source.id), source_before, debit)

        if in_place:
            dest_before, dest_after = source_before, source_after
        elif dest is not None:
            dest_before = Decimal(dest.current_volume_liters)
            dest_after = round_volume(dest_before + moved)
            if dest_vessel is not None and dest_after > dest_vessel.capacity_liters + self.epsilon:
                raise CapacityExceededError(
                    str(dest_vessel.id), dest_vessel.capacity_liters, dest_after
                )

        if source is not None:
            source.current_volume_liters = source_after
            source.updated_by_id = actor_id
        if dest is not None and not in_place:
            dest.current_volume_liters = dest_after
            dest.updated_by_id = actor_id

        seq = self.sequence.next_value(SequenceService.JOURNAL_ENTRY)
        entry = OperationJournalEntry(
            seq=seq,
            kind=kind,
            source_batch_id=source.id if source is not None else None,
            source_vessel_id=source_vessel_id,
            dest_batch_id=dest.id if dest is not None else None,
            dest_vessel_id=dest_vessel_id,
            volume_moved=moved,
            volume_lost=lost,
            source_volume_before=source_before,
            source_volume_after=source_after,
            dest_volume_before=dest_before,
            dest_volume_after=dest_after,
            abv=abv,
            proof_gallons=proof_gallons,
            external_ref=external_ref,
            payload=to_json_safe(payload or {}),
            occurred_at=occurred_at or self.clock.now(),
            actor_id=actor_id,
            reverses_entry_id=reverses_entry_id,
            created_by_id=actor_id,
        )
        self.session.add(entry)
        self.session.flush()

        self.auditor.record(
            "OperationJournalEntry",
            entry.id,
            AuditAction.OPERATION_RECORDED,
            actor_id,
            {
                "seq": seq,
                "kind": kind.value,
                "source_batch_id": entry.source_batch_id,
                "dest_batch_id": entry.dest_batch_id,
                "volume_moved": moved,
                "volume_lost": lost,
            },
        )
        logger.info(
            "operation_recorded",
            extra={
                "operation_id": str(entry.id),
                "seq": seq,
                "kind": kind.value,
                "source_batch_id": str(entry.source_batch_id) if entry.source_batch_id else None,
                "dest_batch_id": str(entry.dest_batch_id) if entry.dest_batch_id else None,
                "volume_moved": str(moved),
                "volume_lost": str(lost),
            },
        )
        return entry
