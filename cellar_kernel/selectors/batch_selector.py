"""
Module: cellar_kernel.selectors.batch_selector
Responsibility: Current batch state and journal replay of batch volumes.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - current_volume_liters is a projection of the journal:
      replay_volume(batch) must agree with it within the volume epsilon.
      verify_projection reports, it does not repair.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from cellar_kernel.db.types import VOLUME_EPSILON, volumes_equal
from cellar_kernel.domain.dtos import (
    BatchState,
    CompositionEntryRecord,
    ProjectionCheck,
    VesselInfo,
)
from cellar_kernel.domain.lifecycle import ACTIVE_STATUSES
from cellar_kernel.exceptions import BatchNotFoundError, VesselNotFoundError
from cellar_kernel.models.batch import Batch
from cellar_kernel.models.composition import CompositionEntry
from cellar_kernel.models.vessel import Vessel
from cellar_kernel.selectors.base import BaseSelector
from cellar_kernel.selectors.journal_selector import JournalSelector


class BatchSelector(BaseSelector):
    def _batch(self, batch_id: UUID) -> Batch:
        batch = self.session.get(Batch, batch_id)
        if batch is None:
            raise BatchNotFoundError(str(batch_id))
        return batch

    def current_state(self, batch_id: UUID) -> BatchState:
        return BatchState.from_model(self._batch(batch_id))

    def by_code(self, batch_code: str) -> BatchState | None:
        batch = self.session.execute(
            select(Batch).where(Batch.batch_code == batch_code)
        ).scalar_one_or_none()
        return BatchState.from_model(batch) if batch is not None else None

    def active_batches(self) -> tuple[BatchState, ...]:
        rows = self.session.execute(
            select(Batch)
            .where(Batch.status.in_(list(ACTIVE_STATUSES)))
            .order_by(Batch.batch_code)
        ).scalars().all()
        return tuple(BatchState.from_model(row) for row in rows)

    def composition(
        self, batch_id: UUID, include_deleted: bool = False
    ) -> tuple[CompositionEntryRecord, ...]:
        query = select(CompositionEntry).where(CompositionEntry.batch_id == batch_id)
        if not include_deleted:
            query = query.where(CompositionEntry.deleted_at.is_(None))
        rows = self.session.execute(query.order_by(CompositionEntry.created_at)).scalars().all()
        return tuple(CompositionEntryRecord.from_model(row) for row in rows)

    def vessel(self, vessel_id: UUID) -> VesselInfo:
        vessel = self.session.get(Vessel, vessel_id)
        if vessel is None:
            raise VesselNotFoundError(str(vessel_id))
        return VesselInfo.from_model(vessel)

    def replay_volume(self, batch_id: UUID) -> Decimal:
        """Rebuild the batch volume from its journal rows alone."""
        self._batch(batch_id)
        volume = Decimal("0")
        for entry in JournalSelector(self.session).history(batch_id):
            in_place = entry.source_batch_id == entry.dest_batch_id
            if entry.source_batch_id == batch_id:
                volume -= entry.volume_lost
                if not in_place:
                    volume -= entry.volume_moved
            elif entry.dest_batch_id == batch_id:
                volume += entry.volume_moved
        return volume

    def verify_projection(
        self, batch_id: UUID, epsilon: Decimal = VOLUME_EPSILON
    ) -> ProjectionCheck:
        projected = Decimal(self._batch(batch_id).current_volume_liters)
        replayed = self.replay_volume(batch_id)
        return ProjectionCheck(
            batch_id=batch_id,
            projected_volume=projected,
            replayed_volume=replayed,
            consistent=volumes_equal(projected, replayed, epsilon),
        )
