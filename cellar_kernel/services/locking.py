"""
Row locking for vessels and batches.

Every mutating operation locks the rows it reads before checking volumes or
capacity.  Locks are always taken vessels first, then batches, each sorted by
id, so two operations touching the same rows cannot deadlock.

On PostgreSQL this is ``SELECT ... FOR UPDATE``.  SQLite ignores FOR UPDATE;
there the engine opens every transaction with ``BEGIN IMMEDIATE`` (see
db/engine.py) which serializes writers for the whole transaction.

``populate_existing`` makes the locked read overwrite any stale identity-map
copy with the committed row, so the volume check sees what another
transaction just committed.
"""

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from cellar_kernel.exceptions import BatchNotFoundError, VesselNotFoundError
from cellar_kernel.models.batch import Batch
from cellar_kernel.models.vessel import Vessel


def _sorted_ids(ids: Iterable[UUID | None]) -> list[UUID]:
    return sorted({i for i in ids if i is not None}, key=str)


def lock_vessels(session: Session, vessel_ids: Iterable[UUID | None]) -> dict[UUID, Vessel]:
    ids = _sorted_ids(vessel_ids)
    if not ids:
        return {}
    rows = session.execute(
        select(Vessel)
        .where(Vessel.id.in_(ids))
        .order_by(Vessel.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()
    found = {row.id: row for row in rows}
    for vessel_id in ids:
        if vessel_id not in found:
            raise VesselNotFoundError(str(vessel_id))
    return found


def lock_batches(session: Session, batch_ids: Iterable[UUID | None]) -> dict[UUID, Batch]:
    ids = _sorted_ids(batch_ids)
    if not ids:
        return {}
    rows = session.execute(
        select(Batch)
        .where(Batch.id.in_(ids))
        .order_by(Batch.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()
    found = {row.id: row for row in rows}
    for batch_id in ids:
        if batch_id not in found:
            raise BatchNotFoundError(str(batch_id))
    return found


def resident_batch_id(session: Session, vessel_id: UUID) -> UUID | None:
    """Id of the active batch currently sitting in ``vessel_id``, if any."""
    return session.execute(
        select(Batch.id).where(Batch.vessel_id == vessel_id)
    ).scalar_one_or_none()


def peek_batch(session: Session, batch_id: UUID) -> Batch:
    """
    Unlocked read used only to learn which vessel to lock first.

    Callers must re-check the vessel after taking the locks.
    """
    batch = session.get(Batch, batch_id)
    if batch is None:
        raise BatchNotFoundError(str(batch_id))
    return batch
