"""
VesselService -- registration and status of physical containers.

Responsibility:
    Registers vessels, applies operator status changes while a vessel is
    empty, and performs the automatic occupy / release transitions that
    follow a batch in and out of a vessel.

Architecture position:
    Kernel > Services -- imperative shell.  Called by BatchService, the
    operation handlers and PackagingService.

Invariants enforced:
    - A vessel holding an active batch is ``in_use`` and cannot be changed
      by hand.
    - ``in_use`` is never set by hand; it follows occupancy.
    - A released vessel goes to available, cleaning or maintenance only.

Failure modes:
    - VesselNotFoundError, VesselUnavailableError, InvalidQuantityError.

Audit relevance:
    Every status change, manual or automatic, produces a
    vessel_status_changed audit event.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from cellar_kernel.domain.lifecycle import VesselStatus, validate_release_status
from cellar_kernel.domain.units import Dimension, normalize_unit, to_decimal, to_liters
from cellar_kernel.exceptions import (
    DuplicateNameError,
    InvalidQuantityError,
    VesselNotFoundError,
    VesselUnavailableError,
)
from cellar_kernel.logging_config import get_logger
from cellar_kernel.models.audit_event import AuditAction
from cellar_kernel.models.vessel import Vessel
from cellar_kernel.services.auditor_service import AuditorService
from cellar_kernel.services.base import BaseService, as_uuid
from cellar_kernel.services.locking import lock_vessels, resident_batch_id

logger = get_logger("services.vessel")


class VesselService(BaseService):
    """
    Contract:
        Operates on the caller's session; flushes, never commits.
    """

    def __init__(self, session, clock=None, auditor: AuditorService | None = None):
        super().__init__(session, clock)
        self.auditor = auditor or AuditorService(session, self.clock)

    def register_vessel(
        self,
        name: str,
        capacity: Decimal,
        unit: str,
        actor_id: UUID,
        max_pressure_psi: Decimal | None = None,
    ) -> Vessel:
        if not isinstance(name, str) or not name.strip():
            raise InvalidQuantityError("name", name, "must be a non-empty string")
        name = name.strip()
        token = normalize_unit(unit, Dimension.VOLUME)
        capacity_liters = to_liters(to_decimal(capacity, "capacity"), token)
        if capacity_liters <= 0:
            raise InvalidQuantityError("capacity", capacity, "must be positive")
        pressure = None
        if max_pressure_psi is not None:
            pressure = to_decimal(max_pressure_psi, "max_pressure_psi")
            if pressure < 0:
                raise InvalidQuantityError("max_pressure_psi", max_pressure_psi, "must not be negative")

        existing = self.session.execute(
            select(Vessel.id).where(Vessel.name == name)
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateNameError("Vessel", name)

        vessel = Vessel(
            name=name,
            capacity_liters=capacity_liters,
            capacity_unit=token,
            status=VesselStatus.AVAILABLE,
            max_pressure_psi=pressure,
            created_by_id=actor_id,
        )
        self.session.add(vessel)
        self.session.flush()

        self.auditor.record(
            "Vessel",
            vessel.id,
            AuditAction.VESSEL_REGISTERED,
            actor_id,
            {"name": name, "capacity_liters": capacity_liters, "capacity_unit": token},
        )
        logger.info(
            "vessel_registered",
            extra={"vessel_id": str(vessel.id), "vessel_name": name, "capacity_liters": str(capacity_liters)},
        )
        return vessel

    def get_vessel(self, vessel_id: UUID | str) -> Vessel:
        vessel = self.session.get(Vessel, as_uuid(vessel_id))
        if vessel is None:
            raise VesselNotFoundError(str(vessel_id))
        return vessel

    def set_vessel_status(
        self, vessel_id: UUID | str, status: VesselStatus | str, actor_id: UUID
    ) -> Vessel:
        """
        Operator status change on an empty vessel.

        Raises:
            VesselUnavailableError: a batch occupies the vessel, or the
                target is ``in_use`` or unknown.
        """
        vid = as_uuid(vessel_id)
        vessel = lock_vessels(self.session, [vid])[vid]
        target = validate_release_status(str(vid), status)
        if resident_batch_id(self.session, vid) is not None:
            raise VesselUnavailableError(
                str(vid), vessel.status.value, "vessel holds an active batch"
            )
        self._change_status(vessel, target, actor_id, reason="manual")
        return vessel

    def occupy(self, vessel: Vessel, batch_id: UUID, actor_id: UUID) -> None:
        """Mark an empty vessel in_use as liquid arrives."""
        if vessel.status != VesselStatus.IN_USE:
            self._change_status(vessel, VesselStatus.IN_USE, actor_id, reason="occupied", batch_id=batch_id)

    def release(
        self,
        vessel: Vessel,
        status: VesselStatus | str,
        actor_id: UUID,
        batch_id: UUID | None = None,
    ) -> None:
        target = validate_release_status(str(vessel.id), status)
        self._change_status(vessel, target, actor_id, reason="released", batch_id=batch_id)
        logger.info(
            "vessel_auto_released",
            extra={
                "vessel_id": str(vessel.id),
                "batch_id": str(batch_id) if batch_id else None,
                "status": target.value,
            },
        )

    def ensure_fillable(self, vessel: Vessel) -> None:
        """An empty vessel must be available before liquid goes in."""
        if vessel.status != VesselStatus.AVAILABLE:
            raise VesselUnavailableError(
                str(vessel.id), vessel.status.value, "vessel is not available"
            )
        if resident_batch_id(self.session, vessel.id) is not None:
            raise VesselUnavailableError(
                str(vessel.id), vessel.status.value, "vessel holds an active batch"
            )

    def _change_status(
        self,
        vessel: Vessel,
        target: VesselStatus,
        actor_id: UUID,
        reason: str,
        batch_id: UUID | None = None,
    ) -> None:
        previous = vessel.status
        if previous == target:
            return
        vessel.status = target
        vessel.updated_by_id = actor_id
        self.session.flush()
        self.auditor.record(
            "Vessel",
            vessel.id,
            AuditAction.VESSEL_STATUS_CHANGED,
            actor_id,
            {
                "from": previous.value,
                "to": target.value,
                "reason": reason,
                "batch_id": batch_id,
            },
        )
        logger.info(
            "vessel_status_changed",
            extra={
                "vessel_id": str(vessel.id),
                "from_status": previous.value,
                "to_status": target.value,
                "reason": reason,
            },
        )
