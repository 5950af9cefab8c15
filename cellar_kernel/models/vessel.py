"""
Module: cellar_kernel.models.vessel
Responsibility: ORM persistence for physical containers (tanks, barrels,
    carboys, brite tanks) that hold at most one active batch.
Architecture position: Kernel > Models.  May import from db/ and the pure
    domain enumerations only.

Invariants enforced:
    - name is unique.
    - capacity_liters > 0; capacity_unit is the as-entered display token.
    - version_id increments on every UPDATE; a flush against a stale
      version raises StaleDataError, surfaced as ConcurrencyConflictError.

Audit relevance:
    Every status change is recorded as a vessel_status_changed audit event.
"""

from decimal import Decimal

from sqlalchemy import CheckConstraint, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from cellar_kernel.db.base import TrackedBase
from cellar_kernel.db.types import enum_column
from cellar_kernel.domain.lifecycle import VesselStatus


class Vessel(TrackedBase):
    """
    A container in the cellar.

    Contract:
        Occupancy (in_use) is derived from the batch that sits in the vessel;
        services set it when liquid arrives and release it when the batch
        drains.  Operators change the status by hand only while empty.

    Guarantees:
        - capacity_liters is canonical; capacity_unit is display only.
        - max_pressure_psi, when set, bounds forced carbonation.
    """

    __tablename__ = "vessels"

    __table_args__ = (
        CheckConstraint("capacity_liters > 0", name="ck_vessel_capacity_positive"),
    )

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
    )

    capacity_liters: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
    )

    capacity_unit: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="L",
    )

    status: Mapped[VesselStatus] = mapped_column(
        enum_column(VesselStatus),
        nullable=False,
        default=VesselStatus.AVAILABLE,
    )

    max_pressure_psi: Mapped[Decimal | None] = mapped_column(
        Numeric(9, 2),
        nullable=True,
    )

    version_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Vessel {self.name}: {self.status.value}>"

    @property
    def is_pressure_rated(self) -> bool:
        return self.max_pressure_psi is not None and self.max_pressure_psi > 0
