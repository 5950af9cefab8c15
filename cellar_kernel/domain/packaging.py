"""
Packaging -- Draw-down arithmetic and lot code formatting.

Responsibility:
    Pure computation for a packaging run: loss volume and percentage,
    package type inference, lot code formatting and expiration dates.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  The lot sequence
    itself is allocated by services/sequence_service.py under a row lock.

Invariants enforced:
    - loss = volume_taken - unit_size * units_produced, and loss >= 0.
    - Lot code format ``{batch_code}-{YYMMDD}-P{sequence}``.
    - Package type is keg when the unit size is at least the keg threshold
      (5 L), bottle otherwise, unless the operator names it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from cellar_kernel.exceptions import InvalidQuantityError, NegativeLossError

DEFAULT_KEG_MIN_UNIT_SIZE = Decimal("5")
DEFAULT_SHELF_LIFE_DAYS = 365


class PackageType(str, Enum):
    BOTTLE = "bottle"
    CAN = "can"
    KEG = "keg"


@dataclass(frozen=True)
class PackagingLoss:
    packaged_volume: Decimal
    loss_volume: Decimal
    loss_percentage: Decimal


def compute_packaging_loss(
    volume_taken: Decimal,
    unit_size: Decimal,
    units_produced: int,
) -> PackagingLoss:
    """
    Loss of a packaging run.

    Raises:
        InvalidQuantityError: non-positive volume / unit size, negative units.
        NegativeLossError: more finished product than liquid taken.
    """
    if volume_taken <= 0:
        raise InvalidQuantityError("volume_taken", volume_taken, "must be positive")
    if unit_size <= 0:
        raise InvalidQuantityError("unit_size", unit_size, "must be positive")
    if isinstance(units_produced, bool) or not isinstance(units_produced, int):
        raise InvalidQuantityError("units_produced", units_produced, "must be an integer")
    if units_produced < 0:
        raise InvalidQuantityError("units_produced", units_produced, "must not be negative")

    packaged = unit_size * units_produced
    loss = volume_taken - packaged
    if loss < 0:
        raise NegativeLossError(volume_taken=volume_taken, packaged_volume=packaged)

    percentage = (loss / volume_taken * 100).quantize(
        Decimal("0.0001"), rounding=ROUND_HALF_UP
    )
    return PackagingLoss(
        packaged_volume=packaged,
        loss_volume=loss,
        loss_percentage=percentage,
    )


def infer_package_type(
    unit_size_liters: Decimal,
    requested: PackageType | str | None = None,
    keg_min_unit_size: Decimal = DEFAULT_KEG_MIN_UNIT_SIZE,
) -> PackageType:
    if requested is not None:
        try:
            return PackageType(requested)
        except ValueError:
            raise InvalidQuantityError(
                "package_type", requested, f"expected one of {[p.value for p in PackageType]}"
            ) from None
    if unit_size_liters >= keg_min_unit_size:
        return PackageType.KEG
    return PackageType.BOTTLE


def format_lot_code(batch_code: str, packaged_on: date, sequence: int) -> str:
    return f"{batch_code}-{packaged_on:%y%m%d}-P{sequence}"


def lot_counter_name(batch_id: object, packaged_on: date) -> str:
    """Name of the counter row that numbers lots for one batch and day."""
    return f"lot:{batch_id}:{packaged_on:%y%m%d}"


def expiration_date(packaged_on: date, shelf_life_days: int = DEFAULT_SHELF_LIFE_DAYS) -> date:
    return packaged_on + timedelta(days=shelf_life_days)
