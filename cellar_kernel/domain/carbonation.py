"""
Carbonation -- CO2 volume estimates for forced and natural carbonation.

Responsibility:
    Pure functions converting tank pressure / temperature (forced) or a
    priming sugar dose (natural) into dissolved CO2 volumes, and classifying
    the result as still, petillant or sparkling.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Forced:  co2 = (gauge_psi + 14.7) * temperature_factor(temp_c), where
      the factor is linearly interpolated from a solubility table and clamped
      to its 0-25 C range.
    - Natural: co2 = residual + (sugar_g_per_liter / sugar_factor).
    - Levels: still < 1.0 <= petillant < 2.5 <= sparkling.
    - Gauge pressure above 50 psi is never accepted.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from cellar_kernel.exceptions import InvalidQuantityError

ATMOSPHERIC_PRESSURE_PSI = Decimal("14.7")
MAX_PRESSURE_PSI = Decimal("50")

PETILLANT_THRESHOLD = Decimal("1.0")
SPARKLING_THRESHOLD = Decimal("2.5")

# CO2 volumes per absolute psi, by temperature in Celsius
TEMPERATURE_FACTORS: Mapping[int, Decimal] = MappingProxyType(
    {
        0: Decimal("0.11417"),
        2: Decimal("0.10568"),
        4: Decimal("0.09474"),
        6: Decimal("0.08899"),
        8: Decimal("0.08458"),
        10: Decimal("0.08016"),
        12: Decimal("0.07470"),
        15: Decimal("0.06923"),
        18: Decimal("0.06417"),
        20: Decimal("0.05911"),
        22: Decimal("0.05506"),
        25: Decimal("0.04959"),
    }
)

# Grams per liter of sugar per volume of CO2
SUGAR_FACTORS: Mapping[str, Decimal] = MappingProxyType(
    {
        "sucrose": Decimal("4.0"),
        "dextrose": Decimal("3.8"),
        "honey": Decimal("3.5"),
    }
)


class CarbonationLevel(str, Enum):
    STILL = "still"
    PETILLANT = "petillant"
    SPARKLING = "sparkling"


class CarbonationMethod(str, Enum):
    FORCED = "forced"
    NATURAL = "natural"


def _round2(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def temperature_factor(temperature_c: Decimal) -> Decimal:
    """Interpolated solubility factor, clamped to the table's range."""
    temps = sorted(TEMPERATURE_FACTORS)
    if temperature_c <= temps[0]:
        return TEMPERATURE_FACTORS[temps[0]]
    if temperature_c >= temps[-1]:
        return TEMPERATURE_FACTORS[temps[-1]]
    for lower, upper in zip(temps, temps[1:]):
        if lower <= temperature_c <= upper:
            low_f = TEMPERATURE_FACTORS[lower]
            high_f = TEMPERATURE_FACTORS[upper]
            return low_f + (temperature_c - lower) * (high_f - low_f) / (upper - lower)
    raise AssertionError("unreachable: temperature within table bounds")


def co2_from_pressure(pressure_psi: Decimal, temperature_c: Decimal) -> Decimal:
    """Equilibrium CO2 volumes at a gauge pressure and temperature."""
    validate_pressure(pressure_psi)
    factor = temperature_factor(temperature_c)
    return _round2((pressure_psi + ATMOSPHERIC_PRESSURE_PSI) * factor)


def pressure_for_co2(target_co2: Decimal, temperature_c: Decimal) -> Decimal:
    """Gauge pressure needed to reach ``target_co2`` volumes, floored at 0."""
    gauge = target_co2 / temperature_factor(temperature_c) - ATMOSPHERIC_PRESSURE_PSI
    return _round2(max(Decimal("0"), gauge))


def co2_from_sugar(
    sugar_grams_per_liter: Decimal,
    sugar_type: str = "sucrose",
    residual_co2: Decimal = Decimal("0"),
) -> Decimal:
    factor = _sugar_factor(sugar_type)
    return _round2(residual_co2 + sugar_grams_per_liter / factor)


def priming_sugar_kg(
    target_co2: Decimal,
    volume_liters: Decimal,
    sugar_type: str = "sucrose",
    residual_co2: Decimal = Decimal("0"),
) -> Decimal:
    """Sugar mass in kilograms to lift ``volume_liters`` to ``target_co2``."""
    delta = target_co2 - residual_co2
    if delta <= 0:
        return Decimal("0")
    grams = delta * _sugar_factor(sugar_type) * volume_liters
    return grams / 1000


def classify_level(co2_volumes: Decimal | None) -> CarbonationLevel:
    if co2_volumes is None or co2_volumes < PETILLANT_THRESHOLD:
        return CarbonationLevel.STILL
    if co2_volumes < SPARKLING_THRESHOLD:
        return CarbonationLevel.PETILLANT
    return CarbonationLevel.SPARKLING


def validate_pressure(pressure_psi: Decimal) -> Decimal:
    if pressure_psi < 0 or pressure_psi > MAX_PRESSURE_PSI:
        raise InvalidQuantityError(
            "pressure_psi", pressure_psi, f"must be between 0 and {MAX_PRESSURE_PSI} psi"
        )
    return pressure_psi


def _sugar_factor(sugar_type: str) -> Decimal:
    try:
        return SUGAR_FACTORS[sugar_type]
    except KeyError:
        raise InvalidQuantityError(
            "sugar_type", sugar_type, f"expected one of {sorted(SUGAR_FACTORS)}"
        ) from None
