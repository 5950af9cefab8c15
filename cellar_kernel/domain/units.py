"""
Units -- Canonical unit normalization for volume and mass.

Responsibility:
    Converts operator-entered quantities into the ledger's canonical units
    (liters for volume, kilograms for mass) and back again for display and
    regulatory reporting.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  The conversion tables
    are immutable module-level mappings.

Invariants enforced:
    - Deterministic and side-effect-free: the same input always yields the
      same Decimal.
    - Round trip ``from_canonical(to_canonical(v, u), u)`` is exact to well
      under 1e-6 relative error (Decimal arithmetic, 28 significant digits).
    - A token resolves per dimension: ``bushel`` is 35.239 L as a volume and
      42 lb as a mass.

Failure modes:
    - UnknownUnitError for a token that is unknown or not valid for the
      requested dimension.
    - InvalidQuantityError for a non-numeric, non-finite or negative value.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from cellar_kernel.exceptions import InvalidQuantityError, UnknownUnitError


class Dimension(str, Enum):
    VOLUME = "volume"
    MASS = "mass"


LITERS_PER_GALLON = Decimal("3.785411784")
LITERS_PER_BUSHEL = Decimal("35.23907016688")
KG_PER_POUND = Decimal("0.45359237")
POUNDS_PER_APPLE_BUSHEL = Decimal("42")

CANONICAL_UNIT: Mapping[Dimension, str] = MappingProxyType(
    {Dimension.VOLUME: "L", Dimension.MASS: "kg"}
)

_FACTORS: Mapping[Dimension, Mapping[str, Decimal]] = MappingProxyType(
    {
        Dimension.VOLUME: MappingProxyType(
            {
                "L": Decimal("1"),
                "mL": Decimal("0.001"),
                "hL": Decimal("100"),
                "gal": LITERS_PER_GALLON,
                "bushel": LITERS_PER_BUSHEL,
            }
        ),
        Dimension.MASS: MappingProxyType(
            {
                "kg": Decimal("1"),
                "g": Decimal("0.001"),
                "lb": KG_PER_POUND,
                "bushel": POUNDS_PER_APPLE_BUSHEL * KG_PER_POUND,
            }
        ),
    }
)

# Lower-cased spelling -> canonical token.  Dimension validity is checked
# separately against _FACTORS.
_ALIASES: Mapping[str, str] = MappingProxyType(
    {
        "l": "L",
        "liter": "L",
        "liters": "L",
        "litre": "L",
        "litres": "L",
        "ml": "mL",
        "milliliter": "mL",
        "milliliters": "mL",
        "millilitre": "mL",
        "millilitres": "mL",
        "hl": "hL",
        "hectoliter": "hL",
        "hectoliters": "hL",
        "hectolitre": "hL",
        "hectolitres": "hL",
        "gal": "gal",
        "gallon": "gal",
        "gallons": "gal",
        "bushel": "bushel",
        "bushels": "bushel",
        "bu": "bushel",
        "kg": "kg",
        "kilogram": "kg",
        "kilograms": "kg",
        "g": "g",
        "gram": "g",
        "grams": "g",
        "lb": "lb",
        "lbs": "lb",
        "pound": "lb",
        "pounds": "lb",
    }
)


def _coerce_dimension(dimension: Dimension | str) -> Dimension:
    try:
        return Dimension(dimension)
    except ValueError:
        raise UnknownUnitError(str(dimension), "dimension") from None


def normalize_unit(token: str, dimension: Dimension | str) -> str:
    """
    Resolve an operator-entered unit token to its canonical spelling.

    Raises:
        UnknownUnitError: token unknown, or not valid for ``dimension``.
    """
    dim = _coerce_dimension(dimension)
    if not isinstance(token, str):
        raise UnknownUnitError(str(token), dim.value)
    canonical = _ALIASES.get(token.strip().lower())
    if canonical is None or canonical not in _FACTORS[dim]:
        raise UnknownUnitError(token, dim.value)
    return canonical


def supported_units(dimension: Dimension | str) -> tuple[str, ...]:
    return tuple(_FACTORS[_coerce_dimension(dimension)].keys())


def to_decimal(value: object, field: str = "value") -> Decimal:
    """
    Coerce a caller-supplied number into a finite Decimal.

    Floats go through ``str`` so 0.1 becomes Decimal("0.1"), not its binary
    expansion.
    """
    if isinstance(value, bool):
        raise InvalidQuantityError(field, value, "not a number")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise InvalidQuantityError(field, value, "not a number") from None
    else:
        raise InvalidQuantityError(field, value, "not a number")
    if not result.is_finite():
        raise InvalidQuantityError(field, value, "must be finite")
    return result


def _non_negative(value: object, field: str) -> Decimal:
    result = to_decimal(value, field)
    if result < 0:
        raise InvalidQuantityError(field, value, "must not be negative")
    return result


def to_canonical(value: object, unit: str, dimension: Dimension | str) -> Decimal:
    """Convert ``value`` in ``unit`` into liters (volume) or kilograms (mass)."""
    dim = _coerce_dimension(dimension)
    token = normalize_unit(unit, dim)
    return _non_negative(value, "value") * _FACTORS[dim][token]


def from_canonical(
    canonical_value: object, target_unit: str, dimension: Dimension | str
) -> Decimal:
    """Convert a canonical liters / kilograms value into ``target_unit``."""
    dim = _coerce_dimension(dimension)
    token = normalize_unit(target_unit, dim)
    return _non_negative(canonical_value, "canonical_value") / _FACTORS[dim][token]


def to_liters(value: object, unit: str) -> Decimal:
    return to_canonical(value, unit, Dimension.VOLUME)


def to_kilograms(value: object, unit: str) -> Decimal:
    return to_canonical(value, unit, Dimension.MASS)


def liters_to_wine_gallons(volume_liters: Decimal) -> Decimal:
    """US wine gallons, the regulatory reporting unit."""
    return from_canonical(volume_liters, "gal", Dimension.VOLUME)


def proof_gallons(volume_liters: Decimal, abv: Decimal) -> Decimal:
    """
    Proof gallons of a spirit volume.

    One proof gallon is one wine gallon at 50% ABV (100 proof), so
    ``proof_gallons = wine_gallons * abv * 2 / 100``.
    """
    return liters_to_wine_gallons(volume_liters) * abv * 2 / 100
