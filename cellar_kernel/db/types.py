"""
Module: cellar_kernel.db.types
Responsibility: Annotated type aliases and rounding helpers for volume, ABV
    and gravity columns.  Centralizes precision so that every model and
    service uses identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats anywhere in the ledger.  Volumes, ABV and gravities are
      Decimal with explicit precision.
    - VOLUME_EPSILON (0.01 L) is the tolerance for every conservation check.
    - round_volume() / round_abv() are the sanctioned rounding functions.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated

from sqlalchemy import BigInteger, Numeric, String
from sqlalchemy import Enum as SAEnum

# Canonical liters / kilograms
Volume = Annotated[Decimal, Numeric(38, 9)]

# Percent alcohol by volume, 0-100
Abv = Annotated[Decimal, Numeric(9, 4)]

# Specific gravity, e.g. 1.0500
Gravity = Annotated[Decimal, Numeric(9, 4)]

# Monotonic sequence number for ordering
Sequence = Annotated[int, BigInteger]

# SHA-256 hash as hex string (64 characters)
PayloadHash = Annotated[str, String(64)]

ShortCode = Annotated[str, String(50)]

LongText = Annotated[str, String(4000)]


VOLUME_DECIMAL_PLACES = 6
ABV_DECIMAL_PLACES = 4
DEFAULT_ROUNDING = ROUND_HALF_UP

VOLUME_EPSILON = Decimal("0.01")
DRAIN_THRESHOLD = Decimal("0.1")


def _quantize(value: Decimal, places: int, rounding: str) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-places), rounding=rounding)


def round_volume(
    value: Decimal,
    decimal_places: int = VOLUME_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """Round a canonical volume for storage and comparison."""
    return _quantize(value, decimal_places, rounding)


def round_abv(
    value: Decimal,
    decimal_places: int = ABV_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    return _quantize(value, decimal_places, rounding)


def volumes_equal(a: Decimal, b: Decimal, epsilon: Decimal = VOLUME_EPSILON) -> bool:
    """True when two volumes agree within the conservation tolerance."""
    return abs(a - b) <= epsilon


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


def enum_column(enum_cls, length: int = 30) -> SAEnum:
    """
    String-backed enum column storing member values ("aging", not "AGING").

    Loaded rows come back as enum members; no database-native enum type is
    created, so the same schema works on PostgreSQL and SQLite.
    """
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=_enum_values,
        validate_strings=True,
    )
