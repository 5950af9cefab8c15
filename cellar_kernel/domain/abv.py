"""
ABV -- Blending calculator and precedence rules.

Responsibility:
    Pure computation of a batch's estimated and actual alcohol by volume from
    its composition entries and recorded gravities.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Invoked by
    services/abv_service.py inside the same transaction as the write that
    changed the batch's inputs.

Precedence (first matching rule wins):
    1. GRAVITY  -- OG and FG recorded, no fortifying source and the product
       is not a blend kind:
           actual    = (OG - FG) * factor
           estimated = (OG - 1.000) * factor
    2. BLEND    -- a fortifying source (brandy) is present or the product is
       a blend kind (pommeau): estimated = volume-weighted blend.  A
       pre-fermentation gravity estimate never overrides the blend.
    3. ORIGINAL -- estimated = (OG - 1.000) * factor when OG is recorded,
       otherwise the volume-weighted blend.

Invariants enforced:
    - blend = sum(v_i * abv_i) / sum(v_i) over non-deleted components.
    - Zero total volume yields None, never a division error.
    - All arithmetic is Decimal; results are rounded with round_abv().
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Iterable

from cellar_kernel.db.types import round_abv
from cellar_kernel.exceptions import InvalidAbvError, InvalidGravityError

DEFAULT_GRAVITY_FACTOR = Decimal("131.25")
WATER_GRAVITY = Decimal("1.000")

OG_MIN = Decimal("1.000")
OG_MAX = Decimal("1.200")
FG_MIN = Decimal("0.980")
FG_MAX = Decimal("1.300")

ABV_MIN = Decimal("0")
ABV_MAX = Decimal("100")


class AbvRule(str, Enum):
    GRAVITY = "gravity"
    BLEND = "blend"
    ORIGINAL = "original_gravity"
    NONE = "none"


@dataclass(frozen=True)
class BlendComponent:
    volume_liters: Decimal
    abv: Decimal


@dataclass(frozen=True)
class AbvInputs:
    """Everything the precedence rules look at, captured as plain values."""

    components: tuple[BlendComponent, ...]
    source_kinds: frozenset[str]
    product_kind: str
    original_gravity: Decimal | None = None
    final_gravity: Decimal | None = None
    blend_product_kinds: frozenset[str] = frozenset({"pommeau"})
    fortifying_source_kinds: frozenset[str] = frozenset({"brandy"})
    gravity_factor: Decimal = DEFAULT_GRAVITY_FACTOR


@dataclass(frozen=True)
class AbvResult:
    estimated_abv: Decimal | None
    actual_abv: Decimal | None
    rule: AbvRule


def validate_abv(abv: object) -> Decimal:
    """Return ``abv`` as a Decimal in [0, 100] or raise InvalidAbvError."""
    if isinstance(abv, bool):
        raise InvalidAbvError(abv)
    if isinstance(abv, Decimal):
        value = abv
    elif isinstance(abv, (int, float, str)):
        try:
            value = Decimal(str(abv))
        except ArithmeticError:
            raise InvalidAbvError(abv) from None
    else:
        raise InvalidAbvError(abv)
    if not value.is_finite() or value < ABV_MIN or value > ABV_MAX:
        raise InvalidAbvError(abv)
    return value


def validate_gravities(
    original_gravity: Decimal | None,
    final_gravity: Decimal | None,
) -> None:
    """
    Check gravities against plausible hydrometer ranges.

    OG must fall in [1.000, 1.200], FG in [0.980, 1.300], and when both are
    present FG cannot exceed OG.
    """
    if original_gravity is not None and not OG_MIN <= original_gravity <= OG_MAX:
        raise InvalidGravityError("original_gravity", original_gravity, OG_MIN, OG_MAX)
    if final_gravity is not None and not FG_MIN <= final_gravity <= FG_MAX:
        raise InvalidGravityError("final_gravity", final_gravity, FG_MIN, FG_MAX)
    if (
        original_gravity is not None
        and final_gravity is not None
        and final_gravity > original_gravity
    ):
        raise InvalidGravityError("final_gravity", final_gravity, FG_MIN, original_gravity)


def blend_abv(components: Iterable[BlendComponent]) -> Decimal | None:
    """Volume-weighted ABV; None when the total volume is zero."""
    total_volume = Decimal("0")
    weighted = Decimal("0")
    for component in components:
        total_volume += component.volume_liters
        weighted += component.volume_liters * component.abv
    if total_volume <= 0:
        return None
    return round_abv(weighted / total_volume)


def potential_abv(
    original_gravity: Decimal, factor: Decimal = DEFAULT_GRAVITY_FACTOR
) -> Decimal:
    return round_abv((original_gravity - WATER_GRAVITY) * factor)


def gravity_abv(
    original_gravity: Decimal,
    final_gravity: Decimal,
    factor: Decimal = DEFAULT_GRAVITY_FACTOR,
) -> Decimal:
    return round_abv((original_gravity - final_gravity) * factor)


def resolve_abv(inputs: AbvInputs) -> AbvResult:
    """Apply the precedence rules to ``inputs``."""
    fortified = bool(inputs.source_kinds & inputs.fortifying_source_kinds)
    blend_product = inputs.product_kind in inputs.blend_product_kinds
    og = inputs.original_gravity
    fg = inputs.final_gravity

    if og is not None and fg is not None and not fortified and not blend_product:
        return AbvResult(
            estimated_abv=potential_abv(og, inputs.gravity_factor),
            actual_abv=gravity_abv(og, fg, inputs.gravity_factor),
            rule=AbvRule.GRAVITY,
        )

    blended = blend_abv(inputs.components)

    if fortified or blend_product:
        return AbvResult(
            estimated_abv=blended,
            actual_abv=None,
            rule=AbvRule.BLEND if blended is not None else AbvRule.NONE,
        )

    if og is not None:
        return AbvResult(
            estimated_abv=potential_abv(og, inputs.gravity_factor),
            actual_abv=None,
            rule=AbvRule.ORIGINAL,
        )

    return AbvResult(
        estimated_abv=blended,
        actual_abv=None,
        rule=AbvRule.BLEND if blended is not None else AbvRule.NONE,
    )


def effective_abv(actual_abv: Decimal | None, estimated_abv: Decimal | None) -> Decimal | None:
    """The ABV exposed to callers: actual when measured, else estimated."""
    return actual_abv if actual_abv is not None else estimated_abv
