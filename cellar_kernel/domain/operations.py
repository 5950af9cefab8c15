"""
Operations -- Journal entry kinds and their typed payloads.

Responsibility:
    Declares the single OperationKind enumeration and one frozen payload
    dataclass per caller-facing kind.  Parses loosely-typed payloads (e.g.
    a mapping from an RPC layer) into the right dataclass and checks the
    source-side conservation rule every journal row must satisfy.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    services/operation_journal.py dispatches on OperationKind through an
    exhaustive handler table; this module defines what it dispatches on.

Invariants enforced:
    - Each caller-facing kind has exactly one payload type.
    - Source conservation, within VOLUME_EPSILON:
          source_before - source_after
              == moved + lost - (moved if the destination is the source batch)
      so an in-place operation (racking, filtering, relocation) removes only
      its loss from the batch.

Failure modes:
    - InvalidOperationPayloadError when a payload does not match its kind:
      wrong dataclass, unknown field, missing required field.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping
from uuid import UUID

from cellar_kernel.db.types import VOLUME_EPSILON
from cellar_kernel.exceptions import InvalidOperationPayloadError


class OperationKind(str, Enum):
    INITIAL_FILL = "initial_fill"
    COMPOSITION_IN = "composition_in"
    COMPOSITION_REVERSAL = "composition_reversal"
    TRANSFER = "transfer"
    MERGE = "merge"
    RACKING = "racking"
    FILTERING = "filtering"
    CARBONATION = "carbonation"
    DISTILLATION_OUT = "distillation_out"
    DISTILLATION_IN = "distillation_in"
    PACKAGING_DRAW = "packaging_draw"
    RESIDUAL_WRITE_OFF = "residual_write_off"
    DISCARD = "discard"
    VOLUME_ADJUSTMENT = "volume_adjustment"


# Kinds whose moved volume enters the ledger from outside.  A negative
# volume adjustment moves nothing; its amount is recorded as volume_lost.
INBOUND_KINDS: frozenset[OperationKind] = frozenset(
    {
        OperationKind.INITIAL_FILL,
        OperationKind.COMPOSITION_IN,
        OperationKind.DISTILLATION_IN,
        OperationKind.VOLUME_ADJUSTMENT,
    }
)

# Kinds whose moved volume leaves the ledger for somewhere other than a batch.
OUTBOUND_KINDS: frozenset[OperationKind] = frozenset(
    {
        OperationKind.COMPOSITION_REVERSAL,
        OperationKind.DISTILLATION_OUT,
        OperationKind.PACKAGING_DRAW,
    }
)


class FilterGrade(str, Enum):
    COARSE = "coarse"
    FINE = "fine"
    STERILE = "sterile"


# =============================================================================
# Payloads
# =============================================================================


@dataclass(frozen=True)
class TransferPayload:
    """Move ``volume`` from a batch into a vessel (new, occupied or same batch)."""

    source_batch_id: UUID | str
    dest_vessel_id: UUID | str
    volume: Decimal
    unit: str = "L"
    volume_lost: Decimal = Decimal("0")
    dest_batch_id: UUID | str | None = None
    source_vessel_status: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class MergePayload:
    """Move the whole remaining volume of one batch into another."""

    source_batch_id: UUID | str
    target_batch_id: UUID | str
    volume_lost: Decimal = Decimal("0")
    unit: str = "L"
    source_vessel_status: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class RackingPayload:
    batch_id: UUID | str
    volume_lost: Decimal = Decimal("0")
    unit: str = "L"
    dest_vessel_id: UUID | str | None = None
    source_vessel_status: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class FilteringPayload:
    batch_id: UUID | str
    filter_grade: str
    volume_lost: Decimal = Decimal("0")
    unit: str = "L"
    dest_vessel_id: UUID | str | None = None
    source_vessel_status: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class CarbonationPayload:
    """
    Forced: ``vessel_id`` and ``pressure_psi`` required; final CO2 computed
    from pressure and temperature when not supplied.
    Natural: ``sugar_amount`` (mass, ``sugar_unit``) required; no vessel.
    """

    batch_id: UUID | str
    method: str
    vessel_id: UUID | str | None = None
    pressure_psi: Decimal | None = None
    temperature_c: Decimal | None = None
    target_co2_volumes: Decimal | None = None
    final_co2_volumes: Decimal | None = None
    sugar_amount: Decimal | None = None
    sugar_unit: str = "g"
    sugar_type: str = "sucrose"
    notes: str | None = None


@dataclass(frozen=True)
class DistillationOutPayload:
    batch_id: UUID | str
    volume: Decimal
    external_ref: str
    unit: str = "L"
    abv: Decimal | None = None
    source_vessel_status: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class DistillationInPayload:
    """
    Spirit returned from the distillery.  Lands in ``dest_batch_id`` or
    starts a new batch in ``dest_vessel_id`` (``product_kind`` required).
    """

    external_ref: str
    volume: Decimal
    abv: Decimal
    unit: str = "L"
    dest_batch_id: UUID | str | None = None
    dest_vessel_id: UUID | str | None = None
    product_kind: str | None = None
    batch_code: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class DiscardPayload:
    batch_id: UUID | str
    reason: str
    source_vessel_status: str | None = None


@dataclass(frozen=True)
class VolumeAdjustmentPayload:
    """
    Correct a batch volume to what is physically in the vessel.

    ``amount`` is signed: positive adds volume (capacity checked), negative
    writes it off as a loss.  ``reason`` is an AdjustmentReason value whose
    sign rule the amount must satisfy.
    """

    batch_id: UUID | str
    amount: Decimal
    reason: str
    unit: str = "L"
    source_vessel_status: str | None = None
    notes: str | None = None


PAYLOAD_TYPES: Mapping[OperationKind, type] = MappingProxyType(
    {
        OperationKind.TRANSFER: TransferPayload,
        OperationKind.MERGE: MergePayload,
        OperationKind.RACKING: RackingPayload,
        OperationKind.FILTERING: FilteringPayload,
        OperationKind.CARBONATION: CarbonationPayload,
        OperationKind.DISTILLATION_OUT: DistillationOutPayload,
        OperationKind.DISTILLATION_IN: DistillationInPayload,
        OperationKind.DISCARD: DiscardPayload,
        OperationKind.VOLUME_ADJUSTMENT: VolumeAdjustmentPayload,
    }
)

# Kinds callers submit through record_operation.  The others are written by
# batch creation, the composition ledger, packaging and drain handling.
CALLER_KINDS: frozenset[OperationKind] = frozenset(PAYLOAD_TYPES)


def coerce_kind(kind: OperationKind | str) -> OperationKind:
    try:
        return OperationKind(kind)
    except ValueError:
        raise InvalidOperationPayloadError(str(kind), "unknown operation kind") from None


def parse_payload(kind: OperationKind | str, payload: Any) -> Any:
    """
    Return ``payload`` as the dataclass registered for ``kind``.

    Accepts an instance of the right dataclass or a mapping of its fields.
    """
    op_kind = coerce_kind(kind)
    payload_type = PAYLOAD_TYPES.get(op_kind)
    if payload_type is None:
        raise InvalidOperationPayloadError(
            op_kind.value, "kind is recorded internally and cannot be submitted"
        )
    if isinstance(payload, payload_type):
        return payload
    if dataclasses.is_dataclass(payload):
        raise InvalidOperationPayloadError(
            op_kind.value,
            f"expected {payload_type.__name__}, got {type(payload).__name__}",
        )
    if not isinstance(payload, Mapping):
        raise InvalidOperationPayloadError(op_kind.value, "payload must be a mapping")

    known = {f.name for f in dataclasses.fields(payload_type)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise InvalidOperationPayloadError(op_kind.value, f"unknown fields {unknown}")
    try:
        return payload_type(**payload)
    except TypeError as exc:
        raise InvalidOperationPayloadError(op_kind.value, str(exc)) from None


def source_conserves(
    source_before: Decimal,
    source_after: Decimal,
    volume_moved: Decimal,
    volume_lost: Decimal,
    in_place: bool,
    epsilon: Decimal = VOLUME_EPSILON,
) -> bool:
    """Check the source-side conservation rule of a journal row."""
    expected = volume_moved + volume_lost - (volume_moved if in_place else Decimal("0"))
    return abs((source_before - source_after) - expected) <= epsilon
