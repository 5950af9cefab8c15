"""
Lifecycle -- Batch and vessel state machines.

Responsibility:
    Declares batch / vessel / product enumerations and the legal batch status
    transitions.  Pure functions only; the services apply the outcome.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - fermentation -> {aging, conditioning, completed, discarded}
    - aging <-> conditioning
    - aging | conditioning -> {completed, discarded}
    - completed and discarded are terminal.
    - Only fermentation, aging and conditioning batches are active and may
      hold a vessel or take part in an operation.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Mapping

from cellar_kernel.exceptions import IllegalStatusTransitionError, VesselUnavailableError


class BatchStatus(str, Enum):
    FERMENTATION = "fermentation"
    AGING = "aging"
    CONDITIONING = "conditioning"
    COMPLETED = "completed"
    DISCARDED = "discarded"


class VesselStatus(str, Enum):
    AVAILABLE = "available"
    IN_USE = "in_use"
    CLEANING = "cleaning"
    MAINTENANCE = "maintenance"


class ProductKind(str, Enum):
    CIDER = "cider"
    PERRY = "perry"
    BRANDY = "brandy"
    POMMEAU = "pommeau"
    JUICE = "juice"
    OTHER = "other"


ACTIVE_STATUSES: frozenset[BatchStatus] = frozenset(
    {BatchStatus.FERMENTATION, BatchStatus.AGING, BatchStatus.CONDITIONING}
)

TERMINAL_STATUSES: frozenset[BatchStatus] = frozenset(
    {BatchStatus.COMPLETED, BatchStatus.DISCARDED}
)

# Statuses an operator may route a vessel to when it is released.
RELEASE_STATUSES: frozenset[VesselStatus] = frozenset(
    {VesselStatus.AVAILABLE, VesselStatus.CLEANING, VesselStatus.MAINTENANCE}
)

_TRANSITIONS: Mapping[BatchStatus, frozenset[BatchStatus]] = MappingProxyType(
    {
        BatchStatus.FERMENTATION: frozenset(
            {
                BatchStatus.AGING,
                BatchStatus.CONDITIONING,
                BatchStatus.COMPLETED,
                BatchStatus.DISCARDED,
            }
        ),
        BatchStatus.AGING: frozenset(
            {BatchStatus.CONDITIONING, BatchStatus.COMPLETED, BatchStatus.DISCARDED}
        ),
        BatchStatus.CONDITIONING: frozenset(
            {BatchStatus.AGING, BatchStatus.COMPLETED, BatchStatus.DISCARDED}
        ),
        BatchStatus.COMPLETED: frozenset(),
        BatchStatus.DISCARDED: frozenset(),
    }
)


def is_active(status: BatchStatus | str) -> bool:
    return BatchStatus(status) in ACTIVE_STATUSES


def allowed_transitions(status: BatchStatus | str) -> frozenset[BatchStatus]:
    return _TRANSITIONS[BatchStatus(status)]


def validate_transition(
    batch_id: str,
    from_status: BatchStatus | str,
    to_status: BatchStatus | str,
) -> BatchStatus:
    """
    Return the target status if the move is legal.

    Raises:
        IllegalStatusTransitionError: the move is not in the table, including
            any move out of a terminal status and a move to the same status.
    """
    current = BatchStatus(from_status)
    try:
        target = BatchStatus(to_status)
    except ValueError:
        raise IllegalStatusTransitionError(batch_id, current.value, str(to_status)) from None
    if target not in _TRANSITIONS[current]:
        raise IllegalStatusTransitionError(batch_id, current.value, target.value)
    return target


def validate_release_status(vessel_id: str, status: VesselStatus | str) -> VesselStatus:
    """A released vessel may go to available, cleaning or maintenance only."""
    try:
        target = VesselStatus(status)
    except ValueError:
        raise VesselUnavailableError(vessel_id, str(status), "unknown vessel status") from None
    if target not in RELEASE_STATUSES:
        raise VesselUnavailableError(
            vessel_id, target.value, "a released vessel cannot be marked in_use"
        )
    return target
