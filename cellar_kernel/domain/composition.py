"""
Composition -- Tagged source variants for composition entries.

Responsibility:
    One frozen dataclass per source kind, so a composition entry can only be
    built with the single reference its kind requires.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Exactly one reference per entry, non-empty, matching its kind.
    - batch_transfer sources are produced by transfer / merge only and are
      never removed through the composition ledger.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union
from uuid import UUID

from cellar_kernel.exceptions import CompositionSourceError


@dataclass(frozen=True)
class BaseFruitSource:
    press_run_id: str

    kind = "base_fruit"
    column = "press_run_id"

    @property
    def reference(self) -> str:
        return self.press_run_id


@dataclass(frozen=True)
class JuicePurchaseSource:
    juice_purchase_id: str

    kind = "juice_purchase"
    column = "juice_purchase_id"

    @property
    def reference(self) -> str:
        return self.juice_purchase_id


@dataclass(frozen=True)
class BrandySource:
    distillation_ref: str

    kind = "brandy"
    column = "distillation_ref"

    @property
    def reference(self) -> str:
        return self.distillation_ref


@dataclass(frozen=True)
class BatchTransferSource:
    source_batch_id: UUID

    kind = "batch_transfer"
    column = "source_batch_id"

    @property
    def reference(self) -> UUID:
        return self.source_batch_id


CompositionSource = Union[BaseFruitSource, JuicePurchaseSource, BrandySource, BatchTransferSource]

EXTERNAL_SOURCE_TYPES = (BaseFruitSource, JuicePurchaseSource, BrandySource)


def validate_source(source: object, *, allow_batch_transfer: bool = False) -> CompositionSource:
    """
    Raises:
        CompositionSourceError: not a known variant, empty reference, or a
            batch_transfer source where only external sources are allowed.
    """
    if isinstance(source, BatchTransferSource):
        if not allow_batch_transfer:
            raise CompositionSourceError(
                source.kind, "batch_transfer entries are created by transfer and merge only"
            )
        return source
    if not isinstance(source, EXTERNAL_SOURCE_TYPES):
        raise CompositionSourceError(type(source).__name__, "unknown composition source")
    reference = source.reference
    if not isinstance(reference, str) or not reference.strip():
        raise CompositionSourceError(source.kind, "reference must be a non-empty string")
    return source
