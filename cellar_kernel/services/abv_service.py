"""
AbvService -- synchronous ABV recalculation for a batch.

Responsibility:
    Gathers a batch's live composition and gravity readings, applies the
    precedence rules in domain/abv.py and stores the result on the batch.

Architecture position:
    Kernel > Services.  Called in the same transaction as the change that
    made the ABV stale: composition insert / delete, transfer or merge into
    a batch, distillation inbound, gravity readings.  Never called by reads.

Invariants enforced:
    - A lab measurement (actual_abv_source == "lab") is never overwritten.
    - A gravity-derived actual ABV is cleared when the gravity rule stops
      applying, so a stale value never survives a blend change.
"""

from sqlalchemy import select

from cellar_kernel.domain.abv import AbvInputs, AbvResult, BlendComponent, resolve_abv
from cellar_kernel.domain.policy import LedgerPolicy
from cellar_kernel.logging_config import get_logger
from cellar_kernel.models.batch import Batch
from cellar_kernel.models.composition import CompositionEntry
from cellar_kernel.services.base import BaseService

logger = get_logger("services.abv")

LAB_SOURCE = "lab"
GRAVITY_SOURCE = "gravity"


class AbvService(BaseService):
    def __init__(self, session, clock=None, policy: LedgerPolicy | None = None):
        super().__init__(session, clock)
        self.policy = policy or LedgerPolicy()

    def recalculate(self, batch: Batch) -> AbvResult:
        self.session.flush()
        entries = self.session.execute(
            select(CompositionEntry).where(
                CompositionEntry.batch_id == batch.id,
                CompositionEntry.deleted_at.is_(None),
            )
        ).scalars().all()

        inputs = AbvInputs(
            components=tuple(BlendComponent(e.volume_liters, e.abv) for e in entries),
            source_kinds=frozenset(e.source_kind.value for e in entries),
            product_kind=batch.product_kind.value,
            original_gravity=batch.original_gravity,
            final_gravity=batch.final_gravity,
            blend_product_kinds=self.policy.blend_product_kinds,
            fortifying_source_kinds=self.policy.fortifying_source_kinds,
            gravity_factor=self.policy.abv_gravity_factor,
        )
        result = resolve_abv(inputs)

        batch.estimated_abv = result.estimated_abv
        if batch.actual_abv_source != LAB_SOURCE:
            batch.actual_abv = result.actual_abv
            batch.actual_abv_source = GRAVITY_SOURCE if result.actual_abv is not None else None

        logger.info(
            "abv_recalculated",
            extra={
                "batch_id": str(batch.id),
                "rule": result.rule.value,
                "estimated_abv": result.estimated_abv,
                "actual_abv": batch.actual_abv,
            },
        )
        return result
