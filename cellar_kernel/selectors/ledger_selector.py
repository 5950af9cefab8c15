"""
Module: cellar_kernel.selectors.ledger_selector
Responsibility: Ledger-wide conservation check over the whole journal.
Architecture position: Kernel > Selectors.

Invariants enforced:
    Sum(inbound) - Sum(reversed out) - Sum(distilled out) - Sum(packaged)
        - Sum(losses) == Sum(current batch volumes), within the epsilon.
    Volume adjustments count as inbound when positive and as losses when
    negative.
    Transfers, merges and in-place operations move volume between batches
    and cancel out of the totals; only their losses count.
"""

from decimal import Decimal

from sqlalchemy import func, select

from cellar_kernel.db.types import VOLUME_EPSILON, volumes_equal
from cellar_kernel.domain.dtos import ConservationReport
from cellar_kernel.domain.operations import INBOUND_KINDS, OUTBOUND_KINDS, OperationKind
from cellar_kernel.models.batch import Batch
from cellar_kernel.models.journal import OperationJournalEntry
from cellar_kernel.selectors.base import BaseSelector

ZERO = Decimal("0")


class LedgerSelector(BaseSelector):
    def moved_by_kind(self) -> dict[OperationKind, Decimal]:
        rows = self.session.execute(
            select(OperationJournalEntry.kind, func.sum(OperationJournalEntry.volume_moved))
            .group_by(OperationJournalEntry.kind)
        ).all()
        return {OperationKind(kind): Decimal(str(total or 0)) for kind, total in rows}

    def total_lost(self) -> Decimal:
        total = self.session.execute(
            select(func.coalesce(func.sum(OperationJournalEntry.volume_lost), 0))
        ).scalar_one()
        return Decimal(str(total))

    def total_on_hand(self) -> Decimal:
        total = self.session.execute(
            select(func.coalesce(func.sum(Batch.current_volume_liters), 0))
        ).scalar_one()
        return Decimal(str(total))

    def conservation_report(self, epsilon: Decimal = VOLUME_EPSILON) -> ConservationReport:
        moved = self.moved_by_kind()
        inbound = sum((moved.get(k, ZERO) for k in INBOUND_KINDS), ZERO)
        reversed_out = moved.get(OperationKind.COMPOSITION_REVERSAL, ZERO)
        distilled = moved.get(OperationKind.DISTILLATION_OUT, ZERO)
        packaged = moved.get(OperationKind.PACKAGING_DRAW, ZERO)
        outbound = sum((moved.get(k, ZERO) for k in OUTBOUND_KINDS), ZERO)
        losses = self.total_lost()
        expected = inbound - outbound - losses
        actual = self.total_on_hand()
        return ConservationReport(
            inbound=inbound,
            reversed_out=reversed_out,
            distilled_out=distilled,
            packaged=packaged,
            losses=losses,
            expected_on_hand=expected,
            actual_on_hand=actual,
            difference=actual - expected,
            balanced=volumes_equal(expected, actual, epsilon),
        )
