"""
cellar_services.reconciliation_engine -- Period reconciliation of the ledger.

Responsibility:
    Compares the ledger's calculated closing balance for a period with an
    independently observed physical count, records reasoned adjustments
    against the variance, and finalizes the period once the variance is
    explained.  Also computes the hard-cider excise tax owed on a
    snapshot's tax-paid removals.

Architecture position:
    Services -- orchestration over the kernel.  Gathers period totals from
    the operation journal, delegates the arithmetic to
    ``cellar_kernel.domain.reconciliation`` and persists snapshots and
    adjustments through the caller's session (flush only).

Invariants enforced:
    - calculated_closing = opening + production - tax_paid_removals
      - distilled_out - other_losses, all in the regulatory unit.
    - Opening balance carries forward from the physical count of the latest
      finalized snapshot, or the configured initial balance.
    - Periods are contiguous with the latest finalized period.
    - Re-running a period recomputes its draft in place; identical inputs
      and no new journal rows give an identical content hash.
    - A finalized snapshot is never modified; corrections are new drafts
      referencing it.

Failure modes:
    - ReconciliationPeriodError: inverted, overlapping or gapped period.
    - SnapshotNotFoundError: unknown snapshot id.
    - InvalidAdjustmentError: reason/sign mismatch.
    - SnapshotFinalizedError: adjusting or finalizing a finalized snapshot.
    - StaleSnapshotError: the journal changed since the run.
    - ReconciliationVarianceError: variance not closed within tolerance.

Audit relevance:
    reconciliation_run, adjustment_recorded and reconciliation_finalized
    audit events carry the snapshot's content hash, so the regulatory
    record of each period is tied to the exact ledger state it reflects.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select

from cellar_config.schema import ReconciliationSettings, TaxSettings
from cellar_kernel.db.types import round_volume
from cellar_kernel.domain.dtos import ReconciliationSnapshotInfo
from cellar_kernel.domain.operations import INBOUND_KINDS, OperationKind
from cellar_kernel.domain.reconciliation import (
    BalanceFigures,
    PeriodTotals,
    SnapshotStatus,
    TaxSummary,
    compute_balance,
    hard_cider_tax,
    is_balanced,
    unexplained_variance,
    validate_adjustment,
    validate_period,
)
from cellar_kernel.domain.units import (
    Dimension,
    from_canonical,
    liters_to_wine_gallons,
    normalize_unit,
    to_decimal,
    to_liters,
)
from cellar_kernel.exceptions import (
    InvalidQuantityError,
    ReconciliationPeriodError,
    ReconciliationVarianceError,
    SnapshotFinalizedError,
    SnapshotNotFoundError,
    StaleSnapshotError,
)
from cellar_kernel.logging_config import get_logger
from cellar_kernel.models.audit_event import AuditAction
from cellar_kernel.models.journal import OperationJournalEntry
from cellar_kernel.models.reconciliation import ReconciliationAdjustment, ReconciliationSnapshot
from cellar_kernel.services.auditor_service import AuditorService
from cellar_kernel.services.base import BaseService, as_uuid
from cellar_kernel.utils.hashing import hash_reconciliation_inputs

logger = get_logger("services.reconciliation")

ZERO = Decimal("0")


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _convert(value: Decimal, from_unit: str, to_unit: str) -> Decimal:
    if from_unit == to_unit:
        return value
    liters = to_liters(value, from_unit)
    return from_canonical(liters, to_unit, Dimension.VOLUME)


class ReconciliationEngine(BaseService):
    """
    Contract:
        Operates on the caller's session; flushes, never commits.
        Returns ORM snapshots; CellarLedger converts them to DTOs.
    """

    def __init__(
        self,
        session,
        clock,
        auditor: AuditorService,
        settings: ReconciliationSettings,
        tax: TaxSettings | None = None,
    ):
        super().__init__(session, clock)
        self.auditor = auditor
        self.settings = settings
        self.tax = tax

    # ------------------------------------------------------------------
    # Ledger totals
    # ------------------------------------------------------------------

    def period_totals(self, period_start: date, period_end: date, unit: str) -> PeriodTotals:
        """Journal movement with occurred_at inside the period, in ``unit``."""
        window = (
            OperationJournalEntry.occurred_at >= _day_start(period_start),
            OperationJournalEntry.occurred_at < _day_start(period_end + timedelta(days=1)),
        )
        moved = {
            OperationKind(kind): Decimal(str(total or 0))
            for kind, total in self.session.execute(
                select(OperationJournalEntry.kind, func.sum(OperationJournalEntry.volume_moved))
                .where(*window)
                .group_by(OperationJournalEntry.kind)
            ).all()
        }
        lost = Decimal(
            str(
                self.session.execute(
                    select(func.coalesce(func.sum(OperationJournalEntry.volume_lost), 0)).where(*window)
                ).scalar_one()
            )
        )
        production = sum((moved.get(k, ZERO) for k in INBOUND_KINDS), ZERO) - moved.get(
            OperationKind.COMPOSITION_REVERSAL, ZERO
        )

        def in_unit(liters: Decimal) -> Decimal:
            return round_volume(from_canonical(max(liters, ZERO), unit, Dimension.VOLUME))

        return PeriodTotals(
            production=in_unit(production),
            tax_paid_removals=in_unit(moved.get(OperationKind.PACKAGING_DRAW, ZERO)),
            distilled_out=in_unit(moved.get(OperationKind.DISTILLATION_OUT, ZERO)),
            other_losses=in_unit(lost),
        )

    def last_journal_seq(self, period_end: date) -> int | None:
        return self.session.execute(
            select(func.max(OperationJournalEntry.seq)).where(
                OperationJournalEntry.occurred_at < _day_start(period_end + timedelta(days=1))
            )
        ).scalar_one_or_none()

    def _compute(
        self,
        period_start: date,
        period_end: date,
        unit: str,
        opening: Decimal,
        physical_count: Decimal,
    ) -> tuple[BalanceFigures, int | None, str]:
        totals = self.period_totals(period_start, period_end, unit)
        figures = compute_balance(round_volume(opening), totals, round_volume(physical_count))
        last_seq = self.last_journal_seq(period_end)
        content_hash = hash_reconciliation_inputs(
            period_start, period_end, unit, figures.as_dict(), last_seq
        )
        return figures, last_seq, content_hash

    # ------------------------------------------------------------------
    # Snapshot lookup
    # ------------------------------------------------------------------

    def get_snapshot(self, snapshot_id: UUID | str, lock: bool = False) -> ReconciliationSnapshot:
        stmt = select(ReconciliationSnapshot).where(ReconciliationSnapshot.id == as_uuid(snapshot_id))
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        snapshot = self.session.execute(stmt).scalar_one_or_none()
        if snapshot is None:
            raise SnapshotNotFoundError(str(snapshot_id))
        return snapshot

    def adjustments(self, snapshot_id: UUID) -> list[ReconciliationAdjustment]:
        return list(
            self.session.execute(
                select(ReconciliationAdjustment)
                .where(ReconciliationAdjustment.snapshot_id == snapshot_id)
                .order_by(ReconciliationAdjustment.adjustment_date, ReconciliationAdjustment.created_at)
            ).scalars().all()
        )

    def latest_finalized(self) -> ReconciliationSnapshot | None:
        return self.session.execute(
            select(ReconciliationSnapshot)
            .where(ReconciliationSnapshot.status == SnapshotStatus.FINALIZED)
            .order_by(
                ReconciliationSnapshot.period_end.desc(),
                ReconciliationSnapshot.finalized_at.desc(),
            )
            .limit(1)
        ).scalar_one_or_none()

    def _open_draft(
        self, period_start: date, period_end: date, corrects_id: UUID | None
    ) -> ReconciliationSnapshot | None:
        stmt = select(ReconciliationSnapshot).where(
            ReconciliationSnapshot.period_start == period_start,
            ReconciliationSnapshot.period_end == period_end,
            ReconciliationSnapshot.status == SnapshotStatus.DRAFT,
        )
        if corrects_id is None:
            stmt = stmt.where(ReconciliationSnapshot.corrects_snapshot_id.is_(None))
        else:
            stmt = stmt.where(ReconciliationSnapshot.corrects_snapshot_id == corrects_id)
        return self.session.execute(stmt.with_for_update()).scalars().first()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def run_reconciliation(
        self,
        period_start: date,
        period_end: date,
        physical_count: Any,
        actor_id: UUID,
        unit: str | None = None,
    ) -> ReconciliationSnapshot:
        """
        Compute (or recompute) the draft snapshot for a period.

        Raises:
            ReconciliationPeriodError: the period is inverted or not
                contiguous with the latest finalized period.
        """
        token = normalize_unit(unit or self.settings.unit, Dimension.VOLUME)
        count = to_decimal(physical_count, "physical_count")
        if count < 0:
            raise InvalidQuantityError("physical_count", physical_count, "must not be negative")

        opening = self._carried_opening(period_start, period_end, token)
        return self._store(period_start, period_end, token, opening, count, actor_id, corrects=None)

    def _carried_opening(self, period_start: date, period_end: date, unit: str) -> Decimal:
        """Opening balance for a new period after checking it follows the latest finalized one."""
        previous = self.latest_finalized()
        validate_period(period_start, period_end, previous.period_end if previous else None)
        if previous is not None:
            return _convert(Decimal(previous.physical_count), previous.unit, unit)
        return _convert(self.settings.initial_opening_balance, self.settings.unit, unit)

    def open_correction(
        self,
        snapshot_id: UUID | str,
        physical_count: Any,
        actor_id: UUID,
    ) -> ReconciliationSnapshot:
        """
        New draft for the period of a finalized snapshot, referencing it.

        The correction keeps the original's opening balance and unit and
        recomputes the movement from the journal as it stands now.
        """
        original = self.get_snapshot(snapshot_id)
        if not original.is_finalized:
            raise ReconciliationPeriodError(
                original.period_start.isoformat(),
                original.period_end.isoformat(),
                "only a finalized snapshot can be corrected",
            )
        count = to_decimal(physical_count, "physical_count")
        if count < 0:
            raise InvalidQuantityError("physical_count", physical_count, "must not be negative")
        return self._store(
            original.period_start,
            original.period_end,
            original.unit,
            Decimal(original.opening_balance),
            count,
            actor_id,
            corrects=original,
        )

    def _store(
        self,
        period_start: date,
        period_end: date,
        unit: str,
        opening: Decimal,
        physical_count: Decimal,
        actor_id: UUID,
        corrects: ReconciliationSnapshot | None,
    ) -> ReconciliationSnapshot:
        figures, last_seq, content_hash = self._compute(
            period_start, period_end, unit, opening, physical_count
        )
        corrects_id = corrects.id if corrects is not None else None
        snapshot = self._open_draft(period_start, period_end, corrects_id)
        if snapshot is None:
            snapshot = ReconciliationSnapshot(
                period_start=period_start,
                period_end=period_end,
                status=SnapshotStatus.DRAFT,
                corrects_snapshot_id=corrects_id,
                created_by_id=actor_id,
            )
            self.session.add(snapshot)
        else:
            snapshot.updated_by_id = actor_id

        snapshot.unit = unit
        for name, value in figures.as_dict().items():
            setattr(snapshot, name, value)
        snapshot.content_hash = content_hash
        snapshot.last_journal_seq = last_seq
        self.session.flush()

        self.auditor.record(
            "ReconciliationSnapshot",
            snapshot.id,
            AuditAction.RECONCILIATION_RUN,
            actor_id,
            {
                "period_start": period_start,
                "period_end": period_end,
                "unit": unit,
                "content_hash": content_hash,
                "variance": figures.variance,
                "corrects_snapshot_id": corrects_id,
            },
        )
        logger.info(
            "reconciliation_run",
            extra={
                "snapshot_id": str(snapshot.id),
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
                "unit": unit,
                "calculated_closing": str(figures.calculated_closing),
                "physical_count": str(figures.physical_count),
                "variance": str(figures.variance),
                "content_hash": content_hash,
            },
        )
        if figures.variance != 0:
            logger.warning(
                "reconciliation_variance_detected",
                extra={"snapshot_id": str(snapshot.id), "variance": str(figures.variance)},
            )
        return snapshot

    def add_adjustment(
        self,
        snapshot_id: UUID | str,
        reason: str,
        amount: Any,
        actor_id: UUID,
        adjustment_date: date | None = None,
        note: str | None = None,
    ) -> ReconciliationAdjustment:
        """
        Record a reasoned adjustment against a draft snapshot.

        ``amount`` is in the snapshot's unit; losses are negative.
        """
        value = to_decimal(amount, "amount")
        code = validate_adjustment(reason, value)
        snapshot = self.get_snapshot(snapshot_id, lock=True)
        if snapshot.is_finalized:
            raise SnapshotFinalizedError(str(snapshot.id), "add an adjustment")

        adjustment = ReconciliationAdjustment(
            snapshot_id=snapshot.id,
            adjustment_date=adjustment_date or self.clock.now().date(),
            reason=code,
            amount=round_volume(value),
            note=note,
            created_by_id=actor_id,
        )
        self.session.add(adjustment)
        self.session.flush()

        self.auditor.record(
            "ReconciliationAdjustment",
            adjustment.id,
            AuditAction.ADJUSTMENT_RECORDED,
            actor_id,
            {
                "snapshot_id": snapshot.id,
                "reason": code.value,
                "amount": adjustment.amount,
                "unit": snapshot.unit,
            },
        )
        logger.info(
            "reconciliation_adjustment_recorded",
            extra={
                "snapshot_id": str(snapshot.id),
                "reason": code.value,
                "amount": str(adjustment.amount),
            },
        )
        return adjustment

    def finalize(self, snapshot_id: UUID | str, actor_id: UUID) -> ReconciliationSnapshot:
        """
        Lock a draft snapshot as the period's regulatory record.

        Raises:
            SnapshotFinalizedError: already finalized.
            ReconciliationPeriodError: the period no longer follows the
                latest finalized period.
            StaleSnapshotError: a journal row inside the period was recorded
                after the run, or the carried-forward opening balance changed.
            ReconciliationVarianceError: |variance - sum(adjustments)|
                exceeds the tolerance.
        """
        snapshot = self.get_snapshot(snapshot_id, lock=True)
        if snapshot.is_finalized:
            raise SnapshotFinalizedError(str(snapshot.id), "finalize again")

        opening = Decimal(snapshot.opening_balance)
        if snapshot.corrects_snapshot_id is None:
            # Another period may have been finalized since this draft was run.
            opening = round_volume(
                self._carried_opening(snapshot.period_start, snapshot.period_end, snapshot.unit)
            )
        _, _, current_hash = self._compute(
            snapshot.period_start,
            snapshot.period_end,
            snapshot.unit,
            opening,
            Decimal(snapshot.physical_count),
        )
        if current_hash != snapshot.content_hash:
            raise StaleSnapshotError(str(snapshot.id), snapshot.content_hash, current_hash)

        amounts = [Decimal(a.amount) for a in self.adjustments(snapshot.id)]
        variance = Decimal(snapshot.variance)
        tolerance = self.settings.tolerance
        if not is_balanced(variance, amounts, tolerance):
            raise ReconciliationVarianceError(
                str(snapshot.id), variance, sum(amounts, ZERO), tolerance
            )

        snapshot.status = SnapshotStatus.FINALIZED
        snapshot.finalized_at = self.clock.now()
        snapshot.finalized_by_id = actor_id
        snapshot.updated_by_id = actor_id
        self.session.flush()

        self.auditor.record(
            "ReconciliationSnapshot",
            snapshot.id,
            AuditAction.RECONCILIATION_FINALIZED,
            actor_id,
            {
                "content_hash": snapshot.content_hash,
                "variance": variance,
                "unexplained_variance": unexplained_variance(variance, amounts),
                "corrects_snapshot_id": snapshot.corrects_snapshot_id,
            },
        )
        logger.info(
            "reconciliation_finalized",
            extra={
                "snapshot_id": str(snapshot.id),
                "period_start": snapshot.period_start.isoformat(),
                "period_end": snapshot.period_end.isoformat(),
                "content_hash": snapshot.content_hash,
            },
        )
        return snapshot

    def describe(self, snapshot: ReconciliationSnapshot) -> ReconciliationSnapshotInfo:
        return ReconciliationSnapshotInfo.from_model(snapshot, self.adjustments(snapshot.id))

    # ------------------------------------------------------------------
    # Excise tax
    # ------------------------------------------------------------------

    def _superseded_ids(self) -> set[UUID]:
        rows = self.session.execute(
            select(ReconciliationSnapshot.corrects_snapshot_id).where(
                ReconciliationSnapshot.status == SnapshotStatus.FINALIZED,
                ReconciliationSnapshot.corrects_snapshot_id.is_not(None),
            )
        ).scalars().all()
        return set(rows)

    def _gallons(self, snapshot: ReconciliationSnapshot) -> Decimal:
        liters = to_liters(Decimal(snapshot.tax_paid_removals), snapshot.unit)
        return liters_to_wine_gallons(liters)

    def tax_summary(self, snapshot_id: UUID | str) -> TaxSummary:
        """
        Hard-cider excise tax on the snapshot's tax-paid removals.

        The small producer credit already consumed this calendar year is
        taken from earlier finalized snapshots that have not been corrected.
        """
        snapshot = self.get_snapshot(snapshot_id)
        tax = self.tax
        superseded = self._superseded_ids()
        year_start = date(snapshot.period_end.year, 1, 1)
        earlier = self.session.execute(
            select(ReconciliationSnapshot).where(
                ReconciliationSnapshot.status == SnapshotStatus.FINALIZED,
                ReconciliationSnapshot.period_end < snapshot.period_start,
                ReconciliationSnapshot.period_end >= year_start,
            )
        ).scalars().all()
        used = sum(
            (self._gallons(s) for s in earlier if s.id not in superseded and s.id != snapshot.id),
            ZERO,
        )
        taxable = self._gallons(snapshot)
        if tax is None:
            return hard_cider_tax(taxable, used)
        return hard_cider_tax(
            taxable,
            used,
            rate=tax.hard_cider_rate_per_gallon,
            credit_rate=tax.small_producer_credit_per_gallon,
            credit_limit=tax.small_producer_credit_limit_gallons,
        )
