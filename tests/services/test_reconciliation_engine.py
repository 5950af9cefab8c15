"""
Tests for ReconciliationEngine -- period balances, adjustments, finalization
and excise tax.

Covers:
- run_reconciliation(): period totals from the journal, opening balance
  carry-forward, idempotent reruns, period contiguity
- add_adjustment(): sign rules, finalized snapshots reject adjustments
- finalize(): variance tolerance, stale snapshot detection, finalized
  snapshots are frozen
- open_correction(): correction drafts for finalized periods
- tax_summary(): wine gallons and the small producer credit
"""

from datetime import date
from decimal import Decimal

import pytest

from cellar_kernel.domain.units import LITERS_PER_GALLON
from cellar_kernel.exceptions import (
    AuditIntegrityError,
    InvalidAdjustmentError,
    ReconciliationPeriodError,
    ReconciliationVarianceError,
    SnapshotFinalizedError,
    StaleSnapshotError,
)
from cellar_kernel.models.audit_event import AuditAction

MARCH = (date(2026, 3, 1), date(2026, 3, 31))
APRIL = (date(2026, 4, 1), date(2026, 4, 30))


@pytest.fixture
def engine_(orchestrator):
    return orchestrator.reconciliation


@pytest.fixture
def march_activity(orchestrator, create_batch, test_actor_id):
    """120 L produced, 50 L drawn into 65 x 0.75 L: closing balance 70 L."""
    batch, vessel = create_batch(volume="120")
    orchestrator.packaging.draw(
        batch.id, vessel.id, Decimal("50"), Decimal("0.75"), 65, test_actor_id
    )
    return batch, vessel


class TestRunReconciliation:
    def test_period_totals(self, engine_, march_activity, test_actor_id):
        snapshot = engine_.run_reconciliation(*MARCH, Decimal("70"), test_actor_id, unit="L")

        assert snapshot.opening_balance == Decimal("0")
        assert snapshot.production_volume == Decimal("120")
        assert snapshot.tax_paid_removals == Decimal("48.75")
        assert snapshot.other_losses == Decimal("1.25")
        assert snapshot.distilled_out == Decimal("0")
        assert snapshot.calculated_closing == Decimal("70")
        assert snapshot.variance == Decimal("0")
        assert snapshot.status.value == "draft"

    def test_volume_adjustments_route_to_production_and_losses(
        self, orchestrator, engine_, create_batch, test_actor_id
    ):
        batch, _ = create_batch(volume="120")
        for amount, reason in (("5", "correction_up"), ("-3", "evaporation")):
            orchestrator.operations.record_operation(
                "volume_adjustment",
                {"batch_id": batch.id, "amount": amount, "reason": reason},
                test_actor_id,
            )

        snapshot = engine_.run_reconciliation(*MARCH, Decimal("122"), test_actor_id, unit="L")

        assert snapshot.production_volume == Decimal("125")
        assert snapshot.other_losses == Decimal("3")
        assert snapshot.calculated_closing == Decimal("122")
        assert snapshot.variance == Decimal("0")

    def test_default_unit_is_wine_gallons(self, engine_, march_activity, test_actor_id):
        snapshot = engine_.run_reconciliation(*MARCH, Decimal("18.49"), test_actor_id)
        assert snapshot.unit == "gal"
        assert abs(snapshot.production_volume - Decimal("120") / LITERS_PER_GALLON) < Decimal("0.000001")

    def test_activity_outside_period_excluded(self, engine_, march_activity, test_actor_id):
        snapshot = engine_.run_reconciliation(*APRIL, Decimal("0"), test_actor_id, unit="L")
        assert snapshot.production_volume == Decimal("0")
        assert snapshot.tax_paid_removals == Decimal("0")

    def test_rerun_is_idempotent(self, engine_, march_activity, test_actor_id):
        first = engine_.run_reconciliation(*MARCH, Decimal("70"), test_actor_id, unit="L")
        first_hash = first.content_hash
        second = engine_.run_reconciliation(*MARCH, Decimal("70"), test_actor_id, unit="L")
        assert second.id == first.id
        assert second.content_hash == first_hash

    def test_rerun_with_new_count_changes_hash(self, engine_, march_activity, test_actor_id):
        first_hash = engine_.run_reconciliation(*MARCH, Decimal("70"), test_actor_id, unit="L").content_hash
        second = engine_.run_reconciliation(*MARCH, Decimal("69"), test_actor_id, unit="L")
        assert second.content_hash != first_hash
        assert second.variance == Decimal("-1")

    def test_inverted_period(self, engine_, test_actor_id):
        with pytest.raises(ReconciliationPeriodError):
            engine_.run_reconciliation(date(2026, 3, 31), date(2026, 3, 1), Decimal("0"), test_actor_id)

    def test_run_is_audited(self, orchestrator, engine_, march_activity, test_actor_id):
        snapshot = engine_.run_reconciliation(*MARCH, Decimal("70"), test_actor_id, unit="L")
        trace = orchestrator.auditor.get_trace("ReconciliationSnapshot", snapshot.id)
        assert trace.actions == (AuditAction.RECONCILIATION_RUN,)


class TestFinalize:
    def test_balanced_snapshot_finalizes(self, orchestrator, engine_, march_activity, test_actor_id):
        snapshot = engine_.run_reconciliation(*MARCH, Decimal("70"), test_actor_id, unit="L")
        engine_.finalize(snapshot.id, test_actor_id)

        info = engine_.describe(snapshot)
        assert info.is_finalized
        trace = orchestrator.auditor.get_trace("ReconciliationSnapshot", snapshot.id)
        assert trace.actions[-1] == AuditAction.RECONCILIATION_FINALIZED

    def test_unexplained_variance_blocks_finalize(self, engine_, march_activity, test_actor_id):
        snapshot = engine_.run_reconciliation(*MARCH, Decimal("68"), test_actor_id, unit="L")
        with pytest.raises(ReconciliationVarianceError):
            engine_.finalize(snapshot.id, test_actor_id)

    def test_adjustment_explains_variance(self, engine_, march_activity, test_actor_id):
        snapshot = engine_.run_reconciliation(*MARCH, Decimal("68"), test_actor_id, unit="L")
        engine_.add_adjustment(snapshot.id, "evaporation", Decimal("-1.5"), test_actor_id)
        engine_.add_adjustment(snapshot.id, "sampling", Decimal("-0.5"), test_actor_id, note="lab samples")

        info = engine_.describe(snapshot)
        assert info.unexplained_variance == Decimal("0")
        assert len(info.adjustments) == 2

        engine_.finalize(snapshot.id, test_actor_id)
        assert snapshot.is_finalized

    def test_variance_within_tolerance(self, engine_, march_activity, test_actor_id):
        snapshot = engine_.run_reconciliation(*MARCH, Decimal("70.005"), test_actor_id, unit="L")
        engine_.finalize(snapshot.id, test_actor_id)
        assert snapshot.is_finalized

    def test_adjustment_sign_checked(self, engine_, march_activity, test_actor_id):
        snapshot = engine_.run_reconciliation(*MARCH, Decimal("68"), test_actor_id, unit="L")
        with pytest.raises(InvalidAdjustmentError):
            engine_.add_adjustment(snapshot.id, "theft", Decimal("2"), test_actor_id)

    def test_late_journal_row_makes_snapshot_stale(
        self, orchestrator, engine_, march_activity, test_actor_id
    ):
        batch, vessel = march_activity
        snapshot = engine_.run_reconciliation(*MARCH, Decimal("70"), test_actor_id, unit="L")

        orchestrator.operations.record_operation(
            "racking", {"batch_id": batch.id, "volume_lost": "1"}, test_actor_id
        )

        with pytest.raises(StaleSnapshotError):
            engine_.finalize(snapshot.id, test_actor_id)

    def test_finalize_twice(self, engine_, march_activity, test_actor_id):
        snapshot = engine_.run_reconciliation(*MARCH, Decimal("70"), test_actor_id, unit="L")
        engine_.finalize(snapshot.id, test_actor_id)
        with pytest.raises(AuditIntegrityError):
            engine_.finalize(snapshot.id, test_actor_id)

    def test_finalized_snapshot_rejects_adjustments(self, engine_, march_activity, test_actor_id):
        snapshot = engine_.run_reconciliation(*MARCH, Decimal("70"), test_actor_id, unit="L")
        engine_.finalize(snapshot.id, test_actor_id)
        with pytest.raises(SnapshotFinalizedError):
            engine_.add_adjustment(snapshot.id, "evaporation", Decimal("-1"), test_actor_id)


class TestPeriodSequence:
    def test_next_period_opens_with_previous_count(
        self, orchestrator, engine_, march_activity, deterministic_clock, test_actor_id
    ):
        march = engine_.run_reconciliation(*MARCH, Decimal("70"), test_actor_id, unit="L")
        engine_.finalize(march.id, test_actor_id)

        april = engine_.run_reconciliation(*APRIL, Decimal("70"), test_actor_id, unit="L")
        assert april.opening_balance == Decimal("70")
        assert april.calculated_closing == Decimal("70")

    def test_opening_converted_between_units(self, engine_, march_activity, test_actor_id):
        march = engine_.run_reconciliation(*MARCH, Decimal("70"), test_actor_id, unit="L")
        engine_.finalize(march.id, test_actor_id)

        april = engine_.run_reconciliation(*APRIL, Decimal("0"), test_actor_id, unit="gal")
        assert abs(april.opening_balance - Decimal("70") / LITERS_PER_GALLON) < Decimal("0.000001")

    def test_gap_rejected(self, engine_, march_activity, test_actor_id):
        march = engine_.run_reconciliation(*MARCH, Decimal("70"), test_actor_id, unit="L")
        engine_.finalize(march.id, test_actor_id)
        with pytest.raises(ReconciliationPeriodError):
            engine_.run_reconciliation(date(2026, 4, 2), date(2026, 4, 30), Decimal("70"), test_actor_id)

    def test_rerun_of_finalized_period_rejected(self, engine_, march_activity, test_actor_id):
        march = engine_.run_reconciliation(*MARCH, Decimal("70"), test_actor_id, unit="L")
        engine_.finalize(march.id, test_actor_id)
        with pytest.raises(ReconciliationPeriodError):
            engine_.run_reconciliation(*MARCH, Decimal("70"), test_actor_id, unit="L")

    def test_draft_run_before_previous_finalize_is_stale(self, engine_, create_batch, test_actor_id):
        create_batch(volume="120")
        march = engine_.run_reconciliation(*MARCH, Decimal("120"), test_actor_id, unit="L")
        april = engine_.run_reconciliation(*APRIL, Decimal("120"), test_actor_id, unit="L")
        assert april.opening_balance == Decimal("0")

        engine_.finalize(march.id, test_actor_id)

        with pytest.raises(StaleSnapshotError):
            engine_.finalize(april.id, test_actor_id)
        assert not april.is_finalized

        rerun = engine_.run_reconciliation(*APRIL, Decimal("120"), test_actor_id, unit="L")
        assert rerun.id == april.id
        assert rerun.opening_balance == Decimal("120")
        assert engine_.finalize(rerun.id, test_actor_id).is_finalized

    def test_overlapping_drafts_cannot_both_finalize(self, engine_, create_batch, test_actor_id):
        create_batch(volume="120")
        march = engine_.run_reconciliation(*MARCH, Decimal("120"), test_actor_id, unit="L")
        spring = engine_.run_reconciliation(
            date(2026, 3, 1), date(2026, 4, 30), Decimal("120"), test_actor_id, unit="L"
        )

        engine_.finalize(march.id, test_actor_id)

        with pytest.raises(ReconciliationPeriodError):
            engine_.finalize(spring.id, test_actor_id)
        assert not spring.is_finalized


class TestCorrections:
    def test_correction_references_original(self, engine_, march_activity, test_actor_id):
        march = engine_.run_reconciliation(*MARCH, Decimal("70"), test_actor_id, unit="L")
        engine_.finalize(march.id, test_actor_id)

        correction = engine_.open_correction(march.id, Decimal("69"), test_actor_id)

        assert correction.id != march.id
        assert correction.corrects_snapshot_id == march.id
        assert correction.unit == "L"
        assert correction.variance == Decimal("-1")
        assert march.is_finalized

    def test_only_finalized_snapshots_are_corrected(self, engine_, march_activity, test_actor_id):
        draft = engine_.run_reconciliation(*MARCH, Decimal("70"), test_actor_id, unit="L")
        with pytest.raises(ReconciliationPeriodError):
            engine_.open_correction(draft.id, Decimal("69"), test_actor_id)


class TestTaxSummary:
    def test_tax_on_removals(self, orchestrator, create_batch, engine_, test_actor_id):
        """100 one-gallon jugs: $22.60 gross, $5.60 small producer credit."""
        batch, vessel = create_batch(volume="400", capacity="500")
        orchestrator.packaging.draw(
            batch.id, vessel.id, Decimal("100"), Decimal("1"), 100, test_actor_id, unit="gal"
        )
        snapshot = engine_.run_reconciliation(*MARCH, Decimal("0"), test_actor_id)
        summary = engine_.tax_summary(snapshot.id)

        assert abs(summary.taxable_gallons - Decimal("100")) < Decimal("0.0001")
        assert summary.gross_tax == Decimal("22.60")
        assert summary.small_producer_credit == Decimal("5.60")
        assert summary.net_tax_owed == Decimal("17.00")

    def test_no_removals_no_tax(self, create_batch, engine_, test_actor_id):
        create_batch(volume="100")
        snapshot = engine_.run_reconciliation(*MARCH, Decimal("100"), test_actor_id, unit="L")
        summary = engine_.tax_summary(snapshot.id)
        assert summary.net_tax_owed == Decimal("0")
