"""
Tests for VesselService and BatchService -- vessels, batch creation and
the status lifecycle.

Covers:
- register_vessel(): unit conversion, duplicate names, bad capacity
- create_batch(): fill journal row, first composition entry, batch codes,
  vessel occupancy, capacity and availability guards
- change_status(): legal moves, completion guard, drain cascade
- discard_batch() / archive_batch()
- record_gravity() / record_lab_abv()
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from cellar_kernel.domain.composition import BaseFruitSource, BrandySource, JuicePurchaseSource
from cellar_kernel.domain.lifecycle import BatchStatus, VesselStatus
from cellar_kernel.domain.operations import OperationKind
from cellar_kernel.exceptions import (
    BatchNotActiveError,
    CapacityExceededError,
    CompositionSourceError,
    DuplicateNameError,
    IllegalStatusTransitionError,
    InvalidGravityError,
    InvalidQuantityError,
    VesselNotFoundError,
    VesselUnavailableError,
)
from cellar_kernel.models.audit_event import AuditAction
from cellar_kernel.models.journal import OperationJournalEntry


class TestVessels:
    def test_register_converts_capacity(self, orchestrator, test_actor_id):
        vessel = orchestrator.vessels.register_vessel("Oak 1", Decimal("60"), "gallons", test_actor_id)
        assert vessel.capacity_liters == Decimal("227.12470704")
        assert vessel.capacity_unit == "gal"
        assert vessel.status == VesselStatus.AVAILABLE

    def test_duplicate_name(self, create_vessel):
        create_vessel(name="Tank A")
        with pytest.raises(DuplicateNameError):
            create_vessel(name="Tank A")

    @pytest.mark.parametrize("capacity", ["0", "-10"])
    def test_capacity_must_be_positive(self, orchestrator, test_actor_id, capacity):
        with pytest.raises(InvalidQuantityError):
            orchestrator.vessels.register_vessel("Bad", Decimal(capacity), "L", test_actor_id)

    def test_unknown_vessel(self, orchestrator):
        with pytest.raises(VesselNotFoundError):
            orchestrator.vessels.get_vessel(uuid4())

    def test_manual_status_on_empty_vessel(self, orchestrator, create_vessel, test_actor_id):
        vessel = create_vessel()
        orchestrator.vessels.set_vessel_status(vessel.id, "maintenance", test_actor_id)
        assert vessel.status == VesselStatus.MAINTENANCE

    def test_manual_status_on_occupied_vessel(self, orchestrator, create_batch, test_actor_id):
        _, vessel = create_batch()
        with pytest.raises(VesselUnavailableError):
            orchestrator.vessels.set_vessel_status(vessel.id, "cleaning", test_actor_id)

    def test_vessel_cannot_be_set_in_use_by_hand(self, orchestrator, create_vessel, test_actor_id):
        vessel = create_vessel()
        with pytest.raises(VesselUnavailableError):
            orchestrator.vessels.set_vessel_status(vessel.id, "in_use", test_actor_id)


class TestCreateBatch:
    def test_fill_is_journaled(self, orchestrator, create_batch, session):
        batch, vessel = create_batch(volume="120")

        assert batch.current_volume_liters == Decimal("120")
        assert batch.status == BatchStatus.FERMENTATION
        assert batch.vessel_id == vessel.id
        assert vessel.status == VesselStatus.IN_USE

        rows = session.execute(
            select(OperationJournalEntry).where(OperationJournalEntry.dest_batch_id == batch.id)
        ).scalars().all()
        assert [r.kind for r in rows] == [OperationKind.INITIAL_FILL]
        assert rows[0].dest_volume_after == Decimal("120")

    def test_origin_becomes_first_composition_entry(self, orchestrator, create_batch):
        batch, _ = create_batch(press_run="PR-2026-07")
        entries = orchestrator.batch_selector.composition(batch.id)
        assert len(entries) == 1
        assert entries[0].source_kind == "base_fruit"
        assert entries[0].source_ref == "PR-2026-07"
        assert entries[0].volume_liters == Decimal("120")

    def test_batch_codes_are_sequential_per_year(self, create_batch):
        first, _ = create_batch()
        second, _ = create_batch()
        assert first.batch_code == "2026-001"
        assert second.batch_code == "2026-002"

    def test_explicit_code_must_be_free(self, create_batch):
        create_batch(batch_code="SPRING-A")
        with pytest.raises(DuplicateNameError):
            create_batch(batch_code="SPRING-A")

    def test_unit_conversion(self, orchestrator, create_vessel, test_actor_id):
        vessel = create_vessel(capacity="500")
        batch = orchestrator.batches.create_batch(
            JuicePurchaseSource("JP-9"), vessel.id, Decimal("100"), "gal", test_actor_id
        )
        state = orchestrator.batch_selector.current_state(batch.id)
        assert state.current_volume_liters == Decimal("378.541178")
        assert state.display_unit == "gal"
        assert abs(state.current_volume - Decimal("100")) < Decimal("0.000001")

    def test_capacity_exceeded(self, create_batch):
        with pytest.raises(CapacityExceededError):
            create_batch(volume="250", capacity="200")

    def test_occupied_vessel_rejected(self, create_batch):
        _, vessel = create_batch()
        with pytest.raises(VesselUnavailableError):
            create_batch(vessel=vessel)

    def test_vessel_under_cleaning_rejected(self, orchestrator, create_vessel, create_batch, test_actor_id):
        vessel = create_vessel()
        orchestrator.vessels.set_vessel_status(vessel.id, "cleaning", test_actor_id)
        with pytest.raises(VesselUnavailableError):
            create_batch(vessel=vessel)

    def test_brandy_origin_needs_abv(self, orchestrator, create_vessel, test_actor_id):
        vessel = create_vessel()
        with pytest.raises(CompositionSourceError):
            orchestrator.batches.create_batch(
                BrandySource("DIST-1"), vessel.id, Decimal("50"), "L", test_actor_id
            )

    def test_cannot_start_terminal(self, create_batch):
        with pytest.raises(IllegalStatusTransitionError):
            create_batch(status="completed")

    def test_creation_is_audited(self, orchestrator, create_batch):
        batch, _ = create_batch()
        trace = orchestrator.auditor.get_trace("Batch", batch.id)
        assert AuditAction.BATCH_CREATED in trace.actions


class TestStatusChanges:
    def test_fermentation_to_aging(self, orchestrator, create_batch, test_actor_id):
        batch, _ = create_batch()
        orchestrator.batches.change_status(batch.id, "aging", test_actor_id)
        assert batch.status == BatchStatus.AGING

    def test_backwards_move_rejected(self, orchestrator, create_batch, test_actor_id):
        batch, _ = create_batch()
        orchestrator.batches.change_status(batch.id, "aging", test_actor_id)
        with pytest.raises(IllegalStatusTransitionError):
            orchestrator.batches.change_status(batch.id, "fermentation", test_actor_id)

    def test_cannot_complete_a_full_batch(self, orchestrator, create_batch, test_actor_id):
        batch, _ = create_batch(volume="120")
        with pytest.raises(IllegalStatusTransitionError):
            orchestrator.batches.change_status(batch.id, "completed", test_actor_id)

    def test_discard_releases_vessel(self, orchestrator, create_batch, session, test_actor_id):
        batch, vessel = create_batch(volume="80")
        orchestrator.batches.discard_batch(batch.id, "acetic spoilage", test_actor_id, "cleaning")

        assert batch.status == BatchStatus.DISCARDED
        assert batch.current_volume_liters == Decimal("0")
        assert batch.vessel_id is None
        assert vessel.status == VesselStatus.CLEANING
        discard = session.execute(
            select(OperationJournalEntry).where(OperationJournalEntry.kind == OperationKind.DISCARD)
        ).scalar_one()
        assert discard.volume_lost == Decimal("80")

    def test_discard_needs_reason(self, orchestrator, create_batch, test_actor_id):
        batch, _ = create_batch()
        with pytest.raises(InvalidQuantityError):
            orchestrator.batches.discard_batch(batch.id, "  ", test_actor_id)

    def test_terminal_batch_rejects_readings(self, orchestrator, create_batch, test_actor_id):
        batch, _ = create_batch()
        orchestrator.batches.discard_batch(batch.id, "dropped", test_actor_id)
        with pytest.raises(BatchNotActiveError):
            orchestrator.batches.record_lab_abv(batch.id, "6.0", test_actor_id)

    def test_archive_only_terminal(self, orchestrator, create_batch, test_actor_id):
        batch, _ = create_batch()
        with pytest.raises(IllegalStatusTransitionError):
            orchestrator.batches.archive_batch(batch.id, test_actor_id)
        orchestrator.batches.discard_batch(batch.id, "dropped", test_actor_id)
        orchestrator.batches.archive_batch(batch.id, test_actor_id)
        assert orchestrator.batch_selector.current_state(batch.id).archived

    def test_vessel_reusable_after_discard(self, orchestrator, create_batch, test_actor_id):
        batch, vessel = create_batch()
        orchestrator.batches.discard_batch(batch.id, "dropped", test_actor_id)
        replacement, _ = create_batch(vessel=vessel, press_run="PR-2")
        assert replacement.vessel_id == vessel.id


class TestReadings:
    def test_gravity_sets_actual_abv(self, orchestrator, create_batch, test_actor_id):
        batch, _ = create_batch()
        orchestrator.batches.record_gravity(batch.id, test_actor_id, original_gravity="1.060")
        assert batch.estimated_abv == Decimal("7.875")
        assert batch.actual_abv is None

        orchestrator.batches.record_gravity(batch.id, test_actor_id, final_gravity="1.000")
        assert batch.actual_abv == Decimal("7.875")

    def test_gravity_out_of_range(self, orchestrator, create_batch, test_actor_id):
        batch, _ = create_batch()
        with pytest.raises(InvalidGravityError):
            orchestrator.batches.record_gravity(batch.id, test_actor_id, original_gravity="1.5")

    def test_gravity_requires_a_value(self, orchestrator, create_batch, test_actor_id):
        batch, _ = create_batch()
        with pytest.raises(InvalidQuantityError):
            orchestrator.batches.record_gravity(batch.id, test_actor_id)

    def test_lab_abv_wins(self, orchestrator, create_batch, test_actor_id):
        batch, _ = create_batch()
        orchestrator.batches.record_gravity(
            batch.id, test_actor_id, original_gravity="1.060", final_gravity="1.000"
        )
        orchestrator.batches.record_lab_abv(batch.id, "7.2", test_actor_id)
        orchestrator.batches.record_gravity(batch.id, test_actor_id, final_gravity="0.998")

        state = orchestrator.batch_selector.current_state(batch.id)
        assert state.actual_abv == Decimal("7.2")
        assert state.abv == Decimal("7.2")
