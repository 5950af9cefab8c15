"""
Tests for OperationJournal -- the cellar operations that move liquid.

Covers:
- transfer: split into a child batch, blend into a resident batch,
  relocation of a (nearly) whole batch
- merge: whole remaining volume into another batch
- racking / filtering: in-place loss, optional move to a new vessel
- carbonation: forced (pressure rating) and natural (priming sugar)
- distillation out / in: proof gallons, new brandy batch, yield loss
- volume adjustment: signed corrections, capacity check, drain cascade
- payload validation and journal / projection consistency
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from cellar_kernel.db.types import round_volume
from cellar_kernel.domain.lifecycle import BatchStatus, VesselStatus
from cellar_kernel.domain.operations import OperationKind, TransferPayload
from cellar_kernel.domain.units import LITERS_PER_GALLON
from cellar_kernel.exceptions import (
    BatchNotActiveError,
    CapacityExceededError,
    DistillationReferenceError,
    InsufficientVolumeError,
    InvalidAdjustmentError,
    InvalidOperationPayloadError,
    PressureRatingExceededError,
    VesselMismatchError,
)
from cellar_kernel.models.batch import Batch
from cellar_kernel.models.journal import OperationJournalEntry


@pytest.fixture
def record(orchestrator, test_actor_id):
    def _record(kind, **payload):
        return orchestrator.operations.record_operation(kind, payload, test_actor_id)

    return _record


def assert_projection(orchestrator, *batches):
    for batch in batches:
        check = orchestrator.batch_selector.verify_projection(batch.id)
        assert check.consistent, check


class TestTransferSplit:
    def test_partial_transfer_creates_child(self, orchestrator, create_batch, create_vessel, record, session):
        parent, _ = create_batch(volume="120")
        dest = create_vessel(capacity="100")

        entry = record(
            "transfer",
            source_batch_id=str(parent.id),
            dest_vessel_id=str(dest.id),
            volume="50",
            volume_lost="1.5",
        )

        child = session.get(Batch, entry.dest_batch_id)
        assert entry.payload["mode"] == "split"
        assert parent.current_volume_liters == Decimal("68.5")
        assert child.current_volume_liters == Decimal("50")
        assert child.parent_batch_id == parent.id
        assert child.batch_code == f"{parent.batch_code}-1"
        assert child.vessel_id == dest.id
        assert dest.status == VesselStatus.IN_USE
        assert_projection(orchestrator, parent, child)

    def test_child_inherits_abv(self, orchestrator, create_batch, create_vessel, record, session, test_actor_id):
        parent, _ = create_batch(volume="120")
        orchestrator.batches.record_lab_abv(parent.id, "6.4", test_actor_id)
        dest = create_vessel()

        entry = record("transfer", source_batch_id=parent.id, dest_vessel_id=dest.id, volume="40")

        child = session.get(Batch, entry.dest_batch_id)
        assert child.effective_abv == Decimal("6.4")
        entries = orchestrator.batch_selector.composition(child.id)
        assert [e.source_kind for e in entries] == ["batch_transfer"]
        assert entries[0].source_ref == str(parent.id)

    def test_dataclass_payload(self, orchestrator, create_batch, create_vessel, test_actor_id):
        parent, _ = create_batch(volume="120")
        dest = create_vessel()
        entry = orchestrator.operations.record_operation(
            OperationKind.TRANSFER,
            TransferPayload(source_batch_id=parent.id, dest_vessel_id=dest.id, volume=Decimal("30")),
            test_actor_id,
        )
        assert entry.volume_moved == Decimal("30")

    def test_insufficient_volume(self, create_batch, create_vessel, record):
        parent, _ = create_batch(volume="50")
        dest = create_vessel()
        with pytest.raises(InsufficientVolumeError):
            record("transfer", source_batch_id=parent.id, dest_vessel_id=dest.id, volume="49", volume_lost="2")

    def test_destination_capacity(self, create_batch, create_vessel, record):
        parent, _ = create_batch(volume="150")
        dest = create_vessel(capacity="50")
        with pytest.raises(CapacityExceededError):
            record("transfer", source_batch_id=parent.id, dest_vessel_id=dest.id, volume="60")

    def test_same_vessel_rejected(self, create_batch, record):
        parent, vessel = create_batch()
        with pytest.raises(InvalidOperationPayloadError):
            record("transfer", source_batch_id=parent.id, dest_vessel_id=vessel.id, volume="10")


class TestTransferBlend:
    def test_blend_into_resident(self, orchestrator, create_batch, record, test_actor_id):
        cider, _ = create_batch(volume="80")
        orchestrator.batches.record_lab_abv(cider.id, "6", test_actor_id)
        resident, resident_vessel = create_batch(volume="20", press_run="PR-9")

        entry = record(
            "transfer",
            source_batch_id=cider.id,
            dest_vessel_id=resident_vessel.id,
            volume="40",
            dest_batch_id=resident.id,
        )

        assert entry.payload["mode"] == "blend"
        assert entry.dest_batch_id == resident.id
        assert resident.current_volume_liters == Decimal("60")
        assert cider.current_volume_liters == Decimal("40")
        # 20 L at 0% with 40 L at 6%
        assert resident.effective_abv == Decimal("4")
        assert_projection(orchestrator, cider, resident)

    def test_expected_resident_mismatch(self, create_batch, record):
        source, _ = create_batch(volume="80")
        _, other_vessel = create_batch(volume="20", press_run="PR-9")
        with pytest.raises(VesselMismatchError):
            record(
                "transfer",
                source_batch_id=source.id,
                dest_vessel_id=other_vessel.id,
                volume="10",
                dest_batch_id=uuid4(),
            )

    def test_blend_that_empties_source_completes_it(self, orchestrator, create_batch, record):
        source, source_vessel = create_batch(volume="30")
        target, target_vessel = create_batch(volume="100", press_run="PR-9")

        record(
            "transfer",
            source_batch_id=source.id,
            dest_vessel_id=target_vessel.id,
            volume="29.95",
        )

        assert source.status == BatchStatus.COMPLETED
        assert source.current_volume_liters == Decimal("0")
        assert source.vessel_id is None
        assert source_vessel.status == VesselStatus.AVAILABLE
        assert target.current_volume_liters == Decimal("129.95")
        assert_projection(orchestrator, source, target)


class TestTransferRelocate:
    def test_whole_batch_keeps_identity(self, orchestrator, create_batch, create_vessel, record, session):
        batch, old_vessel = create_batch(volume="100")
        new_vessel = create_vessel(capacity="150")

        entry = record(
            "transfer",
            source_batch_id=batch.id,
            dest_vessel_id=new_vessel.id,
            volume="99",
            volume_lost="0.95",
            source_vessel_status="cleaning",
        )

        assert entry.payload["mode"] == "relocate"
        assert entry.source_batch_id == entry.dest_batch_id == batch.id
        assert batch.vessel_id == new_vessel.id
        assert batch.current_volume_liters == Decimal("99")
        assert batch.status == BatchStatus.FERMENTATION
        assert old_vessel.status == VesselStatus.CLEANING
        assert new_vessel.status == VesselStatus.IN_USE

        kinds = [
            row.kind
            for row in session.execute(
                select(OperationJournalEntry)
                .where(OperationJournalEntry.source_batch_id == batch.id)
                .order_by(OperationJournalEntry.seq)
            ).scalars()
        ]
        assert kinds == [OperationKind.TRANSFER, OperationKind.RESIDUAL_WRITE_OFF]
        assert_projection(orchestrator, batch)


class TestMerge:
    def test_merge_moves_everything(self, orchestrator, create_batch, record):
        source, source_vessel = create_batch(volume="40")
        target, _ = create_batch(volume="100", press_run="PR-9")

        entry = record("merge", source_batch_id=source.id, target_batch_id=target.id, volume_lost="0.5")

        assert entry.volume_moved == Decimal("39.5")
        assert target.current_volume_liters == Decimal("139.5")
        assert source.status == BatchStatus.COMPLETED
        assert source_vessel.status == VesselStatus.AVAILABLE
        assert_projection(orchestrator, source, target)

    def test_merge_into_itself(self, create_batch, record):
        batch, _ = create_batch()
        with pytest.raises(InvalidOperationPayloadError):
            record("merge", source_batch_id=batch.id, target_batch_id=batch.id)

    def test_merge_over_capacity(self, create_batch, record):
        source, _ = create_batch(volume="100")
        target, _ = create_batch(volume="150", capacity="200", press_run="PR-9")
        with pytest.raises(CapacityExceededError):
            record("merge", source_batch_id=source.id, target_batch_id=target.id)


class TestRackingAndFiltering:
    def test_racking_in_place_records_loss(self, orchestrator, create_batch, record):
        batch, vessel = create_batch(volume="100")
        entry = record("racking", batch_id=batch.id, volume_lost="3")

        assert entry.source_batch_id == entry.dest_batch_id == batch.id
        assert entry.volume_moved == Decimal("97")
        assert entry.volume_lost == Decimal("3")
        assert batch.current_volume_liters == Decimal("97")
        assert batch.vessel_id == vessel.id
        assert_projection(orchestrator, batch)

    def test_racking_to_new_vessel(self, orchestrator, create_batch, create_vessel, record):
        batch, old_vessel = create_batch(volume="100")
        new_vessel = create_vessel()

        record("racking", batch_id=batch.id, volume_lost="2", dest_vessel_id=new_vessel.id)

        assert batch.vessel_id == new_vessel.id
        assert old_vessel.status == VesselStatus.CLEANING
        assert new_vessel.status == VesselStatus.IN_USE

    def test_filtering_grade(self, create_batch, record):
        batch, _ = create_batch(volume="100")
        entry = record("filtering", batch_id=batch.id, filter_grade="sterile", volume_lost="1")
        assert entry.payload["filter_grade"] == "sterile"
        assert batch.current_volume_liters == Decimal("99")

    def test_unknown_filter_grade(self, create_batch, record):
        batch, _ = create_batch()
        with pytest.raises(InvalidOperationPayloadError):
            record("filtering", batch_id=batch.id, filter_grade="cheesecloth")

    def test_losing_everything_completes_batch(self, create_batch, record):
        batch, vessel = create_batch(volume="10")
        record("racking", batch_id=batch.id, volume_lost="10")
        assert batch.status == BatchStatus.COMPLETED
        assert vessel.status == VesselStatus.AVAILABLE


class TestCarbonation:
    def test_forced_within_rating(self, create_batch, create_vessel, record):
        vessel = create_vessel(max_pressure_psi=Decimal("30"))
        batch, _ = create_batch(volume="100", vessel=vessel)

        entry = record(
            "carbonation",
            batch_id=batch.id,
            method="forced",
            vessel_id=vessel.id,
            pressure_psi="15.3",
            temperature_c="10",
        )

        assert batch.co2_volumes == Decimal("2.40")
        assert batch.carbonation_level.value == "petillant"
        assert entry.payload["level"] == "petillant"
        assert batch.current_volume_liters == Decimal("100")

    def test_forced_over_rating(self, create_batch, create_vessel, record):
        vessel = create_vessel(max_pressure_psi=Decimal("10"))
        batch, _ = create_batch(volume="100", vessel=vessel)
        with pytest.raises(PressureRatingExceededError):
            record(
                "carbonation",
                batch_id=batch.id,
                method="forced",
                vessel_id=vessel.id,
                pressure_psi="25",
                temperature_c="4",
            )

    def test_forced_in_unrated_vessel(self, create_batch, record):
        batch, vessel = create_batch(volume="100")
        with pytest.raises(PressureRatingExceededError):
            record(
                "carbonation",
                batch_id=batch.id,
                method="forced",
                vessel_id=vessel.id,
                pressure_psi="5",
                final_co2_volumes="1.5",
            )

    def test_natural_from_priming_sugar(self, create_batch, record):
        batch, _ = create_batch(volume="100")
        record(
            "carbonation",
            batch_id=batch.id,
            method="natural",
            sugar_amount="1",
            sugar_unit="kg",
        )
        # 1000 g over 100 L is 10 g/L, 10 / 4.0 = 2.5 volumes
        assert batch.co2_volumes == Decimal("2.50")
        assert batch.carbonation_level.value == "sparkling"

    def test_natural_needs_sugar(self, create_batch, record):
        batch, _ = create_batch()
        with pytest.raises(InvalidOperationPayloadError):
            record("carbonation", batch_id=batch.id, method="natural")

    def test_split_child_keeps_carbonation(self, orchestrator, create_batch, create_vessel, record, session):
        batch, _ = create_batch(volume="100")
        record("carbonation", batch_id=batch.id, method="natural", sugar_amount="800", sugar_unit="g")
        dest = create_vessel()
        entry = record("transfer", source_batch_id=batch.id, dest_vessel_id=dest.id, volume="40")
        child = session.get(Batch, entry.dest_batch_id)
        assert child.co2_volumes == batch.co2_volumes


class TestDistillation:
    def test_round_trip_to_brandy(self, orchestrator, create_batch, create_vessel, record, session, test_actor_id):
        cider, cider_vessel = create_batch(volume="378.5411784", capacity="400")
        orchestrator.batches.record_lab_abv(cider.id, "7", test_actor_id)

        out = record(
            "distillation_out",
            batch_id=cider.id,
            volume="378.5411784",
            external_ref="DIST-2026-01",
        )
        assert out.proof_gallons == pytest.approx(Decimal("14"), abs=Decimal("0.0001"))
        assert cider.status == BatchStatus.COMPLETED
        assert cider_vessel.status == VesselStatus.AVAILABLE

        cask = create_vessel(capacity="50")
        back = record(
            "distillation_in",
            external_ref="DIST-2026-01",
            volume="15.141647136",
            abv="70",
            dest_vessel_id=cask.id,
            product_kind="brandy",
        )
        brandy = session.get(Batch, back.dest_batch_id)

        assert brandy.batch_code == "DIST-2026-01-B1"
        assert brandy.status == BatchStatus.AGING
        assert brandy.product_kind.value == "brandy"
        assert brandy.effective_abv == Decimal("70")
        # 4 wine gallons at 70% is 5.6 proof gallons
        assert Decimal(back.payload["yield_loss_proof_gallons"]) == pytest.approx(
            Decimal("8.4"), abs=Decimal("0.001")
        )
        entries = orchestrator.batch_selector.composition(brandy.id)
        assert [(e.source_kind, e.source_ref) for e in entries] == [("brandy", "DIST-2026-01")]

    def test_return_needs_outbound_leg(self, create_vessel, record):
        cask = create_vessel()
        with pytest.raises(DistillationReferenceError):
            record(
                "distillation_in",
                external_ref="NEVER-SENT",
                volume="10",
                abv="65",
                dest_vessel_id=cask.id,
                product_kind="brandy",
            )

    def test_outbound_needs_reference(self, create_batch, record):
        batch, _ = create_batch()
        with pytest.raises(DistillationReferenceError):
            record("distillation_out", batch_id=batch.id, volume="10", external_ref=" ")

    def test_return_into_existing_batch_fortifies(self, orchestrator, create_batch, record):
        cider, _ = create_batch(volume="100", capacity="200")
        record("distillation_out", batch_id=cider.id, volume="20", external_ref="D-7", abv="6")
        juice, _ = create_batch(volume="80", capacity="200", press_run="PR-3", product_kind="pommeau")

        record("distillation_in", external_ref="D-7", volume="20", abv="70", dest_batch_id=juice.id)

        assert juice.current_volume_liters == Decimal("100")
        assert juice.effective_abv == Decimal("14")

    def test_new_batch_needs_product_kind(self, create_batch, create_vessel, record):
        cider, _ = create_batch(volume="100")
        record("distillation_out", batch_id=cider.id, volume="20", external_ref="D-8")
        cask = create_vessel()
        with pytest.raises(InvalidOperationPayloadError):
            record("distillation_in", external_ref="D-8", volume="2", abv="70", dest_vessel_id=cask.id)


class TestVolumeAdjustment:
    def test_correction_up_adds_volume(self, orchestrator, create_batch, record):
        batch, vessel = create_batch(volume="100")
        entry = record("volume_adjustment", batch_id=batch.id, amount="5", reason="correction_up")

        assert entry.kind == OperationKind.VOLUME_ADJUSTMENT
        assert entry.source_batch_id is None
        assert entry.dest_batch_id == batch.id
        assert entry.dest_vessel_id == vessel.id
        assert entry.volume_moved == Decimal("5")
        assert entry.payload["reason"] == "correction_up"
        assert batch.current_volume_liters == Decimal("105")
        assert_projection(orchestrator, batch)

    def test_increase_is_capacity_checked(self, create_batch, record):
        batch, _ = create_batch(volume="100", capacity="102")
        with pytest.raises(CapacityExceededError):
            record("volume_adjustment", batch_id=batch.id, amount="5", reason="correction_up")
        assert batch.current_volume_liters == Decimal("100")

    def test_evaporation_is_a_loss(self, orchestrator, create_batch, record):
        batch, _ = create_batch(volume="100")
        entry = record(
            "volume_adjustment", batch_id=batch.id, amount="-3", reason="evaporation", notes="angel's share"
        )

        assert entry.source_batch_id == batch.id
        assert entry.dest_batch_id is None
        assert entry.volume_moved == Decimal("0")
        assert entry.volume_lost == Decimal("3")
        assert batch.current_volume_liters == Decimal("97")
        assert_projection(orchestrator, batch)

    def test_amount_in_gallons(self, create_batch, record):
        batch, _ = create_batch(volume="100")
        entry = record("volume_adjustment", batch_id=batch.id, amount="-1", unit="gal", reason="spillage")
        assert entry.volume_lost == round_volume(LITERS_PER_GALLON)

    def test_sign_must_fit_reason(self, create_batch, record):
        batch, _ = create_batch(volume="100")
        with pytest.raises(InvalidAdjustmentError):
            record("volume_adjustment", batch_id=batch.id, amount="3", reason="evaporation")
        with pytest.raises(InvalidAdjustmentError):
            record("volume_adjustment", batch_id=batch.id, amount="0", reason="measurement_error")

    def test_loss_beyond_volume(self, create_batch, record):
        batch, _ = create_batch(volume="10")
        with pytest.raises(InsufficientVolumeError):
            record("volume_adjustment", batch_id=batch.id, amount="-12", reason="measurement_error")

    def test_loss_that_empties_batch_completes_it(self, orchestrator, create_batch, record):
        batch, vessel = create_batch(volume="10")
        record("volume_adjustment", batch_id=batch.id, amount="-9.95", reason="measurement_error")

        assert batch.status == BatchStatus.COMPLETED
        assert batch.current_volume_liters == Decimal("0")
        assert vessel.status == VesselStatus.AVAILABLE
        kinds = [e.kind for e in orchestrator.journal_selector.history(batch.id)]
        assert kinds == ["initial_fill", "volume_adjustment", "residual_write_off"]

    def test_ledger_stays_balanced(self, orchestrator, create_batch, record):
        batch, _ = create_batch(volume="100")
        record("volume_adjustment", batch_id=batch.id, amount="4", reason="correction_up")
        record("volume_adjustment", batch_id=batch.id, amount="-1.5", reason="sampling")

        report = orchestrator.ledger_selector.conservation_report()
        assert report.inbound == Decimal("104")
        assert report.losses == Decimal("1.5")
        assert report.actual_on_hand == Decimal("102.5")
        assert report.balanced


class TestGuards:
    def test_unknown_kind(self, record):
        with pytest.raises(InvalidOperationPayloadError):
            record("pasteurize", batch_id=str(uuid4()))

    def test_internal_kind_rejected(self, create_batch, record):
        batch, _ = create_batch()
        with pytest.raises(InvalidOperationPayloadError):
            record("residual_write_off", batch_id=batch.id)

    def test_terminal_batch_rejected(self, orchestrator, create_batch, record, test_actor_id):
        batch, _ = create_batch()
        orchestrator.batches.discard_batch(batch.id, "dropped", test_actor_id)
        with pytest.raises(BatchNotActiveError):
            record("distillation_out", batch_id=batch.id, volume="1", external_ref="D-9")

    def test_discard_operation(self, create_batch, record):
        batch, vessel = create_batch(volume="60")
        entry = record("discard", batch_id=batch.id, reason="mousiness", source_vessel_status="cleaning")
        assert entry.kind == OperationKind.DISCARD
        assert entry.volume_lost == Decimal("60")
        assert vessel.status == VesselStatus.CLEANING
