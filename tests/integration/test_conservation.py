"""
End-to-end volume conservation over a season of cellar work.

One scenario touches every operation that moves volume: fill, split,
racking, juice addition and its reversal, merge, distillation out and
back in, a packaging draw and signed volume adjustments.  Afterwards the
ledger-wide balance must hold and every batch's stored volume must equal
the replay of its journal rows.
"""

from decimal import Decimal

import pytest

from cellar_kernel.domain.composition import JuicePurchaseSource
from cellar_kernel.domain.lifecycle import BatchStatus


@pytest.fixture
def season(orchestrator, create_batch, create_vessel, test_actor_id):
    def record(kind, **payload):
        return orchestrator.operations.record_operation(kind, payload, test_actor_id)

    main, tank = create_batch(volume="150", capacity="200")
    orchestrator.batches.record_lab_abv(main.id, "6.5", test_actor_id)

    side_tank = create_vessel(capacity="100")
    split = record("transfer", source_batch_id=main.id, dest_vessel_id=side_tank.id, volume="40")
    child_id = split.dest_batch_id

    record("racking", batch_id=main.id, volume_lost="2")
    juice = orchestrator.compositions.add_composition(
        main.id, JuicePurchaseSource("JP-77"), Decimal("10"), "L", test_actor_id
    )
    record("merge", source_batch_id=child_id, target_batch_id=main.id)
    orchestrator.compositions.remove_composition(juice.id, test_actor_id)

    record("distillation_out", batch_id=main.id, volume="20", external_ref="DIST-9")
    cask = create_vessel(capacity="20")
    back = record(
        "distillation_in",
        external_ref="DIST-9",
        volume="1",
        abv="70",
        dest_vessel_id=cask.id,
        product_kind="brandy",
    )

    orchestrator.packaging.draw(
        main.id, tank.id, Decimal("50"), Decimal("0.75"), 66, test_actor_id
    )
    return {"main": main.id, "child": child_id, "brandy": back.dest_batch_id}


class TestConservation:
    def test_final_volumes(self, orchestrator, season):
        main = orchestrator.batch_selector.current_state(season["main"])
        child = orchestrator.batch_selector.current_state(season["child"])
        brandy = orchestrator.batch_selector.current_state(season["brandy"])

        # 150 - 40 - 2 + 10 + 40 - 10 - 20 - 50
        assert main.current_volume_liters == Decimal("78")
        assert child.status == BatchStatus.COMPLETED.value
        assert child.current_volume_liters == Decimal("0")
        assert brandy.current_volume_liters == Decimal("1")

    def test_ledger_balances(self, orchestrator, season):
        report = orchestrator.ledger_selector.conservation_report()

        assert report.inbound == Decimal("161")
        assert report.reversed_out == Decimal("10")
        assert report.distilled_out == Decimal("20")
        assert report.packaged == Decimal("49.5")
        assert report.losses == Decimal("2.5")
        assert report.expected_on_hand == Decimal("79")
        assert report.actual_on_hand == Decimal("79")
        assert report.balanced

    def test_every_projection_matches_replay(self, orchestrator, season):
        for batch_id in season.values():
            check = orchestrator.batch_selector.verify_projection(batch_id)
            assert check.consistent, check

    def test_journal_kinds(self, orchestrator, season):
        kinds = [entry.kind for entry in orchestrator.journal_selector.history(season["main"])]
        assert kinds == [
            "initial_fill",
            "transfer",
            "racking",
            "composition_in",
            "merge",
            "composition_reversal",
            "distillation_out",
            "packaging_draw",
        ]

    def test_audit_chain_intact(self, orchestrator, season):
        assert orchestrator.auditor.validate_chain()


class TestAdjustedSeason:
    @pytest.fixture
    def adjusted(self, orchestrator, season, test_actor_id):
        for batch_id, amount, reason in (
            (season["main"], "2", "correction_up"),
            (season["brandy"], "-0.5", "evaporation"),
        ):
            orchestrator.operations.record_operation(
                "volume_adjustment",
                {"batch_id": batch_id, "amount": amount, "reason": reason},
                test_actor_id,
            )
        return season

    def test_adjustments_keep_ledger_balanced(self, orchestrator, adjusted):
        report = orchestrator.ledger_selector.conservation_report()

        assert report.inbound == Decimal("163")
        assert report.losses == Decimal("3.0")
        assert report.expected_on_hand == Decimal("80.5")
        assert report.balanced

    def test_adjusted_projections_match_replay(self, orchestrator, adjusted):
        for batch_id in adjusted.values():
            assert orchestrator.batch_selector.verify_projection(batch_id).consistent
