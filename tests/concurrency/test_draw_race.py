"""
Concurrent writers against one ledger.

Threads release together from a Barrier and call CellarLedger through
separate sessions.  On SQLite the BEGIN IMMEDIATE write lock serializes
them; on PostgreSQL (DATABASE_URL set) the row locks do.  Either way the
loser sees the winner's committed state and is rejected with a domain
error or a ConcurrencyConflictError, never a silent double spend.
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from threading import Barrier

from cellar_kernel.domain.composition import BaseFruitSource
from cellar_kernel.exceptions import (
    BatchNotActiveError,
    ConcurrencyConflictError,
    InsufficientVolumeError,
    VesselMismatchError,
    VesselUnavailableError,
)

THREADS = 2


def _race(fn, count=THREADS):
    """Run ``fn(i)`` on ``count`` threads released together; return (results, errors)."""
    barrier = Barrier(count, timeout=30)

    def worker(i):
        barrier.wait()
        try:
            return fn(i), None
        except Exception as exc:
            return None, exc

    with ThreadPoolExecutor(max_workers=count) as executor:
        outcomes = list(executor.map(worker, range(count)))
    results = [r for r, e in outcomes if e is None]
    errors = [e for r, e in outcomes if e is not None]
    return results, errors


class TestDrawRace:
    def test_only_one_draw_of_the_same_volume(self, ledger):
        vessel = ledger.register_vessel("Tank 1", "200")
        batch = ledger.create_batch(BaseFruitSource("PR-1"), vessel.vessel_id, "120", "L")

        results, errors = _race(
            lambda i: ledger.draw_packaging(batch.batch_id, vessel.vessel_id, "100", "0.75", 133)
        )

        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(
            errors[0], (InsufficientVolumeError, ConcurrencyConflictError)
        )
        state = ledger.get_current_state(batch.batch_id)
        assert state.current_volume_liters == Decimal("20")
        assert ledger.conservation_report().balanced

    def test_draining_draws(self, ledger):
        """Both threads try to empty the batch; the second finds it gone."""
        vessel = ledger.register_vessel("Tank 1", "200")
        batch = ledger.create_batch(BaseFruitSource("PR-1"), vessel.vessel_id, "60", "L")

        results, errors = _race(
            lambda i: ledger.draw_packaging(batch.batch_id, vessel.vessel_id, "60", "0.75", 80)
        )

        assert len(results) == 1
        assert isinstance(
            errors[0],
            (
                BatchNotActiveError,
                VesselMismatchError,
                InsufficientVolumeError,
                ConcurrencyConflictError,
            ),
        )
        assert ledger.get_current_state(batch.batch_id).status == "completed"


class TestFillRace:
    def test_one_batch_per_vessel(self, ledger):
        vessel = ledger.register_vessel("Tank 1", "200")

        results, errors = _race(
            lambda i: ledger.create_batch(
                BaseFruitSource(f"PR-{i}"), vessel.vessel_id, "100", "L"
            )
        )

        assert len(results) == 1
        assert isinstance(errors[0], (VesselUnavailableError, ConcurrencyConflictError))
        assert len(ledger.active_batches()) == 1

    def test_batch_codes_are_unique(self, ledger):
        count = 4
        vessels = [ledger.register_vessel(f"Tank {i}", "200") for i in range(count)]

        results, errors = _race(
            lambda i: ledger.create_batch(
                BaseFruitSource(f"PR-{i}"), vessels[i].vessel_id, "100", "L"
            ),
            count=count,
        )

        assert errors == []
        codes = sorted(b.batch_code for b in results)
        assert codes == [f"2026-{n:03d}" for n in range(1, count + 1)]
