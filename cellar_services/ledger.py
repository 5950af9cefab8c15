"""
cellar_services.ledger -- CellarLedger, the external interface of the ledger.

Responsibility:
    The one entry point callers (an RPC layer, scripts, tests) use to act
    on the ledger.  Each public method runs in its own transaction: it
    builds a CellarOrchestrator over a fresh session, performs the
    operation, commits on success and rolls back on any error.  Results
    come back as frozen DTOs, never ORM instances.

Architecture position:
    Services -- outermost layer of this repository.  Owns transaction
    boundaries; everything below it only flushes.

Invariants enforced:
    - One call, one transaction: a ledger operation commits together with
      all its journal rows, composition rows and audit events, or not at
      all.
    - Lock-race symptoms (StaleDataError from a version_id mismatch, lock
      timeouts, uniqueness collisions such as a duplicate lot code) surface
      as ConcurrencyConflictError.  Nothing is retried automatically.

Failure modes:
    - Any CellarKernelError raised below propagates unchanged after
      rollback.
    - ConcurrencyConflictError as described above.

Audit relevance:
    Every call binds a correlation id and the actor id into LogContext, so
    the structured log lines of one operation can be joined with its audit
    events and journal rows.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from cellar_config import get_active_config
from cellar_config.schema import CellarSettings
from cellar_kernel.domain.clock import Clock, SystemClock
from cellar_kernel.domain.composition import CompositionSource
from cellar_kernel.domain.dtos import (
    BatchState,
    CompositionEntryRecord,
    ConservationReport,
    DrawResult,
    JournalEntryRecord,
    ProjectionCheck,
    ReconciliationSnapshotInfo,
    VesselInfo,
)
from cellar_kernel.domain.reconciliation import TaxSummary
from cellar_kernel.exceptions import ConcurrencyConflictError
from cellar_kernel.logging_config import LogContext, get_logger
from cellar_kernel.services.base import as_uuid
from cellar_services.orchestrator import CellarOrchestrator

logger = get_logger("services.ledger")

_LOCK_MESSAGES = (
    "database is locked",
    "lock timeout",
    "could not obtain lock",
    "deadlock detected",
    "could not serialize",
)


def _is_lock_failure(exc: OperationalError) -> bool:
    text = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in text for marker in _LOCK_MESSAGES)


class CellarLedger:
    """
    Transactional facade over the cellar kernel.

    Contract:
        ``session_factory`` returns a new Session per call (a
        ``sessionmaker`` from ``cellar_kernel.db.engine``).  All writes are
        attributed to ``actor_id``.

    Non-goals:
        - No authentication or authorization; the caller vouches for the
          actor.
        - No retries.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        actor_id: UUID,
        settings: CellarSettings | None = None,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self.actor_id = actor_id
        self.settings = settings or get_active_config()
        self.clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Transaction boundary
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self, **context: Any) -> Iterator[CellarOrchestrator]:
        session = self._session_factory()
        with LogContext.bind(correlation_id=uuid4(), actor_id=self.actor_id, **context):
            try:
                yield CellarOrchestrator(session, self.settings, self.clock)
                session.commit()
            except StaleDataError as exc:
                session.rollback()
                self._conflict("version", exc)
            except IntegrityError as exc:
                session.rollback()
                self._conflict("uniqueness", exc)
            except OperationalError as exc:
                session.rollback()
                if not _is_lock_failure(exc):
                    raise
                self._conflict("lock", exc)
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    @staticmethod
    def _conflict(kind: str, exc: Exception) -> None:
        logger.warning(
            "concurrency_conflict",
            extra={"conflict_kind": kind, "detail": str(exc).splitlines()[0]},
        )
        raise ConcurrencyConflictError("ledger", kind, str(exc).splitlines()[0]) from exc

    @contextmanager
    def _read(self) -> Iterator[CellarOrchestrator]:
        session = self._session_factory()
        try:
            yield CellarOrchestrator(session, self.settings, self.clock)
        finally:
            session.rollback()
            session.close()

    # ------------------------------------------------------------------
    # Vessels
    # ------------------------------------------------------------------

    def register_vessel(
        self,
        name: str,
        capacity: Any,
        unit: str = "L",
        max_pressure_psi: Any = None,
    ) -> VesselInfo:
        with self._transaction() as orch:
            vessel = orch.vessels.register_vessel(
                name, capacity, unit, self.actor_id, max_pressure_psi=max_pressure_psi
            )
            return VesselInfo.from_model(vessel)

    def set_vessel_status(self, vessel_id: UUID | str, status: str) -> VesselInfo:
        with self._transaction() as orch:
            vessel = orch.vessels.set_vessel_status(vessel_id, status, self.actor_id)
            return VesselInfo.from_model(vessel)

    def get_vessel(self, vessel_id: UUID | str) -> VesselInfo:
        with self._read() as orch:
            return orch.batch_selector.vessel(as_uuid(vessel_id))

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def create_batch(
        self,
        origin: CompositionSource,
        vessel_id: UUID | str,
        initial_volume: Any,
        unit: str,
        **options: Any,
    ) -> BatchState:
        """
        Fill an available vessel with a new batch.

        ``options`` are passed to ``BatchService.create_batch``:
        batch_code, product_kind, status, abv, original_gravity, details.
        """
        with self._transaction() as orch:
            batch = orch.batches.create_batch(
                origin, vessel_id, initial_volume, unit, self.actor_id, **options
            )
            return BatchState.from_model(batch)

    def get_current_state(self, batch_id: UUID | str) -> BatchState:
        with self._read() as orch:
            return orch.batch_selector.current_state(as_uuid(batch_id))

    def active_batches(self) -> tuple[BatchState, ...]:
        with self._read() as orch:
            return orch.batch_selector.active_batches()

    def change_status(
        self,
        batch_id: UUID | str,
        status: str,
        vessel_status: str | None = None,
    ) -> BatchState:
        with self._transaction(batch_id=batch_id) as orch:
            batch = orch.batches.change_status(batch_id, status, self.actor_id, vessel_status)
            return BatchState.from_model(batch)

    def discard_batch(
        self,
        batch_id: UUID | str,
        reason: str,
        vessel_status: str | None = None,
    ) -> BatchState:
        with self._transaction(batch_id=batch_id) as orch:
            batch = orch.batches.discard_batch(batch_id, reason, self.actor_id, vessel_status)
            return BatchState.from_model(batch)

    def archive_batch(self, batch_id: UUID | str) -> BatchState:
        with self._transaction(batch_id=batch_id) as orch:
            return BatchState.from_model(orch.batches.archive_batch(batch_id, self.actor_id))

    def record_gravity(
        self,
        batch_id: UUID | str,
        original_gravity: Any = None,
        final_gravity: Any = None,
    ) -> BatchState:
        with self._transaction(batch_id=batch_id) as orch:
            batch = orch.batches.record_gravity(
                batch_id, self.actor_id, original_gravity=original_gravity, final_gravity=final_gravity
            )
            return BatchState.from_model(batch)

    def record_lab_abv(self, batch_id: UUID | str, abv: Any) -> BatchState:
        with self._transaction(batch_id=batch_id) as orch:
            return BatchState.from_model(orch.batches.record_lab_abv(batch_id, abv, self.actor_id))

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------

    def add_composition(
        self,
        batch_id: UUID | str,
        source: CompositionSource,
        volume: Any,
        unit: str,
        abv: Any = None,
        details: dict[str, Any] | None = None,
    ) -> CompositionEntryRecord:
        with self._transaction(batch_id=batch_id) as orch:
            entry = orch.compositions.add_composition(
                batch_id, source, volume, unit, self.actor_id, abv=abv, details=details
            )
            return CompositionEntryRecord.from_model(entry)

    def remove_composition(
        self, entry_id: UUID | str, vessel_status: str | None = None
    ) -> CompositionEntryRecord:
        with self._transaction() as orch:
            entry = orch.compositions.remove_composition(entry_id, self.actor_id, vessel_status)
            return CompositionEntryRecord.from_model(entry)

    def composition(
        self, batch_id: UUID | str, include_deleted: bool = False
    ) -> tuple[CompositionEntryRecord, ...]:
        with self._read() as orch:
            return orch.batch_selector.composition(as_uuid(batch_id), include_deleted)

    # ------------------------------------------------------------------
    # Operations and packaging
    # ------------------------------------------------------------------

    def record_operation(self, kind: str, payload: Any) -> JournalEntryRecord:
        with self._transaction() as orch:
            entry = orch.operations.record_operation(kind, payload, self.actor_id)
            return JournalEntryRecord.from_model(entry)

    def draw_packaging(
        self,
        batch_id: UUID | str,
        vessel_id: UUID | str,
        volume_taken: Any,
        unit_size: Any,
        units_produced: int,
        **options: Any,
    ) -> DrawResult:
        """
        Package part or all of a batch.

        ``options``: unit, package_type, packaged_at, vessel_status, notes.
        """
        with self._transaction(batch_id=batch_id) as orch:
            return orch.packaging.draw(
                batch_id,
                vessel_id,
                volume_taken,
                unit_size,
                units_produced,
                self.actor_id,
                **options,
            )

    # ------------------------------------------------------------------
    # History and integrity
    # ------------------------------------------------------------------

    def history(self, batch_id: UUID | str) -> tuple[JournalEntryRecord, ...]:
        with self._read() as orch:
            return orch.journal_selector.history(as_uuid(batch_id))

    def entries_between(self, start: datetime, end: datetime) -> tuple[JournalEntryRecord, ...]:
        with self._read() as orch:
            return orch.journal_selector.entries_between(start, end)

    def verify_projection(self, batch_id: UUID | str) -> ProjectionCheck:
        with self._read() as orch:
            return orch.batch_selector.verify_projection(
                as_uuid(batch_id), orch.policy.volume_epsilon_liters
            )

    def conservation_report(self) -> ConservationReport:
        with self._read() as orch:
            return orch.ledger_selector.conservation_report(orch.policy.volume_epsilon_liters)

    def validate_audit_chain(self) -> bool:
        with self._read() as orch:
            return orch.auditor.validate_chain()

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def run_reconciliation(
        self,
        period_start: date,
        period_end: date,
        physical_count: Any,
        unit: str | None = None,
    ) -> ReconciliationSnapshotInfo:
        with self._transaction() as orch:
            snapshot = orch.reconciliation.run_reconciliation(
                period_start, period_end, physical_count, self.actor_id, unit
            )
            return orch.reconciliation.describe(snapshot)

    def get_snapshot(self, snapshot_id: UUID | str) -> ReconciliationSnapshotInfo:
        with self._read() as orch:
            engine = orch.reconciliation
            return engine.describe(engine.get_snapshot(snapshot_id))

    def add_adjustment(
        self,
        snapshot_id: UUID | str,
        reason: str,
        amount: Any,
        adjustment_date: date | None = None,
        note: str | None = None,
    ) -> ReconciliationSnapshotInfo:
        with self._transaction(snapshot_id=snapshot_id) as orch:
            engine = orch.reconciliation
            engine.add_adjustment(
                snapshot_id, reason, amount, self.actor_id, adjustment_date=adjustment_date, note=note
            )
            return engine.describe(engine.get_snapshot(snapshot_id))

    def finalize_reconciliation(self, snapshot_id: UUID | str) -> ReconciliationSnapshotInfo:
        with self._transaction(snapshot_id=snapshot_id) as orch:
            snapshot = orch.reconciliation.finalize(snapshot_id, self.actor_id)
            return orch.reconciliation.describe(snapshot)

    def open_correction(
        self, snapshot_id: UUID | str, physical_count: Any
    ) -> ReconciliationSnapshotInfo:
        with self._transaction(snapshot_id=snapshot_id) as orch:
            snapshot = orch.reconciliation.open_correction(snapshot_id, physical_count, self.actor_id)
            return orch.reconciliation.describe(snapshot)

    def tax_summary(self, snapshot_id: UUID | str) -> TaxSummary:
        with self._read() as orch:
            return orch.reconciliation.tax_summary(snapshot_id)
