"""
cellar_services.orchestrator -- Central DI container for kernel services.

Responsibility:
    Creates every kernel service exactly once per session and wires them
    together.  No service creates another service internally; the
    orchestrator is the single point of dependency injection.

Architecture position:
    Services -- top of the service layer.  The only place where kernel
    services are constructed and composed.  CellarLedger builds one
    orchestrator per transaction.

Invariants enforced:
    - Single-instance lifecycle: one AuditorService and one JournalWriter
      per session, so audit and journal sequences are allocated in a
      single place.
    - DI transparency: all service wiring is visible in ``__init__``.

Audit relevance:
    The construction order defines the dependency graph.  Every service
    shares the same session, clock and auditor, so one ledger operation's
    journal rows and audit events land in the same transaction.

Usage:
    orchestrator = CellarOrchestrator(session, settings, clock)
    orchestrator.batches.create_batch(...)
    orchestrator.operations.record_operation(...)
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from cellar_config.schema import CellarSettings
from cellar_kernel.domain.clock import Clock, SystemClock
from cellar_kernel.selectors.batch_selector import BatchSelector
from cellar_kernel.selectors.journal_selector import JournalSelector
from cellar_kernel.selectors.ledger_selector import LedgerSelector
from cellar_kernel.services.abv_service import AbvService
from cellar_kernel.services.auditor_service import AuditorService
from cellar_kernel.services.batch_service import BatchService
from cellar_kernel.services.composition_service import CompositionService
from cellar_kernel.services.journal_writer import JournalWriter
from cellar_kernel.services.operation_journal import OperationJournal
from cellar_kernel.services.packaging_service import PackagingService
from cellar_kernel.services.vessel_service import VesselService
from cellar_services.reconciliation_engine import ReconciliationEngine


class CellarOrchestrator:
    """Central factory for kernel services.

    Contract:
        Receives a SQLAlchemy Session, CellarSettings and an optional
        Clock.  Constructs every kernel service exactly once, in
        dependency order, and exposes them as public attributes.

    Non-goals:
        - Does NOT manage transaction boundaries (caller's responsibility).
        - Does NOT own the Session lifecycle (no commit/rollback).
    """

    def __init__(
        self,
        session: Session,
        settings: CellarSettings,
        clock: Clock | None = None,
    ) -> None:
        self.session = session
        self.clock = clock or SystemClock()
        self.settings = settings
        self.policy = settings.ledger_policy()

        # Foundational (no kernel dependencies)
        self.auditor = AuditorService(session, self.clock)
        self.writer = JournalWriter(
            session, self.clock, self.auditor, epsilon=self.policy.volume_epsilon_liters
        )
        self.abv = AbvService(session, self.clock, self.policy)
        self.vessels = VesselService(session, self.clock, self.auditor)

        # Batch lifecycle (depends on writer, abv, vessels)
        self.batches = BatchService(
            session, self.clock, self.auditor, self.writer, self.abv, self.vessels, self.policy
        )

        # Operations over batches
        self.compositions = CompositionService(
            session, self.clock, self.auditor, self.writer, self.abv, self.batches
        )
        self.operations = OperationJournal(
            session,
            self.clock,
            self.auditor,
            self.writer,
            self.abv,
            self.vessels,
            self.batches,
            self.policy,
        )
        self.packaging = PackagingService(
            session, self.clock, self.auditor, self.writer, self.batches, self.policy
        )

        # Period reconciliation
        self.reconciliation = ReconciliationEngine(
            session,
            self.clock,
            self.auditor,
            settings.reconciliation,
            settings.tax,
        )

        # Read side
        self.batch_selector = BatchSelector(session)
        self.journal_selector = JournalSelector(session)
        self.ledger_selector = LedgerSelector(session)
