"""
cellar_services -- Package init and public API.

Responsibility:
    Orchestration above the cellar kernel: the CellarLedger facade that
    owns transaction boundaries, the CellarOrchestrator that wires kernel
    services per session, and the period ReconciliationEngine.

Architecture position:
    Services -- outermost layer.

    Dependency direction:
        cellar_services/ -> cellar_kernel/, cellar_config/  (allowed)
        cellar_kernel/   -> cellar_services/               (FORBIDDEN)

Audit relevance:
    This package is the canonical import surface for external consumers.
"""

from cellar_services.ledger import CellarLedger
from cellar_services.orchestrator import CellarOrchestrator
from cellar_services.reconciliation_engine import ReconciliationEngine

__all__ = [
    "CellarLedger",
    "CellarOrchestrator",
    "ReconciliationEngine",
]
