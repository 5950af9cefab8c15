"""ORM models for the cellar kernel."""

from cellar_kernel.models.audit_event import AuditAction, AuditEvent
from cellar_kernel.models.batch import Batch
from cellar_kernel.models.composition import (
    SOURCE_REFERENCE_COLUMNS,
    CompositionEntry,
    SourceKind,
)
from cellar_kernel.models.journal import OperationJournalEntry
from cellar_kernel.models.packaging import FinishedGoodsLot, PackagingRun
from cellar_kernel.models.reconciliation import (
    ReconciliationAdjustment,
    ReconciliationSnapshot,
)
from cellar_kernel.models.vessel import Vessel


def import_all_models() -> None:
    """Make sure every mapped table, the sequence counters included, is on Base.metadata."""
    import cellar_kernel.services.sequence_service  # noqa: F401


__all__ = [
    "AuditAction",
    "AuditEvent",
    "Batch",
    "CompositionEntry",
    "FinishedGoodsLot",
    "OperationJournalEntry",
    "PackagingRun",
    "ReconciliationAdjustment",
    "ReconciliationSnapshot",
    "SOURCE_REFERENCE_COLUMNS",
    "SourceKind",
    "Vessel",
    "import_all_models",
]
