"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

The production ledger is a regulatory record.  Once an operation has been
journaled, a lot has been cut or a reconciliation period has been
finalized, the history must not change.  Mistakes are corrected with new
offsetting entries that leave a visible trail.

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners registered here inspect attribute history and
abort the flush with an AuditIntegrityError subclass:

    session.flush()
         |
         v
    [before_update] --> _check_*() --> ImmutabilityViolationError
         |                                  SnapshotFinalizedError
         v
    [before_delete] --> _check_*() ------------^
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                    | When Immutable                 | Allowed change
--------------------------|--------------------------------|-----------------------------
OperationJournalEntry     | ALWAYS                         | none
AuditEvent                | ALWAYS                         | none
PackagingRun              | ALWAYS                         | none
FinishedGoodsLot          | ALWAYS                         | none
CompositionEntry          | ALWAYS                         | soft delete, once
ReconciliationSnapshot    | After status = finalized       | draft edits, draft->finalized
ReconciliationAdjustment  | When its snapshot is finalized | edits while draft

updated_at / updated_by_id are audit metadata and may always change.

===============================================================================
USAGE
===============================================================================

    from cellar_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup; repeat calls are no-ops

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect, text
from sqlalchemy.orm.attributes import get_history

from cellar_kernel.exceptions import ImmutabilityViolationError, SnapshotFinalizedError
from cellar_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_METADATA_FIELDS = frozenset({"updated_at", "updated_by_id"})


def _changed_fields(target, allowed: frozenset[str] = frozenset()) -> list[str]:
    """Attribute keys with pending changes, ignoring audit metadata and ``allowed``."""
    insp = inspect(target)
    changed = []
    for attr in insp.attrs:
        if attr.key in _AUDIT_METADATA_FIELDS or attr.key in allowed:
            continue
        if attr.history.has_changes():
            changed.append(attr.key)
    return changed


def _block(entity_type: str, entity_id, operation: str, reason: str, field: str | None = None):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            "field": field,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


# =============================================================================
# Append-only records
# =============================================================================


def _check_append_only_update(mapper, connection, target):
    changed = _changed_fields(target)
    if changed:
        entity_type = type(target).__name__
        _block(
            entity_type,
            target.id,
            "UPDATE",
            f"{entity_type} records are append-only; cannot modify '{changed[0]}'",
            field=changed[0],
        )


def _check_append_only_delete(mapper, connection, target):
    entity_type = type(target).__name__
    _block(entity_type, target.id, "DELETE", f"{entity_type} records cannot be deleted")


# =============================================================================
# Composition entries: one-way soft delete only
# =============================================================================

_SOFT_DELETE_FIELDS = frozenset({"deleted_at", "deleted_by_id"})


def _check_composition_update(mapper, connection, target):
    changed = _changed_fields(target, allowed=_SOFT_DELETE_FIELDS)
    if changed:
        _block(
            "CompositionEntry",
            target.id,
            "UPDATE",
            f"Composition entries are append-only; cannot modify '{changed[0]}'",
            field=changed[0],
        )

    deleted_history = get_history(target, "deleted_at")
    if deleted_history.deleted and deleted_history.deleted[0] is not None:
        _block(
            "CompositionEntry",
            target.id,
            "UPDATE",
            "Composition entry is already deleted; soft delete is one-way",
            field="deleted_at",
        )


def _check_composition_delete(mapper, connection, target):
    _block(
        "CompositionEntry",
        target.id,
        "DELETE",
        "Composition entries are soft-deleted through a reversal, never removed",
    )


# =============================================================================
# Reconciliation snapshots: immutable once finalized
# =============================================================================


def _was_finalized(target) -> bool:
    from cellar_kernel.domain.reconciliation import SnapshotStatus

    status_history = get_history(target, "status")
    if status_history.deleted:
        return status_history.deleted[0] == SnapshotStatus.FINALIZED
    if not status_history.added:
        return target.status == SnapshotStatus.FINALIZED
    return False


def _snapshot_blocked(snapshot_id, action: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "ReconciliationSnapshot",
            "entity_id": str(snapshot_id),
            "operation": action,
        },
    )
    raise SnapshotFinalizedError(snapshot_id=str(snapshot_id), action=action)


def _check_snapshot_update(mapper, connection, target):
    if _was_finalized(target) and _changed_fields(target):
        _snapshot_blocked(target.id, "modify")


def _check_snapshot_delete(mapper, connection, target):
    from cellar_kernel.domain.reconciliation import SnapshotStatus

    if target.status == SnapshotStatus.FINALIZED:
        _snapshot_blocked(target.id, "delete")


def _snapshot_is_finalized(connection, snapshot_id) -> bool:
    from cellar_kernel.domain.reconciliation import SnapshotStatus

    status = connection.execute(
        text("SELECT status FROM reconciliation_snapshots WHERE id = :sid"),
        {"sid": str(snapshot_id)},
    ).scalar()
    return status == SnapshotStatus.FINALIZED.value


def _check_adjustment_insert(mapper, connection, target):
    if _snapshot_is_finalized(connection, target.snapshot_id):
        _snapshot_blocked(target.snapshot_id, "add adjustments")


def _check_adjustment_update(mapper, connection, target):
    if _changed_fields(target) and _snapshot_is_finalized(connection, target.snapshot_id):
        _snapshot_blocked(target.snapshot_id, "modify adjustments")


def _check_adjustment_delete(mapper, connection, target):
    if _snapshot_is_finalized(connection, target.snapshot_id):
        _snapshot_blocked(target.snapshot_id, "delete adjustments")


# =============================================================================
# Registration
# =============================================================================


def _listener_table():
    from cellar_kernel.models.audit_event import AuditEvent
    from cellar_kernel.models.composition import CompositionEntry
    from cellar_kernel.models.journal import OperationJournalEntry
    from cellar_kernel.models.packaging import FinishedGoodsLot, PackagingRun
    from cellar_kernel.models.reconciliation import (
        ReconciliationAdjustment,
        ReconciliationSnapshot,
    )

    table = []
    for model in (OperationJournalEntry, AuditEvent, PackagingRun, FinishedGoodsLot):
        table.append((model, "before_update", _check_append_only_update))
        table.append((model, "before_delete", _check_append_only_delete))
    table += [
        (CompositionEntry, "before_update", _check_composition_update),
        (CompositionEntry, "before_delete", _check_composition_delete),
        (ReconciliationSnapshot, "before_update", _check_snapshot_update),
        (ReconciliationSnapshot, "before_delete", _check_snapshot_delete),
        (ReconciliationAdjustment, "before_insert", _check_adjustment_insert),
        (ReconciliationAdjustment, "before_update", _check_adjustment_update),
        (ReconciliationAdjustment, "before_delete", _check_adjustment_delete),
    ]
    return table


def register_immutability_listeners() -> None:
    """
    Register all immutability enforcement event listeners.

    Call after all models are imported and before any database work.
    Listeners already registered are left alone.
    """
    for target, event_name, listener_fn in _listener_table():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that must violate the rules on purpose.
    """
    for target, event_name, listener_fn in _listener_table():
        _safe_remove_listener(target, event_name, listener_fn)
