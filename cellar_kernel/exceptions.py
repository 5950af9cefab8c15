"""
Typed Exception Hierarchy for the Cellar Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every rejected ledger operation must tell the operator exactly which rule
was broken and with which numbers, so they can correct the input instead of
guessing. Callers (RPC handlers, UI actions) must be able to branch on the
failure class without parsing message strings.

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        ledger.draw_packaging(batch_id, vessel_id, Decimal("10"), Decimal("0.75"), 16)
    except NegativeLossError as e:
        api_response(code=e.code, volume_taken=e.volume_taken, packaged=e.packaged_volume)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    CellarKernelError (base)
    |
    +-- ValidationError                  (always raised before any write)
    |   +-- UnknownUnitError
    |   +-- InvalidQuantityError
    |   +-- InvalidAbvError
    |   +-- InvalidGravityError
    |   +-- NegativeLossError
    |   +-- InsufficientVolumeError
    |   +-- BatchNotFoundError
    |   +-- BatchNotActiveError
    |   +-- IllegalStatusTransitionError
    |   +-- VesselNotFoundError
    |   +-- VesselUnavailableError
    |   +-- VesselMismatchError
    |   +-- PressureRatingExceededError
    |   +-- InvalidOperationPayloadError
    |   +-- CompositionSourceError
    |   +-- CompositionEntryNotFoundError
    |   +-- DistillationReferenceError
    |   +-- SnapshotNotFoundError
    |   +-- DuplicateNameError
    |   +-- InvalidAdjustmentError
    |
    +-- CapacityExceededError
    |
    +-- ConcurrencyConflictError         (caller may retry with fresh state)
    |
    +-- ReconciliationError
    |   +-- ReconciliationVarianceError
    |   +-- ReconciliationPeriodError
    |   +-- StaleSnapshotError
    |
    +-- AuditIntegrityError              (always fatal, never caught-and-ignored)
        +-- ImmutabilityViolationError
        +-- SnapshotFinalizedError
        +-- AuditChainBrokenError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                          | When Raised
----------------|-------------------------------|---------------------------------------
Validation      | UNKNOWN_UNIT                  | Unit token not valid for dimension
                | INVALID_QUANTITY              | Non-positive / non-finite quantity
                | INVALID_ABV                   | ABV outside [0, 100]
                | INVALID_GRAVITY               | Gravity outside plausible range
                | NEGATIVE_LOSS                 | Packaged more than volume taken
                | INSUFFICIENT_VOLUME           | Operation would drive volume < 0
                | BATCH_NOT_FOUND               | Unknown batch id
                | BATCH_NOT_ACTIVE              | Batch is completed/discarded
                | ILLEGAL_STATUS_TRANSITION     | State machine violation
                | VESSEL_NOT_FOUND              | Unknown vessel id
                | VESSEL_UNAVAILABLE            | Vessel occupied / not usable
                | VESSEL_MISMATCH               | Batch not in the named vessel
                | PRESSURE_RATING_EXCEEDED      | Forced carbonation above rating
                | INVALID_OPERATION_PAYLOAD     | Payload does not match kind
                | COMPOSITION_SOURCE_INVALID    | Tagged source variant broken
                | COMPOSITION_ENTRY_NOT_FOUND   | Unknown / already-deleted entry
                | DISTILLATION_REFERENCE_INVALID| Inbound leg without outbound leg
                | SNAPSHOT_NOT_FOUND            | Unknown reconciliation snapshot
                | INVALID_ADJUSTMENT            | Adjustment sign/amount invalid
----------------|-------------------------------|---------------------------------------
Capacity        | CAPACITY_EXCEEDED             | Destination would overflow
Concurrency     | CONCURRENCY_CONFLICT          | Lost a lock / version race
----------------|-------------------------------|---------------------------------------
Reconciliation  | RECONCILIATION_VARIANCE       | Unexplained variance at finalize
                | RECONCILIATION_PERIOD_INVALID | Period overlaps / leaves a gap
                | STALE_SNAPSHOT                | Ledger changed since the run
----------------|-------------------------------|---------------------------------------
Audit           | IMMUTABILITY_VIOLATION        | Mutating journal/audit history
                | SNAPSHOT_FINALIZED            | Mutating a finalized snapshot
                | AUDIT_CHAIN_BROKEN            | Hash chain validation failed
"""

from decimal import Decimal


class CellarKernelError(Exception):
    """
    Base exception for all cellar kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "CELLAR_KERNEL_ERROR"


# =============================================================================
# Validation
# =============================================================================


class ValidationError(CellarKernelError):
    """Input violates a ledger invariant; nothing has been written."""

    code: str = "VALIDATION_ERROR"


class UnknownUnitError(ValidationError):
    code: str = "UNKNOWN_UNIT"

    def __init__(self, unit: str, dimension: str):
        self.unit = unit
        self.dimension = dimension
        super().__init__(f"Unknown {dimension} unit: {unit!r}")


class InvalidQuantityError(ValidationError):
    code: str = "INVALID_QUANTITY"

    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field}={value}: {reason}")


class InvalidAbvError(ValidationError):
    code: str = "INVALID_ABV"

    def __init__(self, abv: object):
        self.abv = abv
        super().__init__(f"ABV must be between 0 and 100, got {abv}")


class InvalidGravityError(ValidationError):
    code: str = "INVALID_GRAVITY"

    def __init__(self, field: str, value: Decimal, minimum: Decimal, maximum: Decimal):
        self.field = field
        self.value = value
        self.minimum = minimum
        self.maximum = maximum
        super().__init__(
            f"{field}={value} outside plausible range [{minimum}, {maximum}]"
        )


class NegativeLossError(ValidationError):
    """More finished product claimed than liquid taken from the batch."""

    code: str = "NEGATIVE_LOSS"

    def __init__(self, volume_taken: Decimal, packaged_volume: Decimal):
        self.volume_taken = volume_taken
        self.packaged_volume = packaged_volume
        super().__init__(
            f"loss would be negative: volumeTaken={volume_taken}L, "
            f"units×size={packaged_volume}L"
        )


class InsufficientVolumeError(ValidationError):
    code: str = "INSUFFICIENT_VOLUME"

    def __init__(self, batch_id: str, available: Decimal, requested: Decimal):
        self.batch_id = batch_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"volume would go negative for batch {batch_id}: "
            f"available={available}L, requested={requested}L"
        )


class BatchNotFoundError(ValidationError):
    code: str = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Batch not found: {batch_id}")


class BatchNotActiveError(ValidationError):
    code: str = "BATCH_NOT_ACTIVE"

    def __init__(self, batch_id: str, status: str):
        self.batch_id = batch_id
        self.status = status
        super().__init__(f"Batch {batch_id} is {status} and accepts no operations")


class IllegalStatusTransitionError(ValidationError):
    code: str = "ILLEGAL_STATUS_TRANSITION"

    def __init__(
        self, batch_id: str, from_status: str, to_status: str, reason: str | None = None
    ):
        self.batch_id = batch_id
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        message = f"Batch {batch_id} cannot move from {from_status} to {to_status}"
        super().__init__(f"{message}: {reason}" if reason else message)


class VesselNotFoundError(ValidationError):
    code: str = "VESSEL_NOT_FOUND"

    def __init__(self, vessel_id: str):
        self.vessel_id = vessel_id
        super().__init__(f"Vessel not found: {vessel_id}")


class VesselUnavailableError(ValidationError):
    code: str = "VESSEL_UNAVAILABLE"

    def __init__(self, vessel_id: str, status: str, reason: str):
        self.vessel_id = vessel_id
        self.status = status
        self.reason = reason
        super().__init__(f"Vessel {vessel_id} ({status}) unavailable: {reason}")


class VesselMismatchError(ValidationError):
    code: str = "VESSEL_MISMATCH"

    def __init__(self, batch_id: str, vessel_id: str, actual_vessel_id: str | None):
        self.batch_id = batch_id
        self.vessel_id = vessel_id
        self.actual_vessel_id = actual_vessel_id
        super().__init__(
            f"Batch {batch_id} is not in vessel {vessel_id} "
            f"(currently in {actual_vessel_id})"
        )


class PressureRatingExceededError(ValidationError):
    code: str = "PRESSURE_RATING_EXCEEDED"

    def __init__(self, vessel_id: str, pressure_psi: Decimal, rating_psi: Decimal | None):
        self.vessel_id = vessel_id
        self.pressure_psi = pressure_psi
        self.rating_psi = rating_psi
        super().__init__(
            f"Vessel {vessel_id} rated for {rating_psi} psi cannot hold "
            f"{pressure_psi} psi"
        )


class InvalidOperationPayloadError(ValidationError):
    code: str = "INVALID_OPERATION_PAYLOAD"

    def __init__(self, kind: str, reason: str):
        self.kind = kind
        self.reason = reason
        super().__init__(f"Invalid {kind} payload: {reason}")


class CompositionSourceError(ValidationError):
    code: str = "COMPOSITION_SOURCE_INVALID"

    def __init__(self, source_kind: str, reason: str):
        self.source_kind = source_kind
        self.reason = reason
        super().__init__(f"Invalid {source_kind} composition source: {reason}")


class CompositionEntryNotFoundError(ValidationError):
    code: str = "COMPOSITION_ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Composition entry not found or already deleted: {entry_id}")


class DistillationReferenceError(ValidationError):
    code: str = "DISTILLATION_REFERENCE_INVALID"

    def __init__(self, external_ref: str, reason: str):
        self.external_ref = external_ref
        self.reason = reason
        super().__init__(f"Distillation reference {external_ref!r}: {reason}")


class SnapshotNotFoundError(ValidationError):
    code: str = "SNAPSHOT_NOT_FOUND"

    def __init__(self, snapshot_id: str):
        self.snapshot_id = snapshot_id
        super().__init__(f"Reconciliation snapshot not found: {snapshot_id}")


class DuplicateNameError(ValidationError):
    code: str = "DUPLICATE_NAME"

    def __init__(self, entity_type: str, name: str):
        self.entity_type = entity_type
        self.name = name
        super().__init__(f"{entity_type} name already in use: {name!r}")


class InvalidAdjustmentError(ValidationError):
    code: str = "INVALID_ADJUSTMENT"

    def __init__(self, reason_code: str, amount: Decimal, reason: str):
        self.reason_code = reason_code
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid {reason_code} adjustment of {amount}: {reason}")


# =============================================================================
# Capacity / concurrency
# =============================================================================


class CapacityExceededError(CellarKernelError):
    """Inbound operation would push a vessel above its capacity."""

    code: str = "CAPACITY_EXCEEDED"

    def __init__(self, vessel_id: str, capacity: Decimal, resulting_volume: Decimal):
        self.vessel_id = vessel_id
        self.capacity = capacity
        self.resulting_volume = resulting_volume
        super().__init__(
            f"Vessel {vessel_id} capacity exceeded: capacity={capacity}L, "
            f"resulting volume={resulting_volume}L"
        )


class ConcurrencyConflictError(CellarKernelError):
    """Lost a lock or version race; retry against fresh state."""

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Concurrent modification of {entity_type} {entity_id}: {reason}"
        )


# =============================================================================
# Reconciliation
# =============================================================================


class ReconciliationError(CellarKernelError):
    code: str = "RECONCILIATION_ERROR"


class ReconciliationVarianceError(ReconciliationError):
    """Variance is not closed by recorded adjustments; finalization blocked."""

    code: str = "RECONCILIATION_VARIANCE"

    def __init__(
        self,
        snapshot_id: str,
        variance: Decimal,
        adjusted_total: Decimal,
        tolerance: Decimal,
    ):
        self.snapshot_id = snapshot_id
        self.variance = variance
        self.adjusted_total = adjusted_total
        self.tolerance = tolerance
        super().__init__(
            f"Unexplained variance on snapshot {snapshot_id}: variance={variance}, "
            f"adjustments={adjusted_total}, tolerance={tolerance}"
        )


class ReconciliationPeriodError(ReconciliationError):
    code: str = "RECONCILIATION_PERIOD_INVALID"

    def __init__(self, period_start: str, period_end: str, reason: str):
        self.period_start = period_start
        self.period_end = period_end
        self.reason = reason
        super().__init__(f"Invalid reconciliation period {period_start}..{period_end}: {reason}")


class StaleSnapshotError(ReconciliationError):
    code: str = "STALE_SNAPSHOT"

    def __init__(self, snapshot_id: str, stored_hash: str, current_hash: str):
        self.snapshot_id = snapshot_id
        self.stored_hash = stored_hash
        self.current_hash = current_hash
        super().__init__(
            f"Snapshot {snapshot_id} no longer matches the ledger; re-run reconciliation"
        )


# =============================================================================
# Audit integrity
# =============================================================================


class AuditIntegrityError(CellarKernelError):
    """Attempt to rewrite history. Always fatal."""

    code: str = "AUDIT_INTEGRITY"


class ImmutabilityViolationError(AuditIntegrityError):
    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")


class SnapshotFinalizedError(AuditIntegrityError):
    code: str = "SNAPSHOT_FINALIZED"

    def __init__(self, snapshot_id: str, action: str):
        self.snapshot_id = snapshot_id
        self.action = action
        super().__init__(
            f"Reconciliation snapshot {snapshot_id} is finalized; cannot {action}"
        )


class AuditChainBrokenError(AuditIntegrityError):
    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at event {audit_event_id}: "
            f"expected {expected_hash}, got {actual_hash}"
        )
