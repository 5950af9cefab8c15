"""
Module: cellar_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit hash chain.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Audit records are append-only; no UPDATE or DELETE (ORM listeners).
    - Hash chain integrity: hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash).  Validated by AuditorService.
    - seq is monotonically increasing, allocated by SequenceService.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - AuditChainBrokenError when chain validation detects a hash mismatch.

Audit relevance:
    AuditEvent IS the audit trail.  Batch creation, status changes,
    composition changes, journaled operations, packaging, vessel status
    changes and every reconciliation step produce an AuditEvent.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from cellar_kernel.db.base import Base, UUIDString
from cellar_kernel.db.types import enum_column


class AuditAction(str, Enum):
    """Types of auditable actions."""

    BATCH_CREATED = "batch_created"
    BATCH_STATUS_CHANGED = "batch_status_changed"
    BATCH_MEASURED = "batch_measured"
    BATCH_ARCHIVED = "batch_archived"

    COMPOSITION_ADDED = "composition_added"
    COMPOSITION_REMOVED = "composition_removed"

    OPERATION_RECORDED = "operation_recorded"
    PACKAGING_DRAWN = "packaging_drawn"

    VESSEL_REGISTERED = "vessel_registered"
    VESSEL_STATUS_CHANGED = "vessel_status_changed"

    RECONCILIATION_RUN = "reconciliation_run"
    ADJUSTMENT_RECORDED = "adjustment_recorded"
    RECONCILIATION_FINALIZED = "reconciliation_finalized"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Guarantees:
        - seq is globally unique and monotonically increasing.
        - prev_hash is None only for the genesis event.

    Non-goals:
        - This model does NOT check hash correctness at INSERT time;
          that is the responsibility of AuditorService.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_seq", "seq"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)

    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    action: Mapped[AuditAction] = mapped_column(enum_column(AuditAction, length=50), nullable=False)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action.value} on {self.entity_type}:{self.entity_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None
