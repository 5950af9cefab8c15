"""
AuditorService -- the hash-chained audit trail of ledger actions.

Responsibility:
    Appends one AuditEvent per ledger action (vessel registered, batch
    created, operation recorded, lot packaged, reconciliation finalized,
    ...) and links it to the previous event by hash.  Walks the chain to
    prove nothing was altered, and returns per-entity traces for
    ``scripts/trace_batch.py`` and the tests.

Architecture position:
    Kernel > Services -- every writing service holds one.

Invariants enforced:
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash),
      prev_hash = hash of the event with the next lower seq (GENESIS for
      the first).
    - The audit seq is allocated before the chain head is read; the locked
      counter row therefore also serializes appends to the chain.
    - Events are append-only (ORM listeners in cellar_kernel.db.immutability).

Failure modes:
    - AuditChainBrokenError from validate_chain() naming the first event
      whose payload digest, link hash or back-pointer does not check out.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from cellar_kernel.domain.clock import Clock, SystemClock
from cellar_kernel.exceptions import AuditChainBrokenError
from cellar_kernel.logging_config import get_logger
from cellar_kernel.models.audit_event import AuditAction, AuditEvent
from cellar_kernel.services.sequence_service import SequenceService
from cellar_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    seq: int
    action: AuditAction
    occurred_at: datetime
    actor_id: UUID
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @property
    def actions(self) -> tuple[AuditAction, ...]:
        return tuple(entry.action for entry in self.entries)


def _link_hash(event: AuditEvent) -> str:
    return hash_audit_event(
        entity_type=event.entity_type,
        entity_id=str(event.entity_id),
        action=AuditAction(event.action).value,
        payload_hash=event.payload_hash,
        prev_hash=event.prev_hash,
    )


def _broken(event: AuditEvent, expected: str | None, actual: str | None) -> AuditChainBrokenError:
    logger.critical(
        "audit_chain_broken",
        extra={"audit_event_id": str(event.id), "seq": event.seq},
    )
    return AuditChainBrokenError(str(event.id), expected or "GENESIS", actual or "GENESIS")


class AuditorService:
    """Flushes audit rows; never commits."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence = SequenceService(session)

    def _chain_head(self) -> str | None:
        return self._session.execute(
            select(AuditEvent.hash).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()

    def record(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: UUID,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        seq = self._sequence.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._chain_head()
        stored_payload = to_json_safe(payload or {})
        payload_hash = hash_payload(stored_payload)

        event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            payload=stored_payload,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            hash=hash_audit_event(entity_type, str(entity_id), action.value, payload_hash, prev_hash),
        )
        self._session.add(event)
        self._session.flush()

        logger.debug(
            "audit_event_created",
            extra={"entity_type": entity_type, "action": action.value, "seq": seq},
        )
        return event

    def validate_chain(self) -> bool:
        """
        Recompute every digest and back-pointer in seq order.

        Raises:
            AuditChainBrokenError: at the first event that does not verify.
        """
        events: Sequence[AuditEvent] = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        previous: str | None = None
        for event in events:
            if event.prev_hash != previous:
                raise _broken(event, previous, event.prev_hash)
            digest = hash_payload(event.payload or {})
            if digest != event.payload_hash:
                raise _broken(event, event.payload_hash, digest)
            expected = _link_hash(event)
            if expected != event.hash:
                raise _broken(event, expected, event.hash)
            previous = event.hash

        logger.info("audit_chain_valid", extra={"event_count": len(events)})
        return True

    def get_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        events = self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == entity_id)
            .order_by(AuditEvent.seq)
        ).scalars().all()
        return AuditTrace(
            entity_type=entity_type,
            entity_id=entity_id,
            entries=tuple(
                AuditTraceEntry(
                    seq=e.seq,
                    action=AuditAction(e.action),
                    occurred_at=e.occurred_at,
                    actor_id=e.actor_id,
                    payload=e.payload or {},
                    hash=e.hash,
                )
                for e in events
            ),
        )
