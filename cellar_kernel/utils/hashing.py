"""
Canonical JSON and SHA-256 digests for the audit chain and reconciliation.

A value hashes the same no matter how it was spelled on the way in:
keys are sorted, separators are fixed, and Decimals are normalized so
``Decimal("14.0")`` and ``Decimal("14")`` produce one digest.
"""

import hashlib
import json
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

GENESIS = "GENESIS"


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value.normalize())
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, date):  # datetime included
        return value.isoformat()
    raise TypeError(f"cannot hash value of type {type(value).__name__}")


def canonicalize_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_encode)


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def to_json_safe(data: Any) -> Any:
    """``data`` with Decimals, UUIDs, dates and enums turned into JSON strings."""
    return json.loads(canonicalize_json(data))


def hash_payload(payload: dict) -> str:
    return _sha256(canonicalize_json(payload))


def hash_audit_event(
    entity_type: str,
    entity_id: str,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """Link hash: the event's identity and payload digest chained to its predecessor."""
    return _sha256(
        "|".join((entity_type, str(entity_id), action, payload_hash, prev_hash or GENESIS))
    )


def hash_reconciliation_inputs(
    period_start: date,
    period_end: date,
    unit: str,
    figures: dict[str, Decimal | None],
    last_journal_seq: int | None,
) -> str:
    """
    Content hash of a reconciliation run.

    Covers the period, unit, every balance figure and the highest journal
    sequence inside the period.  A journal row recorded after the run moves
    ``last_journal_seq`` and therefore the hash.
    """
    return hash_payload(
        {
            "period": [period_start, period_end],
            "unit": unit,
            "figures": figures,
            "last_journal_seq": last_journal_seq,
        }
    )
