"""
Module: cellar_kernel.selectors.journal_selector
Responsibility: Read-only access to the operation journal, as frozen
    JournalEntryRecord DTOs ordered by seq.
Architecture position: Kernel > Selectors.

Failure modes:
    - Returns an empty tuple when nothing matches; never raises on absence.

Audit relevance:
    The journal is the authoritative history; batch replay and
    reconciliation totals are both derived from these rows.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import or_, select

from cellar_kernel.domain.dtos import JournalEntryRecord
from cellar_kernel.models.journal import OperationJournalEntry
from cellar_kernel.selectors.base import BaseSelector


class JournalSelector(BaseSelector):
    def history(self, batch_id: UUID) -> tuple[JournalEntryRecord, ...]:
        """Every journal row where the batch is source or destination."""
        rows = self.session.execute(
            select(OperationJournalEntry)
            .where(
                or_(
                    OperationJournalEntry.source_batch_id == batch_id,
                    OperationJournalEntry.dest_batch_id == batch_id,
                )
            )
            .order_by(OperationJournalEntry.seq)
        ).scalars().all()
        return tuple(JournalEntryRecord.from_model(row) for row in rows)

    def entries_between(
        self, start: datetime, end: datetime
    ) -> tuple[JournalEntryRecord, ...]:
        """Rows with ``start <= occurred_at < end``."""
        rows = self.session.execute(
            select(OperationJournalEntry)
            .where(
                OperationJournalEntry.occurred_at >= start,
                OperationJournalEntry.occurred_at < end,
            )
            .order_by(OperationJournalEntry.seq)
        ).scalars().all()
        return tuple(JournalEntryRecord.from_model(row) for row in rows)

    def get(self, entry_id: UUID) -> JournalEntryRecord | None:
        row = self.session.get(OperationJournalEntry, entry_id)
        return JournalEntryRecord.from_model(row) if row is not None else None

    def last_seq(self) -> int | None:
        return self.session.execute(
            select(OperationJournalEntry.seq).order_by(OperationJournalEntry.seq.desc()).limit(1)
        ).scalar_one_or_none()
