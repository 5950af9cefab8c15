"""
Declarative bases for the cellar ledger's ORM models.

Every table gets a uuid4 primary key stored as a 36-character string, so
the same schema runs on SQLite and PostgreSQL.  Mutable records
(vessels, batches, snapshots, ...) extend TrackedBase and carry who
created and last touched them; append-only records (audit events, counters)
extend Base directly.

Nothing here imports models, services or selectors.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, ClassVar
from uuid import UUID, uuid4

from sqlalchemy import JSON, BigInteger, Date, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID <-> str(36) on the way in and out of the database."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else UUID(value)


class Base(DeclarativeBase):
    # Decimal columns default to the volume precision; ABV and gravity
    # columns override it through cellar_kernel.db.types.
    type_annotation_map: ClassVar[dict] = {
        UUID: UUIDString(),
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        date: Date(),
        int: BigInteger,
        dict[str, Any]: JSON(),
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """
    Adds row bookkeeping: ``created_at``/``created_by_id`` are written once,
    ``updated_at``/``updated_by_id`` follow every change.

    The ``updated_*`` columns are bookkeeping rather than ledger content, so
    the immutability listeners let them change on otherwise frozen rows.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    created_by_id: Mapped[UUID] = mapped_column(UUIDString())
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), onupdate=func.now())
    updated_by_id: Mapped[UUID | None] = mapped_column(UUIDString())
