"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Common constructor and session-handling contract for every write
    service in the kernel.  Services use ``session.flush()`` -- never
    ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    Transaction boundaries: services flush within the caller's transaction
    and never commit or roll back themselves.  The caller (CellarLedger or
    a test) owns commit/rollback, so one ledger operation commits together
    with all its journal rows, composition rows and audit events.
"""

from abc import ABC
from uuid import UUID

from sqlalchemy.orm import Session

from cellar_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for kernel write services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``.

    Non-goals:
        - Does NOT provide query-only (read) methods -- those belong in
          ``cellar_kernel/selectors/``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()


def as_uuid(value: UUID | str) -> UUID:
    """Accept ids as UUID or string at service boundaries."""
    return value if isinstance(value, UUID) else UUID(str(value))
