"""
Module: cellar_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors.
    Selectors are the query side of the kernel: structured read access to
    batches, the journal and ledger totals without mutation capability.
Architecture position: Kernel > Selectors.  May import from db/, models/
    and the frozen DTOs in domain/dtos.py.  MUST NOT import from services/
    or outer layers.

Invariants enforced:
    - Read-only access: selectors accept a Session from the caller but MUST
      NOT call session.add(), session.delete(), session.commit() or
      session.flush().
    - DTO return convention: selectors return frozen dataclasses, never raw
      ORM instances.
    - Session ownership: the caller owns the session and its transaction.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """
    Contract:
        Selectors accept a Session from the caller, perform read-only
        queries, and return DTOs or computed results.

    Non-goals:
        - BaseSelector defines no query methods of its own.
    """

    def __init__(self, session: Session):
        self.session = session
