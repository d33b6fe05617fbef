"""
Module: fleet_kernel.selectors.base
Responsibility: Base class for read-only query selectors.  Selectors form the
    "Q" side of the CQRS-lite pattern: structured read access to workflow
    state without mutation capability.
Architecture position: Kernel > Selectors.  May import from db/, domain/
    and models/.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only access: selectors MUST NOT call session.add(), delete(),
      commit(), or flush().
    - DTO return convention: selectors return frozen dataclasses, NOT raw
      ORM model instances.
    - Session ownership: the caller owns the session and its transaction
      scope, so a snapshot built inside a write transaction sees that
      transaction's own changes.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """Holds the caller's session for subclass queries."""

    def __init__(self, session: Session):
        self.session = session
