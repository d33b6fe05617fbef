"""
Module: fleet_kernel.models.negotiation_history
Responsibility: ORM persistence for negotiation history entries -- the
    append-only, hash-chained ledger of Propose / Negotiate / Accept moves.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - UNIQUE(request_id, sequence_number): backstop against duplicate
      sequence allocation under concurrency.
    - Append-only: UPDATE and DELETE are rejected by the listeners in
      db/immutability.py.

Failure modes:
    - IntegrityError on a duplicate (request_id, sequence_number).
    - ImmutabilityViolationError on UPDATE/DELETE.

Audit relevance:
    ``hash`` covers the entry payload plus ``prev_hash``; see
    HistoryLedger.verify_chain.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fleet_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from fleet_kernel.domain.negotiation import NegotiationHistoryEntry


class NegotiationHistoryModel(Base):
    """Persistent negotiation history entry. Append-only."""

    __tablename__ = "negotiation_history"

    __table_args__ = (
        UniqueConstraint(
            "request_id", "sequence_number",
            name="uq_negotiation_history_request_seq",
        ),
        CheckConstraint(
            "kind IN ('Propose', 'Negotiate', 'Accept')",
            name="ck_negotiation_history_valid_kind",
        ),
        CheckConstraint(
            "sequence_number >= 1",
            name="ck_negotiation_history_seq_positive",
        ),
        Index("ix_negotiation_history_actor", "actor_id"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("maintenance_requests.id"),
        nullable=False,
    )
    sequence_number: Mapped[int] = mapped_column(nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    comments: Mapped[str] = mapped_column(Text, nullable=False, default="")
    recorded_at: Mapped[datetime] = mapped_column(nullable=False)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<NegotiationHistoryEntry {self.request_id}#{self.sequence_number} "
            f"{self.kind} {self.amount}>"
        )

    def to_dto(self) -> NegotiationHistoryEntry:
        """Convert ORM model to frozen domain DTO."""
        from fleet_kernel.domain.negotiation import (
            HistoryEntryKind,
            NegotiationHistoryEntry as EntryDTO,
        )

        return EntryDTO(
            request_id=self.request_id,
            sequence_number=self.sequence_number,
            kind=HistoryEntryKind(self.kind),
            actor_id=self.actor_id,
            amount=self.amount,
            comments=self.comments,
            recorded_at=self.recorded_at,
            payload_hash=self.payload_hash,
            prev_hash=self.prev_hash,
            hash=self.hash,
        )
