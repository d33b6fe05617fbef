"""
HistoryLedger -- append-only, hash-chained negotiation history per request.

Responsibility:
    Records every Propose / Negotiate / Accept move as an immutable entry,
    assigns its sequence number, links it to its predecessor by hash, and
    serves the ordered history back for the UI timeline and for state
    reconstruction.

Architecture position:
    Kernel > Services -- imperative shell.  Called by
    NegotiationStateMachine; read by WorkflowSelector.

Invariants enforced:
    - Sequence numbers come from SequenceService's locked counter row
      ``negotiation_history:<request_id>`` -- never client-supplied, never
      MAX+1.  They start at 1 and have no gaps.
    - ``append`` is the only mutator.  Entries are never edited or removed
      (db/immutability.py rejects UPDATE/DELETE).
    - Each entry's ``hash`` covers its payload and the previous entry's
      hash.

Failure modes:
    - LedgerChainBrokenError from ``verify_chain`` (or from ``append`` when
      the predecessor entry is missing).
    - IntegrityError on a duplicate (request_id, sequence_number); the
      coordinator reports it as a retryable conflict.

Audit relevance:
    The ledger is the source of truth for who offered what, and when.
"""

from datetime import timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from fleet_kernel.domain.clock import Clock, SystemClock
from fleet_kernel.domain.negotiation import HistoryEntryKind, NegotiationHistoryEntry
from fleet_kernel.exceptions import LedgerChainBrokenError
from fleet_kernel.logging_config import get_logger
from fleet_kernel.models.negotiation_history import NegotiationHistoryModel
from fleet_kernel.services.sequence_service import SequenceService
from fleet_kernel.utils.hashing import hash_history_entry, hash_payload

logger = get_logger("services.history_ledger")


def entry_payload(
    request_id: UUID,
    sequence_number: int,
    kind: str,
    actor_id: str,
    amount: Decimal | None,
    comments: str,
    recorded_at,
) -> dict:
    """Canonical payload hashed into ``payload_hash``."""
    return {
        "request_id": str(request_id),
        "sequence_number": sequence_number,
        "kind": kind,
        "actor_id": actor_id,
        "amount": amount,
        "comments": comments,
        "recorded_at": recorded_at.astimezone(timezone.utc),
    }


class HistoryLedger:
    """
    Append-only negotiation ledger.

    Contract:
        Flushes but never commits; the caller's transaction decides whether
        an appended entry survives.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        sequence_service: SequenceService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequences = sequence_service or SequenceService(session)

    def append(
        self,
        request_id: UUID,
        kind: HistoryEntryKind,
        actor_id: str,
        amount: Decimal | None,
        comments: str = "",
    ) -> NegotiationHistoryEntry:
        """
        Append one entry to the request's ledger.

        Postconditions:
            - The entry carries the next sequence number for the request.
            - ``prev_hash`` equals the previous entry's ``hash`` (None for
              the first entry).
        """
        sequence_number = self._sequences.next_value(
            SequenceService.history_sequence(request_id)
        )

        prev_hash = None
        if sequence_number > 1:
            previous = self._entry_at(request_id, sequence_number - 1)
            if previous is None:
                logger.critical(
                    "history_chain_gap",
                    extra={"request_id": str(request_id), "sequence_number": sequence_number},
                )
                raise LedgerChainBrokenError(
                    str(request_id), sequence_number - 1, "predecessor entry is missing",
                )
            prev_hash = previous.hash

        recorded_at = self._clock.now_utc()
        comments = comments or ""
        payload_hash = hash_payload(entry_payload(
            request_id, sequence_number, kind.value, actor_id, amount, comments, recorded_at,
        ))
        entry_hash = hash_history_entry(
            request_id, sequence_number, kind.value, payload_hash, prev_hash,
        )

        model = NegotiationHistoryModel(
            request_id=request_id,
            sequence_number=sequence_number,
            kind=kind.value,
            actor_id=actor_id,
            amount=amount,
            comments=comments,
            recorded_at=recorded_at,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            hash=entry_hash,
        )
        self._session.add(model)
        self._session.flush()

        logger.info(
            "history_entry_appended",
            extra={
                "request_id": str(request_id),
                "sequence_number": sequence_number,
                "kind": kind.value,
                "actor_id": actor_id,
                "amount": amount,
            },
        )
        return model.to_dto()

    def history(self, request_id: UUID) -> tuple[NegotiationHistoryEntry, ...]:
        """Entries for the request, ascending by sequence number."""
        return tuple(m.to_dto() for m in self._models(request_id))

    def verify_chain(self, request_id: UUID) -> bool:
        """
        Recompute every hash and check sequence and linkage.

        Returns:
            True when the chain is intact (an empty ledger is intact).

        Raises:
            LedgerChainBrokenError: At the first entry that does not verify.
        """
        models = self._models(request_id)
        prev_hash = None

        for expected_seq, model in enumerate(models, start=1):
            reason = None
            if model.sequence_number != expected_seq:
                reason = f"expected sequence number {expected_seq}"
            elif model.prev_hash != prev_hash:
                reason = "prev_hash does not match predecessor"
            else:
                payload_hash = hash_payload(entry_payload(
                    model.request_id,
                    model.sequence_number,
                    model.kind,
                    model.actor_id,
                    model.amount,
                    model.comments,
                    model.recorded_at,
                ))
                if payload_hash != model.payload_hash:
                    reason = "payload does not match payload_hash"
                elif model.hash != hash_history_entry(
                    model.request_id, model.sequence_number, model.kind,
                    payload_hash, model.prev_hash,
                ):
                    reason = "hash does not match"

            if reason is not None:
                logger.critical(
                    "history_chain_broken",
                    extra={
                        "request_id": str(request_id),
                        "sequence_number": model.sequence_number,
                        "reason": reason,
                    },
                )
                raise LedgerChainBrokenError(str(request_id), model.sequence_number, reason)
            prev_hash = model.hash

        logger.info(
            "history_chain_valid",
            extra={"request_id": str(request_id), "entry_count": len(models)},
        )
        return True

    def _models(self, request_id: UUID) -> list[NegotiationHistoryModel]:
        return list(self._session.execute(
            select(NegotiationHistoryModel)
            .where(NegotiationHistoryModel.request_id == request_id)
            .order_by(NegotiationHistoryModel.sequence_number)
        ).scalars().all())

    def _entry_at(self, request_id: UUID, sequence_number: int) -> NegotiationHistoryModel | None:
        return self._session.execute(
            select(NegotiationHistoryModel).where(
                NegotiationHistoryModel.request_id == request_id,
                NegotiationHistoryModel.sequence_number == sequence_number,
            )
        ).scalar_one_or_none()
