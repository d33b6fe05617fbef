"""
SequenceService -- per-request position numbers from locked counter rows.

Responsibility:
    Hands out 1, 2, 3, ... for each named counter.  Every request has one
    counter each for its negotiation history, its logistics events and its
    progress updates.

Architecture position:
    Kernel > Services.  Used by HistoryLedger and LogisticsSequencer.

Invariants enforced:
    - Positions are never derived from MAX(sequence_number) + 1; the
      counter row, read under SELECT ... FOR UPDATE, is authoritative.
    - Allocation rides on the caller's transaction, so a rollback
      releases the number and no gaps appear in committed data.

Failure modes:
    - IntegrityError when two sessions create the same counter at once;
      the loser rolls back its savepoint and locks the winner's row.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fleet_kernel.logging_config import get_logger
from fleet_kernel.models.sequence_counter import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    """Counter allocation inside the caller's transaction; never commits."""

    def __init__(self, session: Session):
        self._session = session

    @staticmethod
    def history_sequence(request_id: UUID | str) -> str:
        return f"negotiation_history:{request_id}"

    @staticmethod
    def logistics_sequence(request_id: UUID | str) -> str:
        return f"logistics_event:{request_id}"

    @staticmethod
    def progress_sequence(request_id: UUID | str) -> str:
        return f"progress_update:{request_id}"

    def next_value(self, sequence_name: str) -> int:
        """Lock the named counter, bump it and return the new value."""
        counter = self._locked(sequence_name)
        if counter is None:
            counter = self._create(sequence_name)
            if counter is None:
                value = 1
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": value},
                )
                return value

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Last value handed out, or None if the counter was never used."""
        return self._session.execute(
            select(SequenceCounter.current_value)
            .where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()

    def _locked(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _create(self, sequence_name: str) -> SequenceCounter | None:
        """
        Insert a counter already at 1.

        Returns None when the insert won; otherwise the concurrently
        created row, now locked, for the caller to increment.
        """
        savepoint = self._session.begin_nested()
        try:
            self._session.add(SequenceCounter(name=sequence_name, current_value=1))
            self._session.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("sequence_counter_race_retry", extra={"sequence_name": sequence_name})
            counter = self._locked(sequence_name)
            if counter is None:
                raise
            return counter
        savepoint.commit()
        return None
