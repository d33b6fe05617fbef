"""
Negotiation domain types (``fleet_kernel.domain.negotiation``).

Responsibility
--------------
Pure value objects and the transition table for the bilateral cost
deliberation between the requester side and the assigned mechanic.
Also owns ``replay_deliberation``, which rebuilds deliberation state
from the ordered negotiation history.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* ``NEGOTIATION_TRANSITIONS`` lists every legal ``(status, action)``
  pair.  Anything not listed is rejected.  ``Agreed`` has no outgoing
  edges.
* Turn-taking: ``Negotiate`` and ``Accept`` require an actor different
  from the one who made the previous move.
* ``Accept`` freezes the negotiated cost if set, else the proposed cost.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Iterable
from uuid import UUID


# =========================================================================
# Deliberation lifecycle
# =========================================================================


class DeliberationStatus(str, Enum):
    """Cost deliberation lifecycle states."""

    MECHANICS_SELECTED = "MechanicsSelected"
    PROPOSED = "Proposed"
    NEGOTIATING = "Negotiating"
    AGREED = "Agreed"


class NegotiationAction(str, Enum):
    """Moves that drive the deliberation state machine."""

    SELECT_MECHANIC = "SelectMechanic"
    PROPOSE = "Propose"
    NEGOTIATE = "Negotiate"
    ACCEPT = "Accept"


class HistoryEntryKind(str, Enum):
    """Kinds of negotiation history entries.  Mechanic selection is not a move."""

    PROPOSE = "Propose"
    NEGOTIATE = "Negotiate"
    ACCEPT = "Accept"


# ``None`` stands for "no deliberation exists yet".
NEGOTIATION_TRANSITIONS: dict[
    tuple[DeliberationStatus | None, NegotiationAction], DeliberationStatus
] = {
    (None, NegotiationAction.SELECT_MECHANIC): DeliberationStatus.MECHANICS_SELECTED,
    (
        DeliberationStatus.MECHANICS_SELECTED,
        NegotiationAction.SELECT_MECHANIC,
    ): DeliberationStatus.MECHANICS_SELECTED,
    (DeliberationStatus.MECHANICS_SELECTED, NegotiationAction.PROPOSE): DeliberationStatus.PROPOSED,
    (DeliberationStatus.PROPOSED, NegotiationAction.NEGOTIATE): DeliberationStatus.NEGOTIATING,
    (DeliberationStatus.NEGOTIATING, NegotiationAction.NEGOTIATE): DeliberationStatus.NEGOTIATING,
    (DeliberationStatus.PROPOSED, NegotiationAction.ACCEPT): DeliberationStatus.AGREED,
    (DeliberationStatus.NEGOTIATING, NegotiationAction.ACCEPT): DeliberationStatus.AGREED,
}

TERMINAL_DELIBERATION_STATUSES: frozenset[DeliberationStatus] = frozenset({
    DeliberationStatus.AGREED,
})

# Moves that must come from the counterparty of the previous move
TURN_TAKING_ACTIONS: frozenset[NegotiationAction] = frozenset({
    NegotiationAction.NEGOTIATE,
    NegotiationAction.ACCEPT,
})


def next_status(
    current: DeliberationStatus | None,
    action: NegotiationAction,
) -> DeliberationStatus | None:
    """Return the status ``action`` leads to, or None if it is not legal."""
    return NEGOTIATION_TRANSITIONS.get((current, action))


def is_out_of_turn(
    action: NegotiationAction,
    actor_id: str,
    last_actor_id: str | None,
) -> bool:
    """True when ``actor_id`` made the previous move and must wait."""
    return action in TURN_TAKING_ACTIONS and last_actor_id == actor_id


# =========================================================================
# Records
# =========================================================================


@dataclass(frozen=True)
class CostDeliberation:
    """Immutable snapshot of one request's cost deliberation."""

    request_id: UUID
    status: DeliberationStatus
    current_round: int = 0
    proposed_cost: Decimal | None = None
    negotiated_cost: Decimal | None = None
    agreed_cost: Decimal | None = None
    last_actor_id: str | None = None
    selected_by_id: str | None = None
    selected_at: datetime | None = None
    agreed_at: datetime | None = None

    @property
    def effective_cost(self) -> Decimal | None:
        """The offer currently on the table."""
        if self.negotiated_cost is not None:
            return self.negotiated_cost
        return self.proposed_cost

    @property
    def is_agreed(self) -> bool:
        return self.status == DeliberationStatus.AGREED


@dataclass(frozen=True)
class NegotiationHistoryEntry:
    """One immutable move in the negotiation ledger."""

    request_id: UUID
    sequence_number: int
    kind: HistoryEntryKind
    actor_id: str
    amount: Decimal | None
    comments: str
    recorded_at: datetime
    payload_hash: str
    prev_hash: str | None
    hash: str


# =========================================================================
# Replay
# =========================================================================


class ReplayError(ValueError):
    """The history does not describe a legal sequence of moves."""

    def __init__(self, sequence_number: int, reason: str):
        self.sequence_number = sequence_number
        self.reason = reason
        super().__init__(f"History entry #{sequence_number}: {reason}")


@dataclass(frozen=True)
class ReplayedDeliberation:
    """Deliberation state rebuilt from the ledger alone."""

    status: DeliberationStatus
    current_round: int
    proposed_cost: Decimal | None
    negotiated_cost: Decimal | None
    agreed_cost: Decimal | None
    last_actor_id: str | None


def replay_deliberation(
    entries: Iterable[NegotiationHistoryEntry],
) -> ReplayedDeliberation:
    """
    Rebuild deliberation state by folding the ordered history.

    Starts from ``MechanicsSelected`` at round 0 and applies each entry
    through ``NEGOTIATION_TRANSITIONS`` and the turn-taking rule.

    Raises:
        ReplayError: On an illegal move, an out-of-turn move, a gap in
            sequence numbers, or an Accept whose amount is not the frozen
            cost.
    """
    status = DeliberationStatus.MECHANICS_SELECTED
    current_round = 0
    proposed: Decimal | None = None
    negotiated: Decimal | None = None
    agreed: Decimal | None = None
    last_actor: str | None = None
    expected_seq = 1

    for entry in entries:
        if entry.sequence_number != expected_seq:
            raise ReplayError(
                entry.sequence_number,
                f"expected sequence number {expected_seq}",
            )
        expected_seq += 1

        action = NegotiationAction(entry.kind.value)
        target = next_status(status, action)
        if target is None:
            raise ReplayError(
                entry.sequence_number,
                f"{action.value} is not legal from {status.value}",
            )
        if is_out_of_turn(action, entry.actor_id, last_actor):
            raise ReplayError(
                entry.sequence_number,
                f"actor {entry.actor_id} moved twice in a row",
            )

        if action == NegotiationAction.PROPOSE:
            proposed = entry.amount
            current_round = 1
        elif action == NegotiationAction.NEGOTIATE:
            negotiated = entry.amount
            current_round += 1
        else:
            frozen = negotiated if negotiated is not None else proposed
            if entry.amount is None or frozen is None or entry.amount != frozen:
                raise ReplayError(
                    entry.sequence_number,
                    f"accept amount {entry.amount} does not match offer {frozen}",
                )
            agreed = frozen

        status = target
        last_actor = entry.actor_id

    return ReplayedDeliberation(
        status=status,
        current_round=current_round,
        proposed_cost=proposed,
        negotiated_cost=negotiated,
        agreed_cost=agreed,
        last_actor_id=last_actor,
    )
