"""
Logistics domain types (``fleet_kernel.domain.logistics``).

Responsibility
--------------
Pure value objects for the physical-handling lifecycle of a maintenance
request: the plan (pickup/return arrangements) and the five one-time
milestones that follow it.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Stage order is linear:
  ``None -> Planned -> Received -> PickedUp -> WorkStarted ->
  ReadyForReturn -> Returned``.
* Each milestone fires at most once, only after its predecessor, and
  never with a timestamp earlier than the predecessor's.
* The plan is revisable until ``Received`` fires.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID


class LogisticsStage(str, Enum):
    """Physical-handling stages, in order."""

    NONE = "None"
    PLANNED = "Planned"
    RECEIVED = "Received"
    PICKED_UP = "PickedUp"
    WORK_STARTED = "WorkStarted"
    READY_FOR_RETURN = "ReadyForReturn"
    RETURNED = "Returned"


STAGE_ORDER: tuple[LogisticsStage, ...] = tuple(LogisticsStage)

# The five milestones, in firing order
LOGISTICS_EVENTS: tuple[LogisticsStage, ...] = STAGE_ORDER[2:]

# Trail column recording each milestone
EVENT_TIMESTAMP_FIELDS: dict[LogisticsStage, str] = {
    LogisticsStage.RECEIVED: "received_at",
    LogisticsStage.PICKED_UP: "picked_up_at",
    LogisticsStage.WORK_STARTED: "work_started_at",
    LogisticsStage.READY_FOR_RETURN: "ready_for_return_at",
    LogisticsStage.RETURNED: "returned_at",
}

# Milestones that may still be recorded after the request is Completed
RETURN_SIDE_EVENTS: frozenset[LogisticsStage] = frozenset({
    LogisticsStage.READY_FOR_RETURN,
    LogisticsStage.RETURNED,
})


def predecessor(stage: LogisticsStage) -> LogisticsStage:
    """Stage that must have been reached before ``stage`` can fire."""
    index = STAGE_ORDER.index(stage)
    if index == 0:
        raise ValueError("NONE has no predecessor")
    return STAGE_ORDER[index - 1]


@dataclass(frozen=True)
class TimeWindow:
    """Inclusive window during which a pickup or return should happen."""

    start: datetime
    end: datetime

    @property
    def is_ordered(self) -> bool:
        return self.start <= self.end


@dataclass(frozen=True)
class LogisticsPlanDetails:
    """What an administrator submits when planning or revising logistics."""

    pickup_required: bool = False
    pickup_address: str | None = None
    pickup_window: TimeWindow | None = None
    return_required: bool = False
    return_address: str | None = None
    return_window: TimeWindow | None = None
    contact_name: str | None = None
    contact_phone: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class LogisticsPlan:
    """Immutable snapshot of the current plan revision."""

    request_id: UUID
    details: LogisticsPlanDetails
    revision: int
    planned_by_id: str
    planned_at: datetime


@dataclass(frozen=True)
class LogisticsEventTrail:
    """The five milestone timestamps; None until fired."""

    request_id: UUID
    received_at: datetime | None = None
    picked_up_at: datetime | None = None
    work_started_at: datetime | None = None
    ready_for_return_at: datetime | None = None
    returned_at: datetime | None = None

    def timestamp_for(self, stage: LogisticsStage) -> datetime | None:
        return getattr(self, EVENT_TIMESTAMP_FIELDS[stage])


@dataclass(frozen=True)
class LogisticsEvent:
    """Append-only record of one fired milestone."""

    request_id: UUID
    sequence: int
    stage: LogisticsStage
    actor_id: str
    occurred_at: datetime
    note: str | None = None


def current_stage(
    has_plan: bool,
    trail: LogisticsEventTrail | None,
) -> LogisticsStage:
    """Latest stage reached, derived from the plan and trail."""
    stage = LogisticsStage.PLANNED if has_plan else LogisticsStage.NONE
    if trail is None:
        return stage
    for event in LOGISTICS_EVENTS:
        if trail.timestamp_for(event) is None:
            break
        stage = event
    return stage


def next_event(stage: LogisticsStage) -> LogisticsStage | None:
    """The milestone that may fire after ``stage``, if any."""
    if stage == LogisticsStage.NONE or stage == LogisticsStage.RETURNED:
        return None
    return STAGE_ORDER[STAGE_ORDER.index(stage) + 1]
