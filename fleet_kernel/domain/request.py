"""
Maintenance request domain types (``fleet_kernel.domain.request``).

Responsibility
--------------
The request lifecycle, the role policy deciding who counts as the
requester side or an administrator, the composite ``WorkflowSnapshot``
handed back to callers, and ``allowed_actions`` -- the pure function
that tells a UI which operations an actor may take right now.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  May import
from the other domain modules only.

Invariants enforced
-------------------
* ``REQUEST_TRANSITIONS`` lists every legal request status change.
  ``Completed`` and ``Cancelled`` are terminal.
* ``allowed_actions`` applies the same status, identity and turn checks
  as the services, so a listed action passes every precondition that
  can be judged from the snapshot alone.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Mapping
from uuid import UUID

from fleet_kernel.domain.collaborators import VehicleInfo
from fleet_kernel.domain.invoice import Invoice, InvoiceWarning
from fleet_kernel.domain.logistics import (
    RETURN_SIDE_EVENTS,
    LogisticsEvent,
    LogisticsEventTrail,
    LogisticsPlan,
    LogisticsStage,
    next_event,
)
from fleet_kernel.domain.negotiation import (
    CostDeliberation,
    DeliberationStatus,
    NegotiationHistoryEntry,
)


# =========================================================================
# Request lifecycle
# =========================================================================


class RequestStatus(str, Enum):
    """Overall maintenance request status."""

    SCHEDULED = "Scheduled"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


REQUEST_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.SCHEDULED: frozenset({
        RequestStatus.IN_PROGRESS,
        RequestStatus.COMPLETED,
        RequestStatus.CANCELLED,
    }),
    RequestStatus.IN_PROGRESS: frozenset({
        RequestStatus.COMPLETED,
        RequestStatus.CANCELLED,
    }),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}

CLOSED_REQUEST_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.COMPLETED,
    RequestStatus.CANCELLED,
})


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return target in REQUEST_TRANSITIONS.get(current, frozenset())


class WorkflowAction(str, Enum):
    """Operations an actor can take on a request."""

    SELECT_MECHANIC = "select_mechanic"
    PROPOSE = "propose"
    NEGOTIATE = "negotiate"
    ACCEPT = "accept"
    PLAN_LOGISTICS = "plan_logistics"
    MARK_RECEIVED = "mark_received"
    MARK_PICKED_UP = "mark_picked_up"
    MARK_WORK_STARTED = "mark_work_started"
    MARK_READY_FOR_RETURN = "mark_ready_for_return"
    MARK_RETURNED = "mark_returned"
    POST_PROGRESS_UPDATE = "post_progress_update"
    COMPLETE_WITH_INVOICE = "complete_with_invoice"
    CANCEL_REQUEST = "cancel_request"


EVENT_ACTIONS: dict[LogisticsStage, WorkflowAction] = {
    LogisticsStage.RECEIVED: WorkflowAction.MARK_RECEIVED,
    LogisticsStage.PICKED_UP: WorkflowAction.MARK_PICKED_UP,
    LogisticsStage.WORK_STARTED: WorkflowAction.MARK_WORK_STARTED,
    LogisticsStage.READY_FOR_RETURN: WorkflowAction.MARK_READY_FOR_RETURN,
    LogisticsStage.RETURNED: WorkflowAction.MARK_RETURNED,
}


# =========================================================================
# Role policy
# =========================================================================


@dataclass(frozen=True)
class RolePolicy:
    """Which externally-resolved roles carry workflow authority."""

    admin_roles: frozenset[str] = frozenset({"Admin"})
    reviewer_roles: frozenset[str] = frozenset({"Manager", "HR", "Finance"})

    def is_admin(self, roles: tuple[str, ...] | frozenset[str]) -> bool:
        return bool(self.admin_roles.intersection(roles))

    def is_privileged(self, roles: tuple[str, ...] | frozenset[str]) -> bool:
        """Reviewer or administrator."""
        return bool(
            self.reviewer_roles.intersection(roles)
            or self.admin_roles.intersection(roles)
        )

    def is_requester_side(
        self,
        actor_id: str,
        requester_id: str,
        roles: tuple[str, ...] | frozenset[str],
    ) -> bool:
        """Requester, or anyone reviewing/administering on their behalf."""
        return actor_id == requester_id or self.is_privileged(roles)


# =========================================================================
# Records
# =========================================================================


@dataclass(frozen=True)
class MaintenanceRequest:
    """Immutable snapshot of a maintenance request row."""

    request_id: UUID
    vehicle_id: str
    requester_id: str
    status: RequestStatus
    repair_type: str
    version: int
    created_at: datetime
    last_transition_at: datetime
    assigned_mechanic_id: str | None = None
    reason: str | None = None
    comments: str | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_REQUEST_STATUSES


@dataclass(frozen=True)
class ProgressUpdate:
    """Mechanic progress note; append-only."""

    request_id: UUID
    sequence: int
    actor_id: str
    comment: str
    posted_at: datetime
    expected_completion_date: date | None = None


@dataclass(frozen=True)
class WorkflowSnapshot:
    """
    Read-only composite view of one request.

    Everything a UI needs to render the request and decide which buttons
    to show.  ``allowed_actions`` is computed for the actor the snapshot
    was built for (empty when built anonymously).
    """

    request: MaintenanceRequest
    deliberation: CostDeliberation | None = None
    history: tuple[NegotiationHistoryEntry, ...] = ()
    logistics_stage: LogisticsStage = LogisticsStage.NONE
    logistics_plan: LogisticsPlan | None = None
    logistics_trail: LogisticsEventTrail | None = None
    logistics_events: tuple[LogisticsEvent, ...] = ()
    invoice: Invoice | None = None
    progress_updates: tuple[ProgressUpdate, ...] = ()
    vehicle: VehicleInfo | None = None
    display_names: Mapping[str, str] = field(default_factory=dict)
    allowed_actions: tuple[WorkflowAction, ...] = ()

    @property
    def version(self) -> int:
        return self.request.version


@dataclass(frozen=True)
class WorkflowResult:
    """
    Typed outcome of a coordinator operation.

    Errors are carried as data; the coordinator never raises kernel
    errors to its caller.
    """

    success: bool
    snapshot: WorkflowSnapshot | None = None
    error_code: str | None = None
    error: str | None = None
    retryable: bool = False
    warnings: tuple[InvoiceWarning, ...] = ()

    @classmethod
    def ok(
        cls,
        snapshot: WorkflowSnapshot,
        warnings: tuple[InvoiceWarning, ...] = (),
    ) -> WorkflowResult:
        return cls(success=True, snapshot=snapshot, warnings=warnings)

    @classmethod
    def failed(cls, code: str, message: str, retryable: bool = False) -> WorkflowResult:
        return cls(success=False, error_code=code, error=message, retryable=retryable)


# =========================================================================
# Allowed actions
# =========================================================================


def allowed_actions(
    snapshot: WorkflowSnapshot,
    actor_id: str,
    roles: tuple[str, ...] | frozenset[str],
    policy: RolePolicy | None = None,
) -> tuple[WorkflowAction, ...]:
    """
    List the operations ``actor_id`` may take given ``snapshot``.

    Mirrors the original dashboard's propose/negotiate/accept button
    flags, extended to logistics, invoicing and cancellation.
    """
    policy = policy or RolePolicy()
    request = snapshot.request
    deliberation = snapshot.deliberation
    closed = request.is_closed
    is_mechanic = (
        request.assigned_mechanic_id is not None
        and actor_id == request.assigned_mechanic_id
    )
    requester_side = policy.is_requester_side(actor_id, request.requester_id, roles)
    is_admin = policy.is_admin(roles)

    actions: set[WorkflowAction] = set()

    if not closed:
        status = deliberation.status if deliberation else None

        if requester_side and status in (None, DeliberationStatus.MECHANICS_SELECTED):
            actions.add(WorkflowAction.SELECT_MECHANIC)

        if is_mechanic and status == DeliberationStatus.MECHANICS_SELECTED:
            actions.add(WorkflowAction.PROPOSE)

        if (
            status in (DeliberationStatus.PROPOSED, DeliberationStatus.NEGOTIATING)
            and (is_mechanic or requester_side)
            and deliberation.last_actor_id != actor_id
        ):
            actions.add(WorkflowAction.NEGOTIATE)
            actions.add(WorkflowAction.ACCEPT)

        if is_admin and snapshot.logistics_stage in (
            LogisticsStage.NONE,
            LogisticsStage.PLANNED,
        ):
            actions.add(WorkflowAction.PLAN_LOGISTICS)

        if is_mechanic:
            actions.add(WorkflowAction.POST_PROGRESS_UPDATE)
            if status in (None, DeliberationStatus.AGREED):
                actions.add(WorkflowAction.COMPLETE_WITH_INVOICE)

        if is_admin:
            actions.add(WorkflowAction.CANCEL_REQUEST)

    if is_mechanic and request.status != RequestStatus.CANCELLED:
        upcoming = next_event(snapshot.logistics_stage)
        if upcoming is not None and (not closed or upcoming in RETURN_SIDE_EVENTS):
            actions.add(EVENT_ACTIONS[upcoming])

    return tuple(a for a in WorkflowAction if a in actions)


# Always-available actions that never make a request "wait" on the actor
OPTIONAL_ACTIONS: frozenset[WorkflowAction] = frozenset({
    WorkflowAction.POST_PROGRESS_UPDATE,
    WorkflowAction.CANCEL_REQUEST,
})


@dataclass(frozen=True)
class PendingActions:
    """One row of an actor's "my pending actions" list."""

    request_id: UUID
    vehicle_id: str
    request_status: RequestStatus
    actions: tuple[WorkflowAction, ...]
    deliberation_status: DeliberationStatus | None = None
    logistics_stage: LogisticsStage = LogisticsStage.NONE


def pending_actions(
    snapshot: WorkflowSnapshot,
    actor_id: str,
    roles: tuple[str, ...] | frozenset[str],
    policy: RolePolicy | None = None,
) -> PendingActions | None:
    """The moves on ``snapshot`` that are waiting for ``actor_id``, if any."""
    waiting = tuple(
        a for a in allowed_actions(snapshot, actor_id, roles, policy)
        if a not in OPTIONAL_ACTIONS
    )
    if not waiting:
        return None
    return PendingActions(
        request_id=snapshot.request.request_id,
        vehicle_id=snapshot.request.vehicle_id,
        request_status=snapshot.request.status,
        actions=waiting,
        deliberation_status=snapshot.deliberation.status if snapshot.deliberation else None,
        logistics_stage=snapshot.logistics_stage,
    )
