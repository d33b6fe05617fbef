"""
Shared precondition checks for services acting on a maintenance request.

Each workflow machine loads the parent request through here so the
"exists / open / assigned mechanic" checks and the version touch read the
same everywhere.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from fleet_kernel.domain.request import CLOSED_REQUEST_STATUSES, RequestStatus
from fleet_kernel.exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    RequestNotFoundError,
)
from fleet_kernel.models.maintenance_request import MaintenanceRequestModel


def load_request(session: Session, request_id: UUID) -> MaintenanceRequestModel:
    """Fetch the request row (identity map first) or raise NotFound."""
    request = session.get(MaintenanceRequestModel, request_id)
    if request is None:
        raise RequestNotFoundError(str(request_id))
    return request


def require_open(request: MaintenanceRequestModel, action: str) -> None:
    if RequestStatus(request.status) in CLOSED_REQUEST_STATUSES:
        raise InvalidTransitionError(
            "MaintenanceRequest", request.status, action, "request is closed",
        )


def require_assigned_mechanic(
    request: MaintenanceRequestModel,
    actor_id: str,
    action: str,
) -> None:
    if request.assigned_mechanic_id is None:
        raise ForbiddenError(actor_id, action, "no mechanic is assigned")
    if actor_id != request.assigned_mechanic_id:
        raise ForbiddenError(actor_id, action, "only the assigned mechanic may do this")


def touch(request: MaintenanceRequestModel, now: datetime) -> None:
    """
    Mark a transition on the request row.

    Always issues an UPDATE on flush, and so bumps the version, even when
    ``now`` equals the stored value.
    """
    request.last_transition_at = now
    flag_modified(request, "last_transition_at")
