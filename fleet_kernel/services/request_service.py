"""
MaintenanceRequestService -- opens and cancels maintenance requests.

Responsibility:
    Registers a repair request raised against a vehicle and performs the
    administrative cancellation of an open request.  Everything between
    those two ends belongs to the negotiation, logistics and invoice
    machines.

Architecture position:
    Kernel > Services.  Called by the RequestWorkflowCoordinator; never
    commits.

Failure modes:
    - ValidationError for an empty vehicle id or repair type
    - RequestNotFoundError, InvalidTransitionError, ForbiddenError on cancel
"""

from uuid import UUID

from sqlalchemy.orm import Session

from fleet_kernel.domain.clock import Clock, SystemClock
from fleet_kernel.domain.request import (
    MaintenanceRequest,
    RequestStatus,
    RolePolicy,
    can_transition,
)
from fleet_kernel.exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    ValidationError,
)
from fleet_kernel.logging_config import get_logger
from fleet_kernel.models.maintenance_request import MaintenanceRequestModel
from fleet_kernel.services.request_guard import load_request, require_open, touch

logger = get_logger("services.request")


def _required_text(field: str, value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, value, "must be a non-empty string")
    return value.strip()


class MaintenanceRequestService:
    """Creates request rows and closes them administratively."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        role_policy: RolePolicy | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._roles = role_policy or RolePolicy()

    def open_request(
        self,
        actor_id: str,
        vehicle_id: str,
        repair_type: str,
        reason: str | None = None,
        comments: str | None = None,
    ) -> MaintenanceRequest:
        """Register a new ``Scheduled`` request raised by ``actor_id``."""
        requester = _required_text("actor_id", actor_id)
        vehicle = _required_text("vehicle_id", vehicle_id)
        repair = _required_text("repair_type", repair_type)

        now = self._clock.now_utc()
        request = MaintenanceRequestModel(
            vehicle_id=vehicle,
            requester_id=requester,
            status=RequestStatus.SCHEDULED.value,
            repair_type=repair,
            reason=reason,
            comments=comments,
            created_at=now,
            last_transition_at=now,
        )
        self._session.add(request)
        self._session.flush()

        logger.info(
            "maintenance_request_opened",
            extra={
                "request_id": str(request.id),
                "actor_id": requester,
                "vehicle_id": vehicle,
                "repair_type": repair,
            },
        )
        return request.to_dto()

    def cancel_request(
        self,
        request_id: UUID,
        actor_id: str,
        reason: str | None = None,
        roles: tuple[str, ...] = (),
    ) -> MaintenanceRequest:
        """
        Cancel an open request.

        Administrators only.  Negotiation and logistics records are kept
        as they stand; a cancelled request accepts no further moves.
        """
        action = "cancel_request"
        request = load_request(self._session, request_id)
        require_open(request, action)
        if not self._roles.is_admin(roles):
            raise ForbiddenError(actor_id, action, "only an administrator may cancel")
        if not can_transition(RequestStatus(request.status), RequestStatus.CANCELLED):
            raise InvalidTransitionError("MaintenanceRequest", request.status, action)

        now = self._clock.now_utc()
        previous = request.status
        request.status = RequestStatus.CANCELLED.value
        request.cancelled_at = now
        request.cancellation_reason = reason
        touch(request, now)
        self._session.flush()

        logger.info(
            "maintenance_request_cancelled",
            extra={
                "request_id": str(request_id),
                "actor_id": actor_id,
                "previous_status": previous,
                "cancellation_reason": reason,
            },
        )
        return request.to_dto()
