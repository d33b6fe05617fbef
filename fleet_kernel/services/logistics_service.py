"""
LogisticsSequencer -- physical-handling lifecycle for one request.

Responsibility:
    Records the pickup/return plan and the five one-time milestones
    (received, picked up, work started, ready for return, returned), plus
    the mechanic's free-form progress notes.

Architecture position:
    Kernel > Services -- imperative shell.  Uses ``domain/logistics`` for
    stage order.  Runs independently of NegotiationStateMachine: handling
    may start before, during or after cost agreement.  Never commits.

Invariants enforced:
    - The plan is set by an administrator and revisable until Received.
    - Each milestone fires exactly once, strictly after its predecessor,
      only by the assigned mechanic.  Repeats are rejected, not merged.
    - Trail timestamps are non-decreasing in stage order.
    - Cancelled requests accept no events.  Completed requests accept
      only the remaining return-side events.

Failure modes:
    - RequestNotFoundError, InvalidTransitionError, ForbiddenError
    - SequenceViolationError, AlreadyRecordedError
    - ValidationError for naive timestamps, inverted windows, empty notes
"""

from datetime import date, datetime, timezone
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from fleet_kernel.domain.clock import Clock, SystemClock
from fleet_kernel.domain.logistics import (
    EVENT_TIMESTAMP_FIELDS,
    LOGISTICS_EVENTS,
    RETURN_SIDE_EVENTS,
    LogisticsEventTrail,
    LogisticsPlan,
    LogisticsPlanDetails,
    LogisticsStage,
    TimeWindow,
    predecessor,
)
from fleet_kernel.domain.request import ProgressUpdate, RequestStatus, RolePolicy, can_transition
from fleet_kernel.exceptions import (
    AlreadyRecordedError,
    ForbiddenError,
    InvalidTransitionError,
    SequenceViolationError,
    ValidationError,
)
from fleet_kernel.logging_config import get_logger
from fleet_kernel.models.logistics import (
    LogisticsEventModel,
    LogisticsPlanModel,
    LogisticsTrailModel,
)
from fleet_kernel.models.maintenance_request import MaintenanceRequestModel
from fleet_kernel.models.progress_update import ProgressUpdateModel
from fleet_kernel.services.request_guard import (
    load_request,
    require_assigned_mechanic,
    require_open,
    touch,
)
from fleet_kernel.services.sequence_service import SequenceService

logger = get_logger("services.logistics")


def _is_aware(value: datetime) -> bool:
    return value.tzinfo is not None and value.tzinfo.utcoffset(value) is not None


def _validate_window(field: str, window: TimeWindow | None) -> None:
    if window is None:
        return
    if not (_is_aware(window.start) and _is_aware(window.end)):
        raise ValidationError(field, window, "window bounds must be timezone-aware")
    if not window.is_ordered:
        raise ValidationError(field, window, "window start must not be after its end")


class LogisticsSequencer:
    """
    Physical-handling sequencer.

    Contract:
        Mutators flush and return the updated DTO.  Timestamps default to
        the injected clock.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        role_policy: RolePolicy | None = None,
        sequence_service: SequenceService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._roles = role_policy or RolePolicy()
        self._sequences = sequence_service or SequenceService(session)

    # =========================================================================
    # Plan
    # =========================================================================

    def plan_logistics(
        self,
        request_id: UUID,
        actor_id: str,
        details: LogisticsPlanDetails,
        roles: tuple[str, ...] = (),
    ) -> LogisticsPlan:
        """Create or revise the plan; frozen once Received has fired."""
        action = "plan_logistics"
        request = load_request(self._session, request_id)
        require_open(request, action)

        trail = self._trail(request_id)
        if trail is not None and trail.received_at is not None:
            raise InvalidTransitionError(
                "LogisticsPlan",
                LogisticsStage.RECEIVED.value,
                action,
                "plan is frozen once the vehicle is received",
            )
        if not self._roles.is_admin(roles):
            raise ForbiddenError(actor_id, action, "only an administrator may plan logistics")

        _validate_window("pickup_window", details.pickup_window)
        _validate_window("return_window", details.return_window)

        now = self._clock.now_utc()
        plan = self._plan(request_id)
        if plan is None:
            plan = LogisticsPlanModel(request_id=request_id, revision=1)
            self._session.add(plan)
        else:
            plan.revision = plan.revision + 1
        plan.apply_details(details)
        plan.planned_by_id = actor_id
        plan.planned_at = now
        touch(request, now)
        self._session.flush()

        logger.info(
            "logistics_planned",
            extra={
                "request_id": str(request_id),
                "actor_id": actor_id,
                "revision": plan.revision,
                "pickup_required": details.pickup_required,
                "return_required": details.return_required,
            },
        )
        return plan.to_dto()

    # =========================================================================
    # Milestones
    # =========================================================================

    def mark_received(self, request_id, actor_id, timestamp=None, note=None):
        return self.record_event(LogisticsStage.RECEIVED, request_id, actor_id, timestamp, note)

    def mark_picked_up(self, request_id, actor_id, timestamp=None, note=None):
        return self.record_event(LogisticsStage.PICKED_UP, request_id, actor_id, timestamp, note)

    def mark_work_started(self, request_id, actor_id, timestamp=None, note=None):
        return self.record_event(LogisticsStage.WORK_STARTED, request_id, actor_id, timestamp, note)

    def mark_ready_for_return(self, request_id, actor_id, timestamp=None, note=None):
        return self.record_event(
            LogisticsStage.READY_FOR_RETURN, request_id, actor_id, timestamp, note,
        )

    def mark_returned(self, request_id, actor_id, timestamp=None, note=None):
        return self.record_event(LogisticsStage.RETURNED, request_id, actor_id, timestamp, note)

    def record_event(
        self,
        stage: LogisticsStage,
        request_id: UUID,
        actor_id: str,
        timestamp: datetime | None = None,
        note: str | None = None,
    ) -> LogisticsEventTrail:
        """
        Record one milestone.

        Preconditions (checked in order):
            request exists; request not Cancelled (and, when Completed,
            ``stage`` is a return-side event); actor is the assigned
            mechanic; stage not yet recorded; predecessor reached;
            timestamp aware and not earlier than the predecessor's.
        """
        if stage not in LOGISTICS_EVENTS:
            raise ValueError(f"{stage} is not a logistics event")
        action = f"record {stage.value}"

        request = load_request(self._session, request_id)
        self._require_accepts_events(request, stage, action)
        require_assigned_mechanic(request, actor_id, action)

        trail = self._trail(request_id)
        field = EVENT_TIMESTAMP_FIELDS[stage]
        if trail is not None and getattr(trail, field) is not None:
            raise AlreadyRecordedError(
                str(request_id), stage.value, getattr(trail, field).isoformat(),
            )

        previous = predecessor(stage)
        previous_at: datetime | None = None
        if previous == LogisticsStage.PLANNED:
            if self._plan(request_id) is None:
                raise SequenceViolationError(
                    str(request_id), stage.value, "no logistics plan has been made",
                )
        else:
            previous_at = getattr(trail, EVENT_TIMESTAMP_FIELDS[previous]) if trail else None
            if previous_at is None:
                raise SequenceViolationError(
                    str(request_id), stage.value, f"{previous.value} has not been recorded",
                )

        if timestamp is None:
            occurred_at = self._clock.now_utc()
        elif not _is_aware(timestamp):
            raise ValidationError("timestamp", timestamp, "must be timezone-aware")
        else:
            occurred_at = timestamp.astimezone(timezone.utc)

        if previous_at is not None and occurred_at < previous_at:
            raise SequenceViolationError(
                str(request_id),
                stage.value,
                f"timestamp {occurred_at.isoformat()} precedes "
                f"{previous.value} at {previous_at.isoformat()}",
            )

        now = self._clock.now_utc()
        if trail is None:
            trail = LogisticsTrailModel(request_id=request_id)
            self._session.add(trail)
        setattr(trail, field, occurred_at)
        sequence = self._sequences.next_value(
            SequenceService.logistics_sequence(request_id)
        )
        self._session.add(LogisticsEventModel(
            request_id=request_id,
            sequence=sequence,
            stage=stage.value,
            actor_id=actor_id,
            occurred_at=occurred_at,
            recorded_at=now,
            note=note,
        ))

        if stage == LogisticsStage.WORK_STARTED and can_transition(
            RequestStatus(request.status), RequestStatus.IN_PROGRESS,
        ):
            request.status = RequestStatus.IN_PROGRESS.value
        touch(request, now)
        self._session.flush()

        logger.info(
            "logistics_event_recorded",
            extra={
                "request_id": str(request_id),
                "actor_id": actor_id,
                "stage": stage.value,
                "occurred_at": occurred_at,
            },
        )
        return trail.to_dto()

    # =========================================================================
    # Progress notes
    # =========================================================================

    def post_progress_update(
        self,
        request_id: UUID,
        actor_id: str,
        comment: str,
        expected_completion_date: date | None = None,
    ) -> ProgressUpdate:
        """Append a mechanic progress note to an open request."""
        action = "post_progress_update"
        request = load_request(self._session, request_id)
        require_open(request, action)
        require_assigned_mechanic(request, actor_id, action)
        if not comment or not comment.strip():
            raise ValidationError("comment", comment, "must not be empty")

        sequence = self._sequences.next_value(
            SequenceService.progress_sequence(request_id)
        )
        now = self._clock.now_utc()
        update = ProgressUpdateModel(
            request_id=request_id,
            sequence=sequence,
            actor_id=actor_id,
            comment=comment.strip(),
            expected_completion_date=expected_completion_date,
            posted_at=now,
        )
        self._session.add(update)
        touch(request, now)
        self._session.flush()

        logger.info(
            "progress_update_posted",
            extra={
                "request_id": str(request_id),
                "actor_id": actor_id,
                "sequence": sequence,
                "expected_completion_date": expected_completion_date,
            },
        )
        return update.to_dto()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_accepts_events(
        self,
        request: MaintenanceRequestModel,
        stage: LogisticsStage,
        action: str,
    ) -> None:
        status = RequestStatus(request.status)
        if status == RequestStatus.CANCELLED:
            raise InvalidTransitionError(
                "MaintenanceRequest", status.value, action, "request is cancelled",
            )
        if status == RequestStatus.COMPLETED and stage not in RETURN_SIDE_EVENTS:
            raise InvalidTransitionError(
                "MaintenanceRequest", status.value, action,
                "only return-side events may follow completion",
            )

    def _plan(self, request_id: UUID) -> LogisticsPlanModel | None:
        return self._session.execute(
            select(LogisticsPlanModel).where(LogisticsPlanModel.request_id == request_id)
        ).scalar_one_or_none()

    def _trail(self, request_id: UUID) -> LogisticsTrailModel | None:
        return self._session.execute(
            select(LogisticsTrailModel).where(LogisticsTrailModel.request_id == request_id)
        ).scalar_one_or_none()
