"""
RequestWorkflowCoordinator -- the single entry point for workflow operations.

Responsibility:
    Orchestrates one actor action end to end: resolve roles, open a
    transaction, lock and version-check the request row, delegate to the
    owning machine, build the composite snapshot, commit, then publish a
    ``StateChanged`` fact.  Every outcome is returned as a
    ``WorkflowResult``; kernel errors never escape.

Architecture position:
    Kernel > Services -- top-level facade.  Composes
    MaintenanceRequestService, NegotiationStateMachine,
    LogisticsSequencer, InvoiceFinalizer and WorkflowSelector.  Owns the
    transaction boundary (the machines only flush).

Invariants enforced:
    - One transaction per operation: all of a transition's writes commit
      together or none do.
    - Optimistic concurrency: a caller-supplied ``expected_version`` that
      no longer matches the request row is a retryable CONFLICT.  Stale
      version UPDATEs, unique-constraint races and database lock
      contention are reported the same way.
    - Notifications are published after commit only; a failing dispatcher
      is logged and never undoes or fails the operation.

Failure modes:
    - Unexpected (non-kernel, non-concurrency) exceptions propagate after
      rollback.
"""

import time
from collections.abc import Callable
from datetime import date
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from fleet_kernel.db.engine import session_scope
from fleet_kernel.domain.clock import Clock, SystemClock
from fleet_kernel.domain.collaborators import (
    IdentityProvider,
    NotificationDispatcher,
    NullDispatcher,
    StateChanged,
    StaticIdentityProvider,
    UserDirectory,
    VehicleDirectory,
)
from fleet_kernel.domain.invoice import InvoiceTolerance, PartUsed
from fleet_kernel.domain.logistics import LogisticsPlanDetails, LogisticsStage
from fleet_kernel.domain.negotiation import NegotiationHistoryEntry
from fleet_kernel.domain.request import (
    PendingActions,
    RolePolicy,
    WorkflowAction,
    WorkflowResult,
    WorkflowSnapshot,
)
from fleet_kernel.exceptions import (
    ConflictError,
    FleetKernelError,
    NotFoundError,
    RequestNotFoundError,
)
from fleet_kernel.logging_config import LogContext, get_logger
from fleet_kernel.models.maintenance_request import MaintenanceRequestModel
from fleet_kernel.selectors.workflow_selector import WorkflowSelector
from fleet_kernel.services.invoice_service import InvoiceFinalizer
from fleet_kernel.services.logistics_service import LogisticsSequencer
from fleet_kernel.services.negotiation_service import NegotiationStateMachine
from fleet_kernel.services.request_service import MaintenanceRequestService

logger = get_logger("services.workflow_coordinator")

# Driver messages that mean "another transaction holds the row/database"
_LOCK_CONTENTION_MARKERS = (
    "database is locked",
    "could not serialize access",
    "deadlock detected",
    "lock timeout",
    "could not obtain lock",
)


def _is_lock_contention(exc: OperationalError) -> bool:
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _LOCK_CONTENTION_MARKERS)


# A unit of work run inside the transaction.  Receives the session and the
# actor's resolved roles; returns any non-blocking warnings.
Work = Callable[[Session, tuple[str, ...]], tuple]


class RequestWorkflowCoordinator:
    """
    Facade over the workflow machines.

    Contract:
        Every mutating operation accepts ``expected_version``: the version
        of the snapshot the caller acted on.  Pass it whenever the action
        came from a rendered snapshot; two tabs acting on the same snapshot
        then resolve to exactly one success and one CONFLICT.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        clock: Clock | None = None,
        identity: IdentityProvider | None = None,
        vehicles: VehicleDirectory | None = None,
        users: UserDirectory | None = None,
        dispatcher: NotificationDispatcher | None = None,
        role_policy: RolePolicy | None = None,
        tolerance: InvoiceTolerance | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._identity = identity or StaticIdentityProvider()
        self._vehicles = vehicles
        self._users = users
        self._dispatcher = dispatcher or NullDispatcher()
        self._roles = role_policy or RolePolicy()
        self._tolerance = tolerance or InvoiceTolerance()

    # =========================================================================
    # Request lifecycle
    # =========================================================================

    def open_request(
        self,
        actor_id: str,
        vehicle_id: str,
        repair_type: str,
        reason: str | None = None,
        comments: str | None = None,
    ) -> WorkflowResult:
        """Register a repair request; the actor becomes the requester."""
        operation = "open_request"
        roles = self._resolve_roles(actor_id)
        with LogContext.bind(
            correlation_id=str(uuid4()), actor_id=actor_id, operation=operation,
        ):
            t0 = time.monotonic()
            try:
                with session_scope(self._session_factory) as session:
                    request = self._requests(session).open_request(
                        actor_id, vehicle_id, repair_type, reason, comments,
                    )
                    if (
                        self._vehicles is not None
                        and self._vehicles.get_vehicle(request.vehicle_id) is None
                    ):
                        raise NotFoundError("Vehicle", request.vehicle_id)
                    snapshot = self._selector(session).snapshot(
                        request.request_id, actor_id, roles,
                    )
            except FleetKernelError as exc:
                return self._rejected(exc, t0)
            except (StaleDataError, IntegrityError) as exc:
                return self._conflict(None, exc, t0)
            except OperationalError as exc:
                if not _is_lock_contention(exc):
                    raise
                return self._conflict(None, exc, t0)

            return self._committed(operation, actor_id, snapshot, (), t0)

    def cancel_request(
        self,
        request_id: UUID,
        actor_id: str,
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> WorkflowResult:
        return self._execute(
            WorkflowAction.CANCEL_REQUEST.value, request_id, actor_id, expected_version,
            lambda session, roles: self._requests(session).cancel_request(
                request_id, actor_id, reason, roles,
            ),
        )

    # =========================================================================
    # Negotiation
    # =========================================================================

    def select_mechanic(
        self,
        request_id: UUID,
        actor_id: str,
        mechanic_id: str,
        comments: str = "",
        expected_version: int | None = None,
    ) -> WorkflowResult:
        return self._execute(
            WorkflowAction.SELECT_MECHANIC.value, request_id, actor_id, expected_version,
            lambda session, roles: self._negotiation(session).select_mechanic(
                request_id, actor_id, mechanic_id, comments, roles,
            ),
        )

    def propose(
        self,
        request_id: UUID,
        actor_id: str,
        amount,
        comments: str = "",
        expected_version: int | None = None,
    ) -> WorkflowResult:
        return self._execute(
            WorkflowAction.PROPOSE.value, request_id, actor_id, expected_version,
            lambda session, roles: self._negotiation(session).propose(
                request_id, actor_id, amount, comments, roles,
            ),
        )

    def negotiate(
        self,
        request_id: UUID,
        actor_id: str,
        amount,
        comments: str = "",
        expected_version: int | None = None,
    ) -> WorkflowResult:
        return self._execute(
            WorkflowAction.NEGOTIATE.value, request_id, actor_id, expected_version,
            lambda session, roles: self._negotiation(session).negotiate(
                request_id, actor_id, amount, comments, roles,
            ),
        )

    def accept(
        self,
        request_id: UUID,
        actor_id: str,
        comments: str = "",
        expected_version: int | None = None,
    ) -> WorkflowResult:
        return self._execute(
            WorkflowAction.ACCEPT.value, request_id, actor_id, expected_version,
            lambda session, roles: self._negotiation(session).accept(
                request_id, actor_id, comments, roles,
            ),
        )

    # =========================================================================
    # Logistics
    # =========================================================================

    def plan_logistics(
        self,
        request_id: UUID,
        actor_id: str,
        details: LogisticsPlanDetails,
        expected_version: int | None = None,
    ) -> WorkflowResult:
        return self._execute(
            WorkflowAction.PLAN_LOGISTICS.value, request_id, actor_id, expected_version,
            lambda session, roles: self._logistics(session).plan_logistics(
                request_id, actor_id, details, roles,
            ),
        )

    def mark_received(self, request_id, actor_id, timestamp=None, note=None, expected_version=None):
        return self._mark(
            LogisticsStage.RECEIVED, request_id, actor_id, timestamp, note, expected_version,
        )

    def mark_picked_up(self, request_id, actor_id, timestamp=None, note=None, expected_version=None):
        return self._mark(
            LogisticsStage.PICKED_UP, request_id, actor_id, timestamp, note, expected_version,
        )

    def mark_work_started(self, request_id, actor_id, timestamp=None, note=None, expected_version=None):
        return self._mark(
            LogisticsStage.WORK_STARTED, request_id, actor_id, timestamp, note, expected_version,
        )

    def mark_ready_for_return(
        self, request_id, actor_id, timestamp=None, note=None, expected_version=None,
    ):
        return self._mark(
            LogisticsStage.READY_FOR_RETURN, request_id, actor_id, timestamp, note,
            expected_version,
        )

    def mark_returned(self, request_id, actor_id, timestamp=None, note=None, expected_version=None):
        return self._mark(
            LogisticsStage.RETURNED, request_id, actor_id, timestamp, note, expected_version,
        )

    def post_progress_update(
        self,
        request_id: UUID,
        actor_id: str,
        comment: str,
        expected_completion_date: date | None = None,
        expected_version: int | None = None,
    ) -> WorkflowResult:
        return self._execute(
            WorkflowAction.POST_PROGRESS_UPDATE.value, request_id, actor_id, expected_version,
            lambda session, roles: self._logistics(session).post_progress_update(
                request_id, actor_id, comment, expected_completion_date,
            ),
        )

    # =========================================================================
    # Invoice
    # =========================================================================

    def complete_with_invoice(
        self,
        request_id: UUID,
        actor_id: str,
        labor_hours,
        total_cost,
        parts_used: tuple[PartUsed, ...] | list = (),
        expected_version: int | None = None,
    ) -> WorkflowResult:
        """Close the job; cost divergence warnings ride on the result."""

        def work(session: Session, roles: tuple[str, ...]) -> tuple:
            _, warnings = InvoiceFinalizer(
                session, self._clock, self._tolerance,
            ).complete_with_invoice(request_id, actor_id, labor_hours, total_cost, parts_used)
            return warnings

        return self._execute(
            WorkflowAction.COMPLETE_WITH_INVOICE.value, request_id, actor_id,
            expected_version, work, returns_warnings=True,
        )

    # =========================================================================
    # Reads
    # =========================================================================

    def get_snapshot(
        self,
        request_id: UUID,
        actor_id: str | None = None,
    ) -> WorkflowResult:
        """
        Polling read API.

        ``allowed_actions`` on the snapshot is computed for ``actor_id``
        when one is given.
        """
        roles = self._resolve_roles(actor_id) if actor_id else ()
        with session_scope(self._session_factory) as session:
            snapshot = self._selector(session).snapshot(request_id, actor_id, roles)
        if snapshot is None:
            error = RequestNotFoundError(str(request_id))
            return WorkflowResult.failed(error.code, str(error))
        return WorkflowResult.ok(snapshot)

    def get_history(self, request_id: UUID) -> tuple[NegotiationHistoryEntry, ...]:
        """Negotiation ledger entries ascending by sequence number."""
        with session_scope(self._session_factory) as session:
            return self._selector(session).history(request_id)

    def pending_actions(self, actor_id: str) -> tuple[PendingActions, ...]:
        """The "my pending actions" list for ``actor_id``."""
        roles = self._resolve_roles(actor_id)
        with session_scope(self._session_factory) as session:
            return self._selector(session).pending_for_actor(actor_id, roles)

    # =========================================================================
    # Internals
    # =========================================================================

    def _mark(self, stage, request_id, actor_id, timestamp, note, expected_version):
        action = {
            LogisticsStage.RECEIVED: WorkflowAction.MARK_RECEIVED,
            LogisticsStage.PICKED_UP: WorkflowAction.MARK_PICKED_UP,
            LogisticsStage.WORK_STARTED: WorkflowAction.MARK_WORK_STARTED,
            LogisticsStage.READY_FOR_RETURN: WorkflowAction.MARK_READY_FOR_RETURN,
            LogisticsStage.RETURNED: WorkflowAction.MARK_RETURNED,
        }[stage]
        return self._execute(
            action.value, request_id, actor_id, expected_version,
            lambda session, roles: self._logistics(session).record_event(
                stage, request_id, actor_id, timestamp, note,
            ),
        )

    def _execute(
        self,
        operation: str,
        request_id: UUID,
        actor_id: str,
        expected_version: int | None,
        work: Work,
        returns_warnings: bool = False,
    ) -> WorkflowResult:
        roles = self._resolve_roles(actor_id)
        with LogContext.bind(
            correlation_id=str(uuid4()),
            request_id=str(request_id),
            actor_id=actor_id,
            operation=operation,
        ):
            t0 = time.monotonic()
            try:
                with session_scope(self._session_factory) as session:
                    self._lock_request(session, request_id, expected_version)
                    outcome = work(session, roles)
                    warnings = tuple(outcome) if returns_warnings else ()
                    session.flush()
                    snapshot = self._selector(session).snapshot(request_id, actor_id, roles)
            except FleetKernelError as exc:
                return self._rejected(exc, t0)
            except (StaleDataError, IntegrityError) as exc:
                return self._conflict(request_id, exc, t0)
            except OperationalError as exc:
                if not _is_lock_contention(exc):
                    raise
                return self._conflict(request_id, exc, t0)

            return self._committed(operation, actor_id, snapshot, warnings, t0)

    def _lock_request(
        self,
        session: Session,
        request_id: UUID,
        expected_version: int | None,
    ) -> MaintenanceRequestModel:
        """Row-lock the request and check the caller's snapshot version."""
        request = session.execute(
            select(MaintenanceRequestModel)
            .where(MaintenanceRequestModel.id == request_id)
            .with_for_update()
        ).scalar_one_or_none()
        if request is None:
            raise RequestNotFoundError(str(request_id))
        if expected_version is not None and request.version != expected_version:
            raise ConflictError(
                "MaintenanceRequest", str(request_id), expected_version, request.version,
            )
        return request

    def _committed(
        self,
        operation: str,
        actor_id: str,
        snapshot: WorkflowSnapshot,
        warnings: tuple,
        t0: float,
    ) -> WorkflowResult:
        logger.info(
            "workflow_operation_completed",
            extra={
                "request_status": snapshot.request.status.value,
                "version": snapshot.version,
                "warning_count": len(warnings),
                "duration_ms": round((time.monotonic() - t0) * 1000, 2),
            },
        )
        self._publish(operation, actor_id, snapshot)
        return WorkflowResult.ok(snapshot, warnings)

    def _rejected(self, exc: FleetKernelError, t0: float) -> WorkflowResult:
        logger.warning(
            "workflow_operation_rejected",
            extra={
                "error_code": exc.code,
                "retryable": exc.retryable,
                "reason": str(exc),
                "duration_ms": round((time.monotonic() - t0) * 1000, 2),
            },
        )
        return WorkflowResult.failed(exc.code, str(exc), exc.retryable)

    def _conflict(
        self,
        request_id: UUID | None,
        exc: Exception,
        t0: float,
    ) -> WorkflowResult:
        conflict = ConflictError("MaintenanceRequest", str(request_id))
        logger.warning(
            "workflow_operation_conflict",
            extra={
                "error_code": conflict.code,
                "cause": type(exc).__name__,
                "duration_ms": round((time.monotonic() - t0) * 1000, 2),
            },
        )
        return WorkflowResult.failed(conflict.code, str(conflict), conflict.retryable)

    def _publish(self, operation: str, actor_id: str, snapshot: WorkflowSnapshot) -> None:
        deliberation = snapshot.deliberation
        event = StateChanged(
            request_id=snapshot.request.request_id,
            operation=operation,
            actor_id=actor_id,
            request_status=snapshot.request.status.value,
            version=snapshot.version,
            occurred_at=self._clock.now_utc(),
            deliberation_status=deliberation.status.value if deliberation else None,
            logistics_stage=snapshot.logistics_stage.value,
        )
        try:
            self._dispatcher.dispatch(event)
        except Exception:
            logger.warning(
                "state_change_dispatch_failed",
                extra={"dispatched_operation": operation},
                exc_info=True,
            )

    def _resolve_roles(self, actor_id: str) -> tuple[str, ...]:
        return tuple(self._identity.get_actor_roles(actor_id))

    def _selector(self, session: Session) -> WorkflowSelector:
        return WorkflowSelector(session, self._vehicles, self._users, self._roles)

    def _requests(self, session: Session) -> MaintenanceRequestService:
        return MaintenanceRequestService(session, self._clock, self._roles)

    def _negotiation(self, session: Session) -> NegotiationStateMachine:
        return NegotiationStateMachine(session, self._clock, self._roles)

    def _logistics(self, session: Session) -> LogisticsSequencer:
        return LogisticsSequencer(session, self._clock, self._roles)

