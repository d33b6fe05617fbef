"""
Module: fleet_kernel.selectors.workflow_selector
Responsibility: Builds the composite ``WorkflowSnapshot`` for a request --
    request, deliberation, history, logistics plan/trail/events, invoice,
    progress notes, display metadata and the actor's allowed actions --
    and the actor's pending-actions list.
Architecture position: Kernel > Selectors.  Read-only.

Failure modes:
    - Returns None for an unknown request; callers decide whether that is
      a NotFound.
"""

from dataclasses import replace
from uuid import UUID

from sqlalchemy import or_, select

from fleet_kernel.domain.collaborators import UserDirectory, VehicleDirectory
from fleet_kernel.domain.logistics import current_stage
from fleet_kernel.domain.negotiation import NegotiationHistoryEntry
from fleet_kernel.domain.request import (
    RequestStatus,
    RolePolicy,
    PendingActions,
    WorkflowSnapshot,
    allowed_actions,
    pending_actions,
)
from fleet_kernel.models.cost_deliberation import CostDeliberationModel
from fleet_kernel.models.invoice import InvoiceModel
from fleet_kernel.models.logistics import (
    LogisticsEventModel,
    LogisticsPlanModel,
    LogisticsTrailModel,
)
from fleet_kernel.models.maintenance_request import MaintenanceRequestModel
from fleet_kernel.models.negotiation_history import NegotiationHistoryModel
from fleet_kernel.models.progress_update import ProgressUpdateModel
from fleet_kernel.selectors.base import BaseSelector


class WorkflowSelector(BaseSelector):
    """Read side for maintenance request workflows."""

    def __init__(
        self,
        session,
        vehicles: VehicleDirectory | None = None,
        users: UserDirectory | None = None,
        role_policy: RolePolicy | None = None,
    ):
        super().__init__(session)
        self._vehicles = vehicles
        self._users = users
        self._roles = role_policy or RolePolicy()

    def snapshot(
        self,
        request_id: UUID,
        actor_id: str | None = None,
        roles: tuple[str, ...] = (),
    ) -> WorkflowSnapshot | None:
        """Composite snapshot; ``allowed_actions`` is filled when an actor is given."""
        request = self.session.get(MaintenanceRequestModel, request_id)
        if request is None:
            return None

        deliberation = self._one(CostDeliberationModel, request_id)
        plan = self._one(LogisticsPlanModel, request_id)
        trail = self._one(LogisticsTrailModel, request_id)
        invoice = self._one(InvoiceModel, request_id)

        events = self.session.execute(
            select(LogisticsEventModel)
            .where(LogisticsEventModel.request_id == request_id)
            .order_by(LogisticsEventModel.sequence)
        ).scalars().all()
        updates = self.session.execute(
            select(ProgressUpdateModel)
            .where(ProgressUpdateModel.request_id == request_id)
            .order_by(ProgressUpdateModel.sequence)
        ).scalars().all()

        request_dto = request.to_dto()
        trail_dto = trail.to_dto() if trail else None
        history = self.history(request_id)
        snapshot = WorkflowSnapshot(
            request=request_dto,
            deliberation=deliberation.to_dto() if deliberation else None,
            history=history,
            logistics_stage=current_stage(plan is not None, trail_dto),
            logistics_plan=plan.to_dto() if plan else None,
            logistics_trail=trail_dto,
            logistics_events=tuple(e.to_dto() for e in events),
            invoice=invoice.to_dto() if invoice else None,
            progress_updates=tuple(u.to_dto() for u in updates),
            vehicle=self._vehicles.get_vehicle(request_dto.vehicle_id) if self._vehicles else None,
            display_names=self._display_names(request_dto, history),
        )
        if actor_id is None:
            return snapshot
        return _with_actions(snapshot, allowed_actions(snapshot, actor_id, roles, self._roles))

    def history(self, request_id: UUID) -> tuple[NegotiationHistoryEntry, ...]:
        """Ledger entries ascending by sequence number."""
        models = self.session.execute(
            select(NegotiationHistoryModel)
            .where(NegotiationHistoryModel.request_id == request_id)
            .order_by(NegotiationHistoryModel.sequence_number)
        ).scalars().all()
        return tuple(m.to_dto() for m in models)

    def pending_for_actor(
        self,
        actor_id: str,
        roles: tuple[str, ...] = (),
    ) -> tuple[PendingActions, ...]:
        """
        Requests waiting on ``actor_id``, oldest first.

        Privileged actors (reviewers, administrators) see every
        non-cancelled request; others see requests they raised or are
        assigned to.
        """
        query = (
            select(MaintenanceRequestModel.id)
            .where(MaintenanceRequestModel.status != RequestStatus.CANCELLED.value)
            .order_by(MaintenanceRequestModel.created_at)
        )
        if not self._roles.is_privileged(roles):
            query = query.where(or_(
                MaintenanceRequestModel.assigned_mechanic_id == actor_id,
                MaintenanceRequestModel.requester_id == actor_id,
            ))

        rows = []
        for request_id in self.session.execute(query).scalars().all():
            snapshot = self.snapshot(request_id)
            row = pending_actions(snapshot, actor_id, roles, self._roles)
            if row is not None:
                rows.append(row)
        return tuple(rows)

    def _one(self, model, request_id: UUID):
        return self.session.execute(
            select(model).where(model.request_id == request_id)
        ).scalar_one_or_none()

    def _display_names(self, request, history) -> dict[str, str]:
        if self._users is None:
            return {}
        ids = {request.requester_id}
        if request.assigned_mechanic_id:
            ids.add(request.assigned_mechanic_id)
        ids.update(e.actor_id for e in history)
        names = {}
        for user_id in sorted(ids):
            name = self._users.get_display_name(user_id)
            if name is not None:
                names[user_id] = name
        return names


def _with_actions(snapshot: WorkflowSnapshot, actions) -> WorkflowSnapshot:
    return replace(snapshot, allowed_actions=actions)
