"""
NegotiationStateMachine -- bilateral cost deliberation for one request.

Responsibility:
    Governs the deliberation status and turn-taking between the requester
    side and the assigned mechanic.  Every legal move updates the cached
    ``CostDeliberationModel`` row and appends a HistoryLedger entry in the
    same flush.

Architecture position:
    Kernel > Services -- imperative shell.  Uses the pure transition table
    in ``domain/negotiation`` and the HistoryLedger.  Called by the
    RequestWorkflowCoordinator; never commits.

Invariants enforced:
    - Legality comes only from ``NEGOTIATION_TRANSITIONS``.
    - Turn-taking: Negotiate and Accept are rejected with OutOfTurnError
      when the actor made the previous move.  The check is on actor
      identity, never on round numbers or wall-clock order.
    - Accept freezes negotiated-if-set-else-proposed, and the Accept entry
      carries exactly that amount.
    - All checks run before any write.  Check order: request exists,
      request open, deliberation exists, status legal, actor permitted,
      turn, amount valid.

Failure modes:
    - RequestNotFoundError / DeliberationNotFoundError
    - InvalidTransitionError, ForbiddenError, OutOfTurnError
    - ValidationError for malformed amounts or mechanic ids
    - LedgerInconsistencyError from ``verify_consistency``
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from fleet_kernel.db.types import MONEY_DECIMAL_PLACES, to_decimal
from fleet_kernel.domain.clock import Clock, SystemClock
from fleet_kernel.domain.negotiation import (
    CostDeliberation,
    DeliberationStatus,
    HistoryEntryKind,
    NegotiationAction,
    ReplayError,
    ReplayedDeliberation,
    is_out_of_turn,
    next_status,
    replay_deliberation,
)
from fleet_kernel.domain.request import RolePolicy
from fleet_kernel.exceptions import (
    DeliberationNotFoundError,
    ForbiddenError,
    InvalidTransitionError,
    LedgerInconsistencyError,
    OutOfTurnError,
    ValidationError,
)
from fleet_kernel.logging_config import get_logger
from fleet_kernel.models.cost_deliberation import CostDeliberationModel
from fleet_kernel.models.maintenance_request import MaintenanceRequestModel
from fleet_kernel.services.history_ledger import HistoryLedger
from fleet_kernel.services.request_guard import (
    load_request,
    require_assigned_mechanic,
    require_open,
    touch,
)

logger = get_logger("services.negotiation")


def validate_amount(field: str, value) -> Decimal:
    """
    Coerce an offer to a Decimal that is finite, strictly positive, and
    storable without rounding.
    """
    try:
        amount = to_decimal(value)
    except ValueError as exc:
        raise ValidationError(field, value, str(exc)) from exc
    if amount <= 0:
        raise ValidationError(field, value, "must be greater than zero")
    if amount.as_tuple().exponent < -MONEY_DECIMAL_PLACES:
        raise ValidationError(
            field, value, f"at most {MONEY_DECIMAL_PLACES} decimal places",
        )
    return amount


class NegotiationStateMachine:
    """
    Cost deliberation state machine backed by the negotiation ledger.

    Contract:
        Every public mutator returns the updated ``CostDeliberation`` DTO
        after flushing.  The caller owns the transaction.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        role_policy: RolePolicy | None = None,
        ledger: HistoryLedger | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._roles = role_policy or RolePolicy()
        self._ledger = ledger or HistoryLedger(session, self._clock)

    # =========================================================================
    # Mutators
    # =========================================================================

    def select_mechanic(
        self,
        request_id: UUID,
        actor_id: str,
        mechanic_id: str,
        comments: str = "",
        roles: tuple[str, ...] = (),
    ) -> CostDeliberation:
        """
        Assign the mechanic and open (or reset) the deliberation.

        Legal while no deliberation exists or while it is still
        ``MechanicsSelected``.  Writes no ledger entry.
        """
        action = NegotiationAction.SELECT_MECHANIC
        request = load_request(self._session, request_id)
        require_open(request, action.value)

        deliberation = self._find(request_id)
        current = DeliberationStatus(deliberation.status) if deliberation else None
        target = self._require_legal(current, action)

        if not self._roles.is_requester_side(actor_id, request.requester_id, roles):
            raise ForbiddenError(
                actor_id, action.value, "only the requester side may select a mechanic",
            )
        if not mechanic_id or not str(mechanic_id).strip():
            raise ValidationError("mechanic_id", mechanic_id, "must not be empty")
        if mechanic_id == request.requester_id:
            raise ValidationError(
                "mechanic_id", mechanic_id, "mechanic must differ from the requester",
            )

        now = self._clock.now_utc()
        request.assigned_mechanic_id = mechanic_id
        if deliberation is None:
            deliberation = CostDeliberationModel(
                request_id=request_id,
                status=target.value,
                current_round=0,
                selected_by_id=actor_id,
                selected_at=now,
            )
            self._session.add(deliberation)
        else:
            deliberation.selected_by_id = actor_id
            deliberation.selected_at = now
        touch(request, now)
        self._session.flush()

        logger.info(
            "negotiation_mechanic_selected",
            extra={
                "request_id": str(request_id),
                "actor_id": actor_id,
                "mechanic_id": mechanic_id,
                "selection_comments": comments or "",
            },
        )
        return deliberation.to_dto()

    def propose(
        self,
        request_id: UUID,
        actor_id: str,
        amount,
        comments: str = "",
        roles: tuple[str, ...] = (),
    ) -> CostDeliberation:
        """First offer, made by the assigned mechanic."""
        action = NegotiationAction.PROPOSE
        request, deliberation = self._load(request_id, action)
        target = self._require_legal(DeliberationStatus(deliberation.status), action)
        require_assigned_mechanic(request, actor_id, action.value)
        value = validate_amount("amount", amount)

        deliberation.proposed_cost = value
        deliberation.status = target.value
        deliberation.current_round = 1
        deliberation.last_actor_id = actor_id
        self._ledger.append(request_id, HistoryEntryKind.PROPOSE, actor_id, value, comments)
        touch(request, self._clock.now_utc())
        self._session.flush()

        logger.info(
            "negotiation_proposed",
            extra={
                "request_id": str(request_id),
                "actor_id": actor_id,
                "amount": value,
                "round": deliberation.current_round,
            },
        )
        return deliberation.to_dto()

    def negotiate(
        self,
        request_id: UUID,
        actor_id: str,
        amount,
        comments: str = "",
        roles: tuple[str, ...] = (),
    ) -> CostDeliberation:
        """Counter-offer from whichever party did not make the last move."""
        action = NegotiationAction.NEGOTIATE
        request, deliberation = self._load(request_id, action)
        target = self._require_legal(DeliberationStatus(deliberation.status), action)
        self._require_participant(request, actor_id, action, roles)
        self._require_turn(request_id, deliberation, actor_id, action)
        value = validate_amount("amount", amount)

        deliberation.negotiated_cost = value
        deliberation.status = target.value
        deliberation.current_round = deliberation.current_round + 1
        deliberation.last_actor_id = actor_id
        self._ledger.append(request_id, HistoryEntryKind.NEGOTIATE, actor_id, value, comments)
        touch(request, self._clock.now_utc())
        self._session.flush()

        logger.info(
            "negotiation_countered",
            extra={
                "request_id": str(request_id),
                "actor_id": actor_id,
                "amount": value,
                "round": deliberation.current_round,
            },
        )
        return deliberation.to_dto()

    def accept(
        self,
        request_id: UUID,
        actor_id: str,
        comments: str = "",
        roles: tuple[str, ...] = (),
    ) -> CostDeliberation:
        """Freeze the offer on the table as the agreed cost."""
        action = NegotiationAction.ACCEPT
        request, deliberation = self._load(request_id, action)
        target = self._require_legal(DeliberationStatus(deliberation.status), action)
        self._require_participant(request, actor_id, action, roles)
        self._require_turn(request_id, deliberation, actor_id, action)

        frozen = (
            deliberation.negotiated_cost
            if deliberation.negotiated_cost is not None
            else deliberation.proposed_cost
        )
        now = self._clock.now_utc()
        deliberation.agreed_cost = frozen
        deliberation.agreed_at = now
        deliberation.status = target.value
        deliberation.last_actor_id = actor_id
        self._ledger.append(request_id, HistoryEntryKind.ACCEPT, actor_id, frozen, comments)
        touch(request, now)
        self._session.flush()

        logger.info(
            "negotiation_agreed",
            extra={
                "request_id": str(request_id),
                "actor_id": actor_id,
                "agreed_cost": frozen,
                "round": deliberation.current_round,
            },
        )
        return deliberation.to_dto()

    # =========================================================================
    # Queries
    # =========================================================================

    def get_deliberation(self, request_id: UUID) -> CostDeliberation | None:
        deliberation = self._find(request_id)
        return deliberation.to_dto() if deliberation else None

    def rebuild_from_ledger(self, request_id: UUID) -> ReplayedDeliberation:
        """
        Rebuild deliberation state from the history alone.

        Raises:
            LedgerInconsistencyError: If the history is not a legal sequence.
        """
        entries = self._ledger.history(request_id)
        try:
            return replay_deliberation(entries)
        except ReplayError as exc:
            raise LedgerInconsistencyError(
                str(request_id), f"history#{exc.sequence_number}", None, exc.reason,
            ) from exc

    def verify_consistency(self, request_id: UUID) -> bool:
        """
        Check the cached deliberation row against a ledger replay.

        Raises:
            DeliberationNotFoundError: If no deliberation exists.
            LedgerInconsistencyError: At the first field that disagrees.
        """
        deliberation = self._find(request_id)
        if deliberation is None:
            raise DeliberationNotFoundError(str(request_id))
        replayed = self.rebuild_from_ledger(request_id)

        for field in (
            "status",
            "current_round",
            "proposed_cost",
            "negotiated_cost",
            "agreed_cost",
            "last_actor_id",
        ):
            cached = getattr(deliberation, field)
            rebuilt = getattr(replayed, field)
            if field == "status":
                rebuilt = rebuilt.value
            if cached != rebuilt:
                logger.error(
                    "negotiation_ledger_inconsistent",
                    extra={
                        "request_id": str(request_id),
                        "field": field,
                        "cached": cached,
                        "replayed": rebuilt,
                    },
                )
                raise LedgerInconsistencyError(str(request_id), field, cached, rebuilt)
        return True

    # =========================================================================
    # Checks
    # =========================================================================

    def _find(self, request_id: UUID) -> CostDeliberationModel | None:
        return self._session.execute(
            select(CostDeliberationModel)
            .where(CostDeliberationModel.request_id == request_id)
        ).scalar_one_or_none()

    def _load(
        self,
        request_id: UUID,
        action: NegotiationAction,
    ) -> tuple[MaintenanceRequestModel, CostDeliberationModel]:
        request = load_request(self._session, request_id)
        require_open(request, action.value)
        deliberation = self._find(request_id)
        if deliberation is None:
            raise DeliberationNotFoundError(str(request_id))
        return request, deliberation

    def _require_legal(
        self,
        current: DeliberationStatus | None,
        action: NegotiationAction,
    ) -> DeliberationStatus:
        target = next_status(current, action)
        if target is None:
            raise InvalidTransitionError(
                "CostDeliberation",
                current.value if current else "None",
                action.value,
            )
        return target

    def _require_participant(
        self,
        request: MaintenanceRequestModel,
        actor_id: str,
        action: NegotiationAction,
        roles: tuple[str, ...],
    ) -> None:
        if actor_id == request.assigned_mechanic_id:
            return
        if self._roles.is_requester_side(actor_id, request.requester_id, roles):
            return
        raise ForbiddenError(
            actor_id, action.value, "not a party to this negotiation",
        )

    def _require_turn(
        self,
        request_id: UUID,
        deliberation: CostDeliberationModel,
        actor_id: str,
        action: NegotiationAction,
    ) -> None:
        if is_out_of_turn(action, actor_id, deliberation.last_actor_id):
            raise OutOfTurnError(str(request_id), actor_id, deliberation.last_actor_id)
