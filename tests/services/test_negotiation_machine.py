"""
Tests for NegotiationStateMachine.

Covers the documented walk-through (propose 500, counter 420, counter
460, accept 460), the failure codes and their check order, and the
cached-row-versus-ledger consistency check.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import update

from fleet_kernel.domain.negotiation import DeliberationStatus, HistoryEntryKind
from fleet_kernel.exceptions import (
    DeliberationNotFoundError,
    ForbiddenError,
    InvalidTransitionError,
    LedgerInconsistencyError,
    OutOfTurnError,
    RequestNotFoundError,
    ValidationError,
)
from fleet_kernel.models import (
    CostDeliberationModel,
    MaintenanceRequestModel,
    NegotiationHistoryModel,
)
from fleet_kernel.services.history_ledger import HistoryLedger
from fleet_kernel.services.negotiation_service import (
    NegotiationStateMachine,
    validate_amount,
)
from fleet_kernel.services.request_service import MaintenanceRequestService

from tests.conftest import MECHANIC, OTHER_MECHANIC, OUTSIDER, REQUESTER, REVIEWER

MANAGER = ("Manager",)


@pytest.fixture
def machine(session, deterministic_clock):
    return NegotiationStateMachine(session, deterministic_clock)


@pytest.fixture
def selected(machine, request_id):
    machine.select_mechanic(request_id, REQUESTER, MECHANIC, "Closest garage")
    return request_id


@pytest.fixture
def proposed(machine, selected):
    machine.propose(selected, MECHANIC, Decimal("500"))
    return selected


class TestValidateAmount:

    @pytest.mark.parametrize("value", ["500", 500, Decimal("0.000000001"), 12.5])
    def test_accepts_positive(self, value):
        assert validate_amount("amount", value) > 0

    @pytest.mark.parametrize("value", [0, "-1", "NaN", "Infinity", "abc", None, True])
    def test_rejects_non_positive_or_non_numeric(self, value):
        with pytest.raises(ValidationError):
            validate_amount("amount", value)

    def test_rejects_excess_precision(self):
        with pytest.raises(ValidationError, match="decimal places"):
            validate_amount("amount", Decimal("1.0000000001"))

    def test_never_rounds(self):
        assert validate_amount("amount", "420.123456789") == Decimal("420.123456789")


class TestSelectMechanic:

    def test_creates_deliberation(self, machine, request_id, session):
        deliberation = machine.select_mechanic(request_id, REQUESTER, MECHANIC)

        assert deliberation.status == DeliberationStatus.MECHANICS_SELECTED
        assert deliberation.current_round == 0
        assert deliberation.selected_by_id == REQUESTER
        assert machine.get_deliberation(request_id) == deliberation

    def test_writes_no_ledger_entry(self, machine, selected, session, deterministic_clock):
        assert HistoryLedger(session, deterministic_clock).history(selected) == ()

    def test_reselect_before_proposal(self, machine, selected, session):
        machine.select_mechanic(selected, REVIEWER, OTHER_MECHANIC, roles=MANAGER)
        row = machine.get_deliberation(selected)
        assert row.selected_by_id == REVIEWER
        assert row.status == DeliberationStatus.MECHANICS_SELECTED
        assert session.get(MaintenanceRequestModel, selected).assigned_mechanic_id == OTHER_MECHANIC

    def test_reselect_after_proposal_rejected(self, machine, proposed):
        with pytest.raises(InvalidTransitionError):
            machine.select_mechanic(proposed, REQUESTER, OTHER_MECHANIC)

    def test_mechanic_cannot_select(self, machine, request_id):
        with pytest.raises(ForbiddenError):
            machine.select_mechanic(request_id, MECHANIC, MECHANIC)

    @pytest.mark.parametrize("mechanic_id", ["", "   ", None])
    def test_empty_mechanic_rejected(self, machine, request_id, mechanic_id):
        with pytest.raises(ValidationError):
            machine.select_mechanic(request_id, REQUESTER, mechanic_id)

    def test_requester_cannot_be_mechanic(self, machine, request_id):
        with pytest.raises(ValidationError, match="differ"):
            machine.select_mechanic(request_id, REQUESTER, REQUESTER)

    def test_unknown_request(self, machine):
        with pytest.raises(RequestNotFoundError):
            machine.select_mechanic(uuid4(), REQUESTER, MECHANIC)


class TestDocumentedNegotiation:
    """Propose 500, counter 420, counter 460, accept at 460."""

    def test_walkthrough(self, machine, selected, session, deterministic_clock):
        d = machine.propose(selected, MECHANIC, Decimal("500"), "Pads and rotors")
        assert (d.status, d.current_round, d.proposed_cost) == (
            DeliberationStatus.PROPOSED, 1, Decimal("500"),
        )

        d = machine.negotiate(selected, REVIEWER, Decimal("420"), roles=MANAGER)
        assert (d.status, d.current_round, d.negotiated_cost) == (
            DeliberationStatus.NEGOTIATING, 2, Decimal("420"),
        )

        d = machine.negotiate(selected, MECHANIC, Decimal("460"))
        assert d.current_round == 3
        assert d.negotiated_cost == Decimal("460")

        d = machine.accept(selected, REVIEWER, roles=MANAGER)
        assert d.status == DeliberationStatus.AGREED
        assert d.agreed_cost == Decimal("460")
        assert d.current_round == 3
        assert d.agreed_at == deterministic_clock.now_utc()

        history = HistoryLedger(session, deterministic_clock).history(selected)
        assert [(e.kind, e.actor_id, e.amount) for e in history] == [
            (HistoryEntryKind.PROPOSE, MECHANIC, Decimal("500")),
            (HistoryEntryKind.NEGOTIATE, REVIEWER, Decimal("420")),
            (HistoryEntryKind.NEGOTIATE, MECHANIC, Decimal("460")),
            (HistoryEntryKind.ACCEPT, REVIEWER, Decimal("460")),
        ]
        assert machine.verify_consistency(selected) is True

    def test_accept_without_counter_freezes_proposal(self, machine, proposed):
        d = machine.accept(proposed, REQUESTER)
        assert d.agreed_cost == Decimal("500")
        assert d.negotiated_cost is None

    def test_mechanic_may_accept_counter(self, machine, proposed):
        machine.negotiate(proposed, REQUESTER, Decimal("450"))
        d = machine.accept(proposed, MECHANIC)
        assert d.agreed_cost == Decimal("450")


class TestFailureCodes:

    def test_propose_before_selection(self, machine, request_id):
        with pytest.raises(DeliberationNotFoundError):
            machine.propose(request_id, MECHANIC, Decimal("500"))

    def test_only_assigned_mechanic_proposes(self, machine, selected):
        with pytest.raises(ForbiddenError):
            machine.propose(selected, OTHER_MECHANIC, Decimal("500"))
        with pytest.raises(ForbiddenError):
            machine.propose(selected, REQUESTER, Decimal("500"))

    def test_second_proposal_rejected(self, machine, proposed):
        with pytest.raises(InvalidTransitionError):
            machine.propose(proposed, MECHANIC, Decimal("510"))

    def test_accept_before_proposal_rejected(self, machine, selected):
        with pytest.raises(InvalidTransitionError):
            machine.accept(selected, REQUESTER)

    def test_same_actor_twice_is_out_of_turn(self, machine, proposed):
        with pytest.raises(OutOfTurnError) as exc_info:
            machine.negotiate(proposed, MECHANIC, Decimal("480"))
        assert exc_info.value.last_actor_id == MECHANIC

    def test_cannot_accept_own_offer(self, machine, proposed):
        machine.negotiate(proposed, REVIEWER, Decimal("420"), roles=MANAGER)
        with pytest.raises(OutOfTurnError):
            machine.accept(proposed, REVIEWER, roles=MANAGER)

    def test_outsider_forbidden(self, machine, proposed):
        with pytest.raises(ForbiddenError):
            machine.negotiate(proposed, OUTSIDER, Decimal("400"))

    def test_moves_after_agreement_rejected(self, machine, proposed):
        machine.accept(proposed, REQUESTER)
        with pytest.raises(InvalidTransitionError):
            machine.negotiate(proposed, MECHANIC, Decimal("600"))
        with pytest.raises(InvalidTransitionError):
            machine.accept(proposed, MECHANIC)

    def test_transition_checked_before_turn(self, machine, proposed):
        """Accepting twice reports the terminal status, not the turn."""
        machine.accept(proposed, REQUESTER)
        with pytest.raises(InvalidTransitionError):
            machine.accept(proposed, REQUESTER)

    def test_turn_checked_before_amount(self, machine, proposed):
        with pytest.raises(OutOfTurnError):
            machine.negotiate(proposed, MECHANIC, "not-a-number")

    def test_invalid_amount(self, machine, proposed):
        with pytest.raises(ValidationError):
            machine.negotiate(proposed, REQUESTER, Decimal("-5"))

    def test_rejection_writes_nothing(self, machine, proposed, session, deterministic_clock):
        with pytest.raises(OutOfTurnError):
            machine.negotiate(proposed, MECHANIC, Decimal("480"))
        assert len(HistoryLedger(session, deterministic_clock).history(proposed)) == 1
        assert machine.get_deliberation(proposed).status == DeliberationStatus.PROPOSED

    def test_closed_request_rejected(self, machine, proposed, session, deterministic_clock):
        MaintenanceRequestService(session, deterministic_clock).cancel_request(
            proposed, "u-admin", "Vehicle sold", roles=("Admin",),
        )
        with pytest.raises(InvalidTransitionError, match="closed"):
            machine.negotiate(proposed, REQUESTER, Decimal("400"))


class TestLedgerConsistency:

    def test_rebuild_matches_cache(self, machine, proposed):
        machine.negotiate(proposed, REQUESTER, Decimal("450"))
        replayed = machine.rebuild_from_ledger(proposed)
        cached = machine.get_deliberation(proposed)
        assert replayed.status == cached.status
        assert replayed.negotiated_cost == cached.negotiated_cost
        assert replayed.current_round == cached.current_round

    def test_drifted_cache_detected(self, machine, proposed, session):
        session.execute(
            update(CostDeliberationModel.__table__)
            .where(CostDeliberationModel.__table__.c.request_id == proposed)
            .values(current_round=7)
        )
        session.expire_all()

        with pytest.raises(LedgerInconsistencyError) as exc_info:
            machine.verify_consistency(proposed)
        assert exc_info.value.field == "current_round"
        assert exc_info.value.replayed == 1

    def test_illegal_history_detected(self, machine, proposed, session, deterministic_clock):
        """A second consecutive move by the mechanic cannot be replayed."""
        table = NegotiationHistoryModel.__table__
        session.execute(
            table.insert().values(
                request_id=proposed,
                sequence_number=2,
                kind=HistoryEntryKind.NEGOTIATE.value,
                actor_id=MECHANIC,
                amount=Decimal("480"),
                comments="",
                recorded_at=deterministic_clock.now_utc(),
                payload_hash="0" * 64,
                prev_hash=None,
                hash="1" * 64,
            )
        )
        with pytest.raises(LedgerInconsistencyError):
            machine.rebuild_from_ledger(proposed)

    def test_verify_requires_deliberation(self, machine, request_id):
        with pytest.raises(DeliberationNotFoundError):
            machine.verify_consistency(request_id)
