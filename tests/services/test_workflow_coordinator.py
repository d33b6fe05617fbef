"""
End-to-end tests for RequestWorkflowCoordinator.

Each operation runs in its own committed transaction against a file-backed
SQLite database, exactly as a web handler would drive it.

Covers:
- The documented walk-through: propose 500, counter 420, counter 460,
  accept, invoice at 460.
- Failure codes carried as data on WorkflowResult.
- Snapshot versioning and stale-snapshot CONFLICT.
- Post-commit StateChanged dispatch, including a failing dispatcher.
- Pending actions per actor.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from fleet_kernel.domain.collaborators import StateChanged
from fleet_kernel.domain.invoice import COST_DIVERGENCE
from fleet_kernel.domain.logistics import LogisticsPlanDetails, LogisticsStage, TimeWindow
from fleet_kernel.domain.negotiation import DeliberationStatus, HistoryEntryKind
from fleet_kernel.domain.request import RequestStatus, WorkflowAction
from fleet_kernel.services.workflow_coordinator import RequestWorkflowCoordinator

from tests.conftest import (
    ADMIN,
    MECHANIC,
    OTHER_MECHANIC,
    OUTSIDER,
    REQUESTER,
    REVIEWER,
    VEHICLE_ID,
)

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FailingDispatcher:
    def dispatch(self, event: StateChanged) -> None:
        raise RuntimeError("notification bus down")


def _ok(result):
    assert result.success, f"{result.error_code}: {result.error}"
    return result.snapshot


# =============================================================================
# Opening and reading requests
# =============================================================================


class TestOpenRequest:

    def test_opens_scheduled_request(self, coordinator):
        snapshot = _ok(coordinator.open_request(
            REQUESTER, VEHICLE_ID, "Brake inspection", "Squealing", "Before Friday",
        ))

        request = snapshot.request
        assert request.status == RequestStatus.SCHEDULED
        assert request.requester_id == REQUESTER
        assert request.reason == "Squealing"
        assert snapshot.version == 1
        assert snapshot.deliberation is None
        assert snapshot.logistics_stage == LogisticsStage.NONE
        assert WorkflowAction.SELECT_MECHANIC in snapshot.allowed_actions

    def test_unknown_vehicle_not_found(self, coordinator):
        result = coordinator.open_request(REQUESTER, "VH-404", "Oil change")
        assert not result.success
        assert result.error_code == "NOT_FOUND"
        assert coordinator.pending_actions(REQUESTER) == ()

    def test_empty_repair_type_rejected(self, coordinator):
        result = coordinator.open_request(REQUESTER, VEHICLE_ID, "  ")
        assert result.error_code == "VALIDATION_ERROR"
        assert result.retryable is False

    def test_without_vehicle_directory(self, session_factory, deterministic_clock):
        coordinator = RequestWorkflowCoordinator(session_factory, deterministic_clock)
        snapshot = _ok(coordinator.open_request(REQUESTER, "VH-anything", "Wipers"))
        assert snapshot.vehicle is None
        assert snapshot.display_names == {}


class TestGetSnapshot:

    def test_display_metadata(self, coordinator, mechanic_selected):
        snapshot = _ok(coordinator.get_snapshot(mechanic_selected, REQUESTER))

        assert snapshot.vehicle.make == "Ford"
        assert snapshot.vehicle.license_plate == "AB-123"
        assert snapshot.display_names == {
            MECHANIC: "Max Mechanic",
            REQUESTER: "Rita Requester",
        }

    def test_anonymous_snapshot_has_no_actions(self, coordinator, mechanic_selected):
        snapshot = _ok(coordinator.get_snapshot(mechanic_selected))
        assert snapshot.allowed_actions == ()

    def test_actions_depend_on_actor(self, coordinator, mechanic_selected):
        mechanic_view = _ok(coordinator.get_snapshot(mechanic_selected, MECHANIC))
        outsider_view = _ok(coordinator.get_snapshot(mechanic_selected, OUTSIDER))
        assert WorkflowAction.PROPOSE in mechanic_view.allowed_actions
        assert outsider_view.allowed_actions == ()

    def test_unknown_request(self, coordinator):
        result = coordinator.get_snapshot(uuid4(), REQUESTER)
        assert not result.success
        assert result.error_code == "NOT_FOUND"


# =============================================================================
# Documented negotiation
# =============================================================================


class TestDocumentedScenarios:

    def test_propose_counter_accept_invoice(self, coordinator, mechanic_selected, dispatcher):
        rid = mechanic_selected

        # 1. M proposes 500
        snapshot = _ok(coordinator.propose(rid, MECHANIC, Decimal("500"), "Pads and rotors"))
        assert snapshot.deliberation.status == DeliberationStatus.PROPOSED
        assert snapshot.deliberation.current_round == 1
        assert [(e.kind, e.amount, e.actor_id) for e in snapshot.history] == [
            (HistoryEntryKind.PROPOSE, Decimal("500"), MECHANIC),
        ]

        # 2. U counters 420; U may not counter again; M counters 460
        snapshot = _ok(coordinator.negotiate(rid, REVIEWER, Decimal("420")))
        assert snapshot.deliberation.status == DeliberationStatus.NEGOTIATING
        assert snapshot.deliberation.current_round == 2
        assert snapshot.deliberation.negotiated_cost == Decimal("420")

        repeat = coordinator.negotiate(rid, REVIEWER, Decimal("410"))
        assert repeat.error_code == "OUT_OF_TURN"

        _ok(coordinator.negotiate(rid, MECHANIC, Decimal("460")))

        # 3. U accepts while M moved last
        snapshot = _ok(coordinator.accept(rid, REVIEWER))
        assert snapshot.deliberation.status == DeliberationStatus.AGREED
        assert snapshot.deliberation.agreed_cost == Decimal("460")
        assert snapshot.history[-1].kind == HistoryEntryKind.ACCEPT
        assert snapshot.history[-1].amount == Decimal("460")

        # 4. M invoices at 460
        result = coordinator.complete_with_invoice(
            rid, MECHANIC, Decimal("3"), Decimal("460"),
            [{"name": "Brake pad", "quantity": 4, "unit_price": "25.00"}],
        )
        snapshot = _ok(result)
        assert result.warnings == ()
        assert snapshot.request.status == RequestStatus.COMPLETED
        assert snapshot.invoice.total_cost == Decimal("460")

        assert [e.operation for e in dispatcher.events] == [
            "open_request", "select_mechanic", "propose", "negotiate",
            "negotiate", "accept", "complete_with_invoice",
        ]
        assert [e.version for e in dispatcher.events] == [1, 2, 3, 4, 5, 6, 7]

    def test_picked_up_before_received(self, coordinator, mechanic_selected):
        _ok(coordinator.plan_logistics(mechanic_selected, ADMIN, LogisticsPlanDetails()))
        result = coordinator.mark_picked_up(mechanic_selected, MECHANIC)
        assert not result.success
        assert result.error_code == "SEQUENCE_VIOLATION"

    def test_invoice_before_agreement(self, coordinator, negotiating):
        result = coordinator.complete_with_invoice(negotiating, MECHANIC, 1, Decimal("420"))
        assert result.error_code == "NEGOTIATION_NOT_RESOLVED"
        snapshot = _ok(coordinator.get_snapshot(negotiating))
        assert snapshot.request.status == RequestStatus.SCHEDULED
        assert snapshot.invoice is None

    def test_divergent_invoice_warns(self, coordinator, negotiating):
        _ok(coordinator.accept(negotiating, MECHANIC))
        result = coordinator.complete_with_invoice(negotiating, MECHANIC, 5, Decimal("900"))
        assert result.success
        assert [w.code for w in result.warnings] == [COST_DIVERGENCE]
        assert result.warnings[0].agreed_cost == Decimal("420")


# =============================================================================
# Errors as data
# =============================================================================


class TestErrorCodes:

    def test_forbidden(self, coordinator, mechanic_selected):
        result = coordinator.propose(mechanic_selected, OTHER_MECHANIC, Decimal("100"))
        assert result.error_code == "FORBIDDEN"
        assert result.snapshot is None

    def test_invalid_transition(self, coordinator, mechanic_selected):
        result = coordinator.accept(mechanic_selected, REQUESTER)
        assert result.error_code == "INVALID_TRANSITION"

    def test_validation(self, coordinator, mechanic_selected):
        result = coordinator.propose(mechanic_selected, MECHANIC, "NaN")
        assert result.error_code == "VALIDATION_ERROR"

    def test_not_found(self, coordinator):
        result = coordinator.propose(uuid4(), MECHANIC, Decimal("100"))
        assert result.error_code == "NOT_FOUND"

    def test_already_recorded(self, coordinator, mechanic_selected):
        _ok(coordinator.plan_logistics(mechanic_selected, ADMIN, LogisticsPlanDetails()))
        _ok(coordinator.mark_received(mechanic_selected, MECHANIC))
        result = coordinator.mark_received(mechanic_selected, MECHANIC)
        assert result.error_code == "ALREADY_RECORDED"

    def test_failures_do_not_dispatch(self, coordinator, mechanic_selected, dispatcher):
        before = len(dispatcher.events)
        coordinator.accept(mechanic_selected, REQUESTER)
        assert len(dispatcher.events) == before

    def test_rejection_is_logged(self, coordinator, mechanic_selected, captured_logs):
        coordinator.propose(mechanic_selected, OTHER_MECHANIC, Decimal("100"))
        rejected = [r for r in captured_logs() if r["message"] == "workflow_operation_rejected"]
        assert len(rejected) == 1
        assert rejected[0]["error_code"] == "FORBIDDEN"
        assert rejected[0]["operation"] == "propose"
        assert rejected[0]["actor_id"] == OTHER_MECHANIC
        assert rejected[0]["request_id"] == str(mechanic_selected)


# =============================================================================
# Optimistic concurrency
# =============================================================================


class TestExpectedVersion:

    def test_matching_version_succeeds(self, coordinator, negotiating):
        version = _ok(coordinator.get_snapshot(negotiating)).version
        snapshot = _ok(coordinator.accept(negotiating, MECHANIC, expected_version=version))
        assert snapshot.version == version + 1

    def test_two_tabs_same_snapshot(self, coordinator, negotiating):
        """Both tabs accept from one rendered snapshot: one wins, one conflicts."""
        version = _ok(coordinator.get_snapshot(negotiating, MECHANIC)).version

        first = coordinator.accept(negotiating, MECHANIC, expected_version=version)
        second = coordinator.accept(negotiating, MECHANIC, expected_version=version)

        assert first.success
        assert not second.success
        assert second.error_code == "CONFLICT"
        assert second.retryable is True

        history = coordinator.get_history(negotiating)
        assert [e.kind for e in history].count(HistoryEntryKind.ACCEPT) == 1

    def test_stale_version_on_logistics(self, coordinator, mechanic_selected):
        version = _ok(coordinator.get_snapshot(mechanic_selected)).version
        _ok(coordinator.post_progress_update(mechanic_selected, MECHANIC, "Diagnosed"))
        result = coordinator.plan_logistics(
            mechanic_selected, ADMIN, LogisticsPlanDetails(), expected_version=version,
        )
        assert result.error_code == "CONFLICT"

    def test_without_version_second_accept_is_domain_error(self, coordinator, negotiating):
        _ok(coordinator.accept(negotiating, MECHANIC))
        result = coordinator.accept(negotiating, REQUESTER)
        assert result.error_code == "INVALID_TRANSITION"
        assert result.retryable is False


# =============================================================================
# Logistics through the coordinator
# =============================================================================


class TestLogisticsFlow:

    def test_full_handling(self, coordinator, mechanic_selected, deterministic_clock):
        rid = mechanic_selected
        details = LogisticsPlanDetails(
            pickup_required=True,
            pickup_address="Depot 4",
            pickup_window=TimeWindow(T0, T0 + timedelta(hours=2)),
            return_required=True,
        )
        snapshot = _ok(coordinator.plan_logistics(rid, ADMIN, details))
        assert snapshot.logistics_stage == LogisticsStage.PLANNED
        assert snapshot.logistics_plan.details.pickup_address == "Depot 4"

        for mark, stage in (
            (coordinator.mark_received, LogisticsStage.RECEIVED),
            (coordinator.mark_picked_up, LogisticsStage.PICKED_UP),
            (coordinator.mark_work_started, LogisticsStage.WORK_STARTED),
        ):
            deterministic_clock.advance(900)
            snapshot = _ok(mark(rid, MECHANIC))
            assert snapshot.logistics_stage == stage

        assert snapshot.request.status == RequestStatus.IN_PROGRESS
        assert [e.stage for e in snapshot.logistics_events] == [
            LogisticsStage.RECEIVED, LogisticsStage.PICKED_UP, LogisticsStage.WORK_STARTED,
        ]

    def test_events_listed_in_recorded_order_when_timestamps_tie(
        self, coordinator, mechanic_selected,
    ):
        rid = mechanic_selected
        _ok(coordinator.plan_logistics(rid, ADMIN, LogisticsPlanDetails(pickup_required=True)))
        _ok(coordinator.mark_received(rid, MECHANIC))
        _ok(coordinator.mark_picked_up(rid, MECHANIC))
        snapshot = _ok(coordinator.mark_work_started(rid, MECHANIC))

        events = snapshot.logistics_events
        assert len({e.occurred_at for e in events}) == 1
        assert [e.stage for e in events] == [
            LogisticsStage.RECEIVED, LogisticsStage.PICKED_UP, LogisticsStage.WORK_STARTED,
        ]
        assert [e.sequence for e in events] == [1, 2, 3]

    def test_handling_runs_alongside_negotiation(self, coordinator, negotiating):
        _ok(coordinator.plan_logistics(negotiating, ADMIN, LogisticsPlanDetails()))
        snapshot = _ok(coordinator.mark_received(negotiating, MECHANIC))
        assert snapshot.deliberation.status == DeliberationStatus.NEGOTIATING
        assert snapshot.logistics_stage == LogisticsStage.RECEIVED

    def test_non_admin_cannot_plan(self, coordinator, mechanic_selected):
        result = coordinator.plan_logistics(mechanic_selected, REVIEWER, LogisticsPlanDetails())
        assert result.error_code == "FORBIDDEN"

    def test_naive_timestamp(self, coordinator, mechanic_selected):
        _ok(coordinator.plan_logistics(mechanic_selected, ADMIN, LogisticsPlanDetails()))
        result = coordinator.mark_received(mechanic_selected, MECHANIC, datetime(2024, 1, 1, 9))
        assert result.error_code == "VALIDATION_ERROR"

    def test_progress_updates_on_snapshot(self, coordinator, mechanic_selected):
        _ok(coordinator.post_progress_update(
            mechanic_selected, MECHANIC, "Waiting on rotors", date(2024, 1, 10),
        ))
        snapshot = _ok(coordinator.post_progress_update(mechanic_selected, MECHANIC, "Rotors in"))
        assert [u.comment for u in snapshot.progress_updates] == ["Waiting on rotors", "Rotors in"]
        assert snapshot.progress_updates[0].expected_completion_date == date(2024, 1, 10)


# =============================================================================
# Cancellation
# =============================================================================


class TestCancelRequest:

    def test_admin_cancels(self, coordinator, negotiating):
        snapshot = _ok(coordinator.cancel_request(negotiating, ADMIN, "Vehicle sold"))
        assert snapshot.request.status == RequestStatus.CANCELLED
        assert snapshot.request.cancellation_reason == "Vehicle sold"
        # negotiation record kept as it stood
        assert snapshot.deliberation.status == DeliberationStatus.NEGOTIATING
        assert len(snapshot.history) == 2

    def test_only_admin_cancels(self, coordinator, negotiating):
        assert coordinator.cancel_request(negotiating, REQUESTER).error_code == "FORBIDDEN"
        assert coordinator.cancel_request(negotiating, REVIEWER).error_code == "FORBIDDEN"

    def test_cancelled_request_accepts_nothing(self, coordinator, negotiating):
        _ok(coordinator.cancel_request(negotiating, ADMIN))
        assert coordinator.accept(negotiating, MECHANIC).error_code == "INVALID_TRANSITION"
        assert coordinator.cancel_request(negotiating, ADMIN).error_code == "INVALID_TRANSITION"
        assert coordinator.post_progress_update(
            negotiating, MECHANIC, "Still here",
        ).error_code == "INVALID_TRANSITION"


# =============================================================================
# Pending actions
# =============================================================================


class TestPendingActions:

    def test_mechanic_waits_to_propose(self, coordinator, mechanic_selected):
        rows = coordinator.pending_actions(MECHANIC)
        assert len(rows) == 1
        assert rows[0].request_id == mechanic_selected
        assert rows[0].actions == (WorkflowAction.PROPOSE,)
        assert rows[0].vehicle_id == VEHICLE_ID

    def test_turn_moves_the_request_between_lists(self, coordinator, negotiating):
        # U countered last, so M is up
        assert [r.request_id for r in coordinator.pending_actions(MECHANIC)] == [negotiating]
        assert coordinator.pending_actions(REVIEWER) == ()

        _ok(coordinator.negotiate(negotiating, MECHANIC, Decimal("460")))
        assert coordinator.pending_actions(MECHANIC) == ()
        reviewer_rows = coordinator.pending_actions(REVIEWER)
        assert reviewer_rows[0].actions == (WorkflowAction.NEGOTIATE, WorkflowAction.ACCEPT)

    def test_outsider_has_nothing(self, coordinator, negotiating):
        assert coordinator.pending_actions(OUTSIDER) == ()

    def test_cancelled_requests_drop_out(self, coordinator, negotiating):
        _ok(coordinator.cancel_request(negotiating, ADMIN))
        assert coordinator.pending_actions(MECHANIC) == ()
        assert coordinator.pending_actions(ADMIN) == ()

    def test_oldest_first(self, coordinator, deterministic_clock):
        older = _ok(coordinator.open_request(REQUESTER, VEHICLE_ID, "Oil change")).request
        deterministic_clock.advance(3600)
        newer = _ok(coordinator.open_request(REQUESTER, VEHICLE_ID, "Wipers")).request
        rows = coordinator.pending_actions(REQUESTER)
        assert [r.request_id for r in rows] == [older.request_id, newer.request_id]


# =============================================================================
# Notifications and logging
# =============================================================================


class TestNotifications:

    def test_state_changed_payload(self, coordinator, mechanic_selected, dispatcher, deterministic_clock):
        _ok(coordinator.propose(mechanic_selected, MECHANIC, Decimal("500")))
        event = dispatcher.events[-1]

        assert event.request_id == mechanic_selected
        assert event.operation == "propose"
        assert event.actor_id == MECHANIC
        assert event.request_status == "Scheduled"
        assert event.deliberation_status == "Proposed"
        assert event.logistics_stage == "None"
        assert event.occurred_at == deterministic_clock.now_utc()

    def test_failing_dispatcher_never_fails_operation(
        self, session_factory, deterministic_clock, identity, captured_logs,
    ):
        coordinator = RequestWorkflowCoordinator(
            session_factory,
            deterministic_clock,
            identity=identity,
            dispatcher=FailingDispatcher(),
        )
        rid = _ok(coordinator.open_request(REQUESTER, VEHICLE_ID, "Horn")).request.request_id
        _ok(coordinator.select_mechanic(rid, REQUESTER, MECHANIC))

        snapshot = _ok(coordinator.get_snapshot(rid))
        assert snapshot.request.assigned_mechanic_id == MECHANIC

        failures = [r for r in captured_logs() if r["message"] == "state_change_dispatch_failed"]
        assert len(failures) == 2
        assert failures[0]["exc_type"] == "RuntimeError"

    def test_completion_is_logged_with_context(self, coordinator, mechanic_selected, captured_logs):
        _ok(coordinator.propose(mechanic_selected, MECHANIC, Decimal("500")))
        completed = [r for r in captured_logs() if r["message"] == "workflow_operation_completed"]

        assert len(completed) == 1
        record = completed[0]
        assert record["operation"] == "propose"
        assert record["request_id"] == str(mechanic_selected)
        assert record["version"] == 3
        assert "correlation_id" in record
        assert "duration_ms" in record

    def test_one_correlation_id_per_operation(self, coordinator, mechanic_selected, captured_logs):
        _ok(coordinator.propose(mechanic_selected, MECHANIC, Decimal("500")))
        records = [r for r in captured_logs() if r.get("operation") == "propose"]
        assert len(records) > 1
        assert len({r["correlation_id"] for r in records}) == 1
