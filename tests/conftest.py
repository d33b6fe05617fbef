"""
Pytest fixtures for the fleet kernel test suite.

Provides:
- A file-backed SQLite database per test (tables created, immutability
  listeners registered)
- Sessions, a deterministic clock and a coordinator wired with in-memory
  collaborators
- Captured structured logs

Actors used throughout:
- REQUESTER  raised the request, no roles
- MECHANIC   the mechanic selected for the job
- REVIEWER   holds the Manager role (acts on the requester's behalf)
- ADMIN      holds the Admin role
- OUTSIDER   no relationship to any request
"""

import json
import logging
from decimal import Decimal
from io import StringIO

import pytest

from fleet_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from fleet_kernel.domain.clock import DeterministicClock
from fleet_kernel.domain.collaborators import (
    InMemoryUserDirectory,
    InMemoryVehicleDirectory,
    RecordingDispatcher,
    StaticIdentityProvider,
    VehicleInfo,
)
from fleet_kernel.domain.invoice import InvoiceTolerance
from fleet_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from fleet_kernel.services.request_service import MaintenanceRequestService
from fleet_kernel.services.workflow_coordinator import RequestWorkflowCoordinator

REQUESTER = "u-requester"
MECHANIC = "u-mechanic"
OTHER_MECHANIC = "u-mechanic-2"
REVIEWER = "u-reviewer"
ADMIN = "u-admin"
OUTSIDER = "u-outsider"

VEHICLE_ID = "VH-100"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture fleet_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, coordinator):
            coordinator.propose(...)
            logs = captured_logs()
            assert any(r["message"] == "negotiation_proposed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("fleet_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def db_engine(tmp_path):
    """Fresh SQLite database file for one test."""
    engine = init_engine_from_url(
        f"sqlite:///{tmp_path / 'fleet.db'}",
        pool_timeout=10,
    )
    create_tables()
    yield engine
    drop_tables()
    reset_engine()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


@pytest.fixture
def session(session_factory):
    """A session whose uncommitted work is rolled back after the test."""
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def deterministic_clock():
    return DeterministicClock()


@pytest.fixture
def request_id(session, deterministic_clock):
    """An open request raised by REQUESTER, flushed in ``session``."""
    request = MaintenanceRequestService(session, deterministic_clock).open_request(
        REQUESTER, VEHICLE_ID, "Brake inspection", "Squealing on stop",
    )
    return request.request_id


# =============================================================================
# Coordinator fixtures
# =============================================================================


@pytest.fixture
def identity():
    return StaticIdentityProvider({
        REVIEWER: ("Manager",),
        ADMIN: ("Admin",),
        MECHANIC: ("Mechanic",),
        OTHER_MECHANIC: ("Mechanic",),
    })


@pytest.fixture
def vehicles():
    return InMemoryVehicleDirectory([
        VehicleInfo(VEHICLE_ID, make="Ford", model="Transit", license_plate="AB-123"),
    ])


@pytest.fixture
def users():
    return InMemoryUserDirectory({
        REQUESTER: "Rita Requester",
        MECHANIC: "Max Mechanic",
        REVIEWER: "Una Reviewer",
    })


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def tolerance():
    return InvoiceTolerance(absolute=Decimal("25"), percent=Decimal("10"))


@pytest.fixture
def coordinator(session_factory, deterministic_clock, identity, vehicles, users, dispatcher, tolerance):
    return RequestWorkflowCoordinator(
        session_factory=session_factory,
        clock=deterministic_clock,
        identity=identity,
        vehicles=vehicles,
        users=users,
        dispatcher=dispatcher,
        tolerance=tolerance,
    )


@pytest.fixture
def opened(coordinator):
    """Committed request raised by REQUESTER; returns its id."""
    result = coordinator.open_request(REQUESTER, VEHICLE_ID, "Brake inspection")
    assert result.success, result.error
    return result.snapshot.request.request_id


@pytest.fixture
def mechanic_selected(coordinator, opened):
    result = coordinator.select_mechanic(opened, REQUESTER, MECHANIC)
    assert result.success, result.error
    return opened


@pytest.fixture
def negotiating(coordinator, mechanic_selected):
    """Request with M proposing 500 and U countering 420."""
    rid = mechanic_selected
    assert coordinator.propose(rid, MECHANIC, Decimal("500")).success
    assert coordinator.negotiate(rid, REVIEWER, Decimal("420")).success
    return rid
