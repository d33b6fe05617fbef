"""
Pure domain layer.

Transition tables, value objects and pure decision functions with NO
dependencies on:
- ORM (SQLAlchemy)
- Database
- Wall-clock time
- I/O

All domain objects are immutable and deterministic.
"""

from fleet_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from fleet_kernel.domain.collaborators import (
    IdentityProvider,
    InMemoryUserDirectory,
    InMemoryVehicleDirectory,
    NotificationDispatcher,
    NullDispatcher,
    RecordingDispatcher,
    StateChanged,
    StaticIdentityProvider,
    UserDirectory,
    VehicleDirectory,
    VehicleInfo,
)
from fleet_kernel.domain.invoice import (
    Invoice,
    InvoiceTolerance,
    InvoiceWarning,
    PartUsed,
    check_cost_divergence,
)
from fleet_kernel.domain.logistics import (
    LogisticsEvent,
    LogisticsEventTrail,
    LogisticsPlan,
    LogisticsPlanDetails,
    LogisticsStage,
    TimeWindow,
)
from fleet_kernel.domain.negotiation import (
    NEGOTIATION_TRANSITIONS,
    CostDeliberation,
    DeliberationStatus,
    HistoryEntryKind,
    NegotiationAction,
    NegotiationHistoryEntry,
    replay_deliberation,
)
from fleet_kernel.domain.request import (
    MaintenanceRequest,
    PendingActions,
    ProgressUpdate,
    RequestStatus,
    RolePolicy,
    WorkflowAction,
    WorkflowResult,
    WorkflowSnapshot,
    allowed_actions,
    pending_actions,
)

__all__ = [
    # Clock
    "Clock",
    "DeterministicClock",
    "SystemClock",
    # Collaborators
    "IdentityProvider",
    "InMemoryUserDirectory",
    "InMemoryVehicleDirectory",
    "NotificationDispatcher",
    "NullDispatcher",
    "RecordingDispatcher",
    "StateChanged",
    "StaticIdentityProvider",
    "UserDirectory",
    "VehicleDirectory",
    "VehicleInfo",
    # Invoice
    "Invoice",
    "InvoiceTolerance",
    "InvoiceWarning",
    "PartUsed",
    "check_cost_divergence",
    # Logistics
    "LogisticsEvent",
    "LogisticsEventTrail",
    "LogisticsPlan",
    "LogisticsPlanDetails",
    "LogisticsStage",
    "TimeWindow",
    # Negotiation
    "NEGOTIATION_TRANSITIONS",
    "CostDeliberation",
    "DeliberationStatus",
    "HistoryEntryKind",
    "NegotiationAction",
    "NegotiationHistoryEntry",
    "replay_deliberation",
    # Request
    "MaintenanceRequest",
    "PendingActions",
    "ProgressUpdate",
    "RequestStatus",
    "RolePolicy",
    "WorkflowAction",
    "WorkflowResult",
    "WorkflowSnapshot",
    "allowed_actions",
    "pending_actions",
]
