"""Services for the fleet kernel (write side)."""

from fleet_kernel.services.history_ledger import HistoryLedger
from fleet_kernel.services.invoice_service import InvoiceFinalizer
from fleet_kernel.services.logistics_service import LogisticsSequencer
from fleet_kernel.services.negotiation_service import NegotiationStateMachine
from fleet_kernel.services.request_service import MaintenanceRequestService
from fleet_kernel.services.sequence_service import SequenceService
from fleet_kernel.services.workflow_coordinator import RequestWorkflowCoordinator

__all__ = [
    "HistoryLedger",
    "InvoiceFinalizer",
    "LogisticsSequencer",
    "MaintenanceRequestService",
    "NegotiationStateMachine",
    "RequestWorkflowCoordinator",
    "SequenceService",
]
