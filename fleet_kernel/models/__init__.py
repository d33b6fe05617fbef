"""SQLAlchemy ORM models for the fleet kernel."""

from fleet_kernel.models.cost_deliberation import CostDeliberationModel
from fleet_kernel.models.invoice import InvoiceModel, InvoicePartModel
from fleet_kernel.models.logistics import (
    LogisticsEventModel,
    LogisticsPlanModel,
    LogisticsTrailModel,
)
from fleet_kernel.models.maintenance_request import MaintenanceRequestModel
from fleet_kernel.models.negotiation_history import NegotiationHistoryModel
from fleet_kernel.models.progress_update import ProgressUpdateModel
from fleet_kernel.models.sequence_counter import SequenceCounter

__all__ = [
    "CostDeliberationModel",
    "InvoiceModel",
    "InvoicePartModel",
    "LogisticsEventModel",
    "LogisticsPlanModel",
    "LogisticsTrailModel",
    "MaintenanceRequestModel",
    "NegotiationHistoryModel",
    "ProgressUpdateModel",
    "SequenceCounter",
]
