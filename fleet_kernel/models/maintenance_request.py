"""
Module: fleet_kernel.models.maintenance_request
Responsibility: ORM persistence for maintenance requests -- the parent row
    every other workflow record hangs off.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Status values limited by a check constraint; transitions enforced by
      the services against ``REQUEST_TRANSITIONS``.
    - ``version`` is the SQLAlchemy version_id_col.  Every UPDATE is issued
      as ``... WHERE id = :id AND version = :loaded_version`` and bumps the
      counter, so two sessions acting on the same snapshot cannot both
      commit.

Failure modes:
    - sqlalchemy.orm.exc.StaleDataError when the row changed since it was
      loaded (translated to ConflictError by the coordinator).
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fleet_kernel.db.base import Base

if TYPE_CHECKING:
    from fleet_kernel.domain.request import MaintenanceRequest


class MaintenanceRequestModel(Base):
    """
    Persistent maintenance request.

    Contract:
        The request row is the per-request serialization point.  Every
        successful workflow transition touches ``last_transition_at`` so the
        version is bumped even when only a child record changed.
    """

    __tablename__ = "maintenance_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('Scheduled', 'InProgress', 'Completed', 'Cancelled')",
            name="ck_maintenance_requests_valid_status",
        ),
        Index("ix_maintenance_requests_mechanic", "assigned_mechanic_id", "status"),
        Index("ix_maintenance_requests_requester", "requester_id", "status"),
    )

    vehicle_id: Mapped[str] = mapped_column(String(100), nullable=False)
    requester_id: Mapped[str] = mapped_column(String(100), nullable=False)
    assigned_mechanic_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="Scheduled")
    repair_type: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    last_transition_at: Mapped[datetime] = mapped_column(nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<MaintenanceRequest {self.id} status={self.status} v{self.version}>"

    def to_dto(self) -> MaintenanceRequest:
        """Convert ORM model to frozen domain DTO."""
        from fleet_kernel.domain.request import (
            MaintenanceRequest as MaintenanceRequestDTO,
            RequestStatus,
        )

        return MaintenanceRequestDTO(
            request_id=self.id,
            vehicle_id=self.vehicle_id,
            requester_id=self.requester_id,
            status=RequestStatus(self.status),
            repair_type=self.repair_type,
            version=self.version,
            created_at=self.created_at,
            last_transition_at=self.last_transition_at,
            assigned_mechanic_id=self.assigned_mechanic_id,
            reason=self.reason,
            comments=self.comments,
            completed_at=self.completed_at,
            cancelled_at=self.cancelled_at,
            cancellation_reason=self.cancellation_reason,
        )
