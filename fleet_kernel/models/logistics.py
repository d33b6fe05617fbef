"""
Module: fleet_kernel.models.logistics
Responsibility: ORM persistence for the physical-handling side of a request:
    the revisable plan, the five-timestamp trail, and the append-only event
    log.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One plan and one trail per request (UNIQUE request_id).
    - Trail timestamps are write-once (db/immutability.py).
    - UNIQUE(request_id, stage) on events: a milestone is stored at most
      once even if two writers race past the service checks.
    - UNIQUE(request_id, sequence) on events: position in the log comes
      from the per-request counter, not from timestamps, which may tie.
    - Events are append-only.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fleet_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from fleet_kernel.domain.logistics import (
        LogisticsEvent,
        LogisticsEventTrail,
        LogisticsPlan,
    )


class LogisticsPlanModel(Base):
    """Current pickup/return plan for a request; revised in place."""

    __tablename__ = "logistics_plans"

    __table_args__ = (
        CheckConstraint("revision >= 1", name="ck_logistics_plans_revision_positive"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("maintenance_requests.id"),
        nullable=False,
        unique=True,
    )
    pickup_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pickup_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    pickup_window_start: Mapped[datetime | None] = mapped_column(nullable=True)
    pickup_window_end: Mapped[datetime | None] = mapped_column(nullable=True)
    return_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    return_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    return_window_start: Mapped[datetime | None] = mapped_column(nullable=True)
    return_window_end: Mapped[datetime | None] = mapped_column(nullable=True)
    contact_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    revision: Mapped[int] = mapped_column(nullable=False, default=1)
    planned_by_id: Mapped[str] = mapped_column(String(100), nullable=False)
    planned_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<LogisticsPlan request={self.request_id} rev={self.revision}>"

    def to_dto(self) -> LogisticsPlan:
        """Convert ORM model to frozen domain DTO."""
        from fleet_kernel.domain.logistics import (
            LogisticsPlan as LogisticsPlanDTO,
            LogisticsPlanDetails,
            TimeWindow,
        )

        def _window(start, end):
            if start is None or end is None:
                return None
            return TimeWindow(start=start, end=end)

        details = LogisticsPlanDetails(
            pickup_required=self.pickup_required,
            pickup_address=self.pickup_address,
            pickup_window=_window(self.pickup_window_start, self.pickup_window_end),
            return_required=self.return_required,
            return_address=self.return_address,
            return_window=_window(self.return_window_start, self.return_window_end),
            contact_name=self.contact_name,
            contact_phone=self.contact_phone,
            notes=self.notes,
        )
        return LogisticsPlanDTO(
            request_id=self.request_id,
            details=details,
            revision=self.revision,
            planned_by_id=self.planned_by_id,
            planned_at=self.planned_at,
        )

    def apply_details(self, details) -> None:
        """Copy a LogisticsPlanDetails onto the row."""
        self.pickup_required = details.pickup_required
        self.pickup_address = details.pickup_address
        self.pickup_window_start = details.pickup_window.start if details.pickup_window else None
        self.pickup_window_end = details.pickup_window.end if details.pickup_window else None
        self.return_required = details.return_required
        self.return_address = details.return_address
        self.return_window_start = details.return_window.start if details.return_window else None
        self.return_window_end = details.return_window.end if details.return_window else None
        self.contact_name = details.contact_name
        self.contact_phone = details.contact_phone
        self.notes = details.notes


class LogisticsTrailModel(Base):
    """Milestone timestamps for a request; each set at most once."""

    __tablename__ = "logistics_trails"

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("maintenance_requests.id"),
        nullable=False,
        unique=True,
    )
    received_at: Mapped[datetime | None] = mapped_column(nullable=True)
    picked_up_at: Mapped[datetime | None] = mapped_column(nullable=True)
    work_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    ready_for_return_at: Mapped[datetime | None] = mapped_column(nullable=True)
    returned_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<LogisticsTrail request={self.request_id}>"

    def to_dto(self) -> LogisticsEventTrail:
        from fleet_kernel.domain.logistics import LogisticsEventTrail as TrailDTO

        return TrailDTO(
            request_id=self.request_id,
            received_at=self.received_at,
            picked_up_at=self.picked_up_at,
            work_started_at=self.work_started_at,
            ready_for_return_at=self.ready_for_return_at,
            returned_at=self.returned_at,
        )


class LogisticsEventModel(Base):
    """One recorded milestone. Append-only."""

    __tablename__ = "logistics_events"

    __table_args__ = (
        UniqueConstraint("request_id", "stage", name="uq_logistics_events_request_stage"),
        UniqueConstraint("request_id", "sequence", name="uq_logistics_events_request_seq"),
        CheckConstraint(
            "stage IN ('Received', 'PickedUp', 'WorkStarted', 'ReadyForReturn', 'Returned')",
            name="ck_logistics_events_valid_stage",
        ),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("maintenance_requests.id"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(nullable=False)
    stage: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<LogisticsEvent request={self.request_id} {self.stage}>"

    def to_dto(self) -> LogisticsEvent:
        from fleet_kernel.domain.logistics import (
            LogisticsEvent as LogisticsEventDTO,
            LogisticsStage,
        )

        return LogisticsEventDTO(
            request_id=self.request_id,
            sequence=self.sequence,
            stage=LogisticsStage(self.stage),
            actor_id=self.actor_id,
            occurred_at=self.occurred_at,
            note=self.note,
        )
