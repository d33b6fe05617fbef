"""
Module: fleet_kernel.models.progress_update
Responsibility: ORM persistence for mechanic progress notes.  Append-only.

Architecture position: Kernel > Models.  May import from db/base.py only.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Date, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fleet_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from fleet_kernel.domain.request import ProgressUpdate


class ProgressUpdateModel(Base):
    """Persistent progress note. Append-only."""

    __tablename__ = "progress_updates"

    __table_args__ = (
        UniqueConstraint("request_id", "sequence", name="uq_progress_updates_request_seq"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("maintenance_requests.id"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    comment: Mapped[str] = mapped_column(Text, nullable=False)
    expected_completion_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    posted_at: Mapped[datetime] = mapped_column(nullable=False)

    def to_dto(self) -> ProgressUpdate:
        from fleet_kernel.domain.request import ProgressUpdate as ProgressUpdateDTO

        return ProgressUpdateDTO(
            request_id=self.request_id,
            sequence=self.sequence,
            actor_id=self.actor_id,
            comment=self.comment,
            posted_at=self.posted_at,
            expected_completion_date=self.expected_completion_date,
        )
