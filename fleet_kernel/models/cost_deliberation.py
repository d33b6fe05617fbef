"""
Module: fleet_kernel.models.cost_deliberation
Responsibility: ORM persistence for the cached cost deliberation state of a
    request.  The negotiation history is the authoritative record; this row
    is the fast-path cache the state machine checks and updates.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One deliberation per request (UNIQUE request_id).
    - proposed_cost and agreed_cost are write-once (db/immutability.py).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from fleet_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from fleet_kernel.domain.negotiation import CostDeliberation


class CostDeliberationModel(Base):
    """Persistent cost deliberation, one per maintenance request."""

    __tablename__ = "cost_deliberations"

    __table_args__ = (
        CheckConstraint(
            "status IN ('MechanicsSelected', 'Proposed', 'Negotiating', 'Agreed')",
            name="ck_cost_deliberations_valid_status",
        ),
        CheckConstraint(
            "current_round >= 0",
            name="ck_cost_deliberations_round_non_negative",
        ),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("maintenance_requests.id"),
        nullable=False,
        unique=True,
    )
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    proposed_cost: Mapped[Decimal | None] = mapped_column(nullable=True)
    negotiated_cost: Mapped[Decimal | None] = mapped_column(nullable=True)
    agreed_cost: Mapped[Decimal | None] = mapped_column(nullable=True)
    current_round: Mapped[int] = mapped_column(nullable=False, default=0)
    last_actor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    selected_by_id: Mapped[str] = mapped_column(String(100), nullable=False)
    selected_at: Mapped[datetime] = mapped_column(nullable=False)
    agreed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return (
            f"<CostDeliberation request={self.request_id} "
            f"status={self.status} round={self.current_round}>"
        )

    def to_dto(self) -> CostDeliberation:
        """Convert ORM model to frozen domain DTO."""
        from fleet_kernel.domain.negotiation import (
            CostDeliberation as CostDeliberationDTO,
            DeliberationStatus,
        )

        return CostDeliberationDTO(
            request_id=self.request_id,
            status=DeliberationStatus(self.status),
            current_round=self.current_round,
            proposed_cost=self.proposed_cost,
            negotiated_cost=self.negotiated_cost,
            agreed_cost=self.agreed_cost,
            last_actor_id=self.last_actor_id,
            selected_by_id=self.selected_by_id,
            selected_at=self.selected_at,
            agreed_at=self.agreed_at,
        )
