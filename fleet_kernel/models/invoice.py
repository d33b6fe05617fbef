"""
Module: fleet_kernel.models.invoice
Responsibility: ORM persistence for completion invoices and their part lines.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One invoice per request (UNIQUE request_id).
    - Part lines ordered by line_number, UNIQUE(invoice_id, line_number).
    - Invoices and parts are immutable after creation (db/immutability.py).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fleet_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from fleet_kernel.domain.invoice import Invoice


class InvoiceModel(Base):
    """Persistent completion invoice."""

    __tablename__ = "invoices"

    __table_args__ = (
        CheckConstraint("labor_hours >= 0", name="ck_invoices_labor_non_negative"),
        CheckConstraint("total_cost >= 0", name="ck_invoices_total_non_negative"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("maintenance_requests.id"),
        nullable=False,
        unique=True,
    )
    labor_hours: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    total_cost: Mapped[Decimal] = mapped_column(nullable=False)
    issued_by_id: Mapped[str] = mapped_column(String(100), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(nullable=False)

    parts: Mapped[list["InvoicePartModel"]] = relationship(
        "InvoicePartModel",
        back_populates="invoice",
        order_by="InvoicePartModel.line_number",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Invoice request={self.request_id} total={self.total_cost}>"

    def to_dto(self) -> Invoice:
        """Convert ORM model to frozen domain DTO."""
        from fleet_kernel.domain.invoice import Invoice as InvoiceDTO

        return InvoiceDTO(
            request_id=self.request_id,
            labor_hours=self.labor_hours,
            total_cost=self.total_cost,
            parts_used=tuple(p.to_dto() for p in self.parts),
            issued_by_id=self.issued_by_id,
            issued_at=self.issued_at,
        )


class InvoicePartModel(Base):
    """One part line on an invoice."""

    __tablename__ = "invoice_parts"

    __table_args__ = (
        UniqueConstraint("invoice_id", "line_number", name="uq_invoice_parts_line"),
        CheckConstraint("quantity >= 1", name="ck_invoice_parts_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="ck_invoice_parts_price_non_negative"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("invoices.id"),
        nullable=False,
    )
    line_number: Mapped[int] = mapped_column(nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    quantity: Mapped[int] = mapped_column(nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)

    invoice: Mapped["InvoiceModel"] = relationship(
        "InvoiceModel",
        back_populates="parts",
    )

    def to_dto(self):
        from fleet_kernel.domain.invoice import PartUsed

        return PartUsed(
            name=self.name,
            quantity=self.quantity,
            unit_price=self.unit_price,
        )
