"""
Invoice domain types (``fleet_kernel.domain.invoice``).

Pure value objects for the completion invoice and the non-blocking check
that compares the invoiced total with the agreed cost.  The kernel never
computes the total itself; it only records and compares actor-supplied
numbers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID


@dataclass(frozen=True)
class PartUsed:
    """One invoiced part line."""

    name: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class Invoice:
    """Immutable completion invoice."""

    request_id: UUID
    labor_hours: Decimal
    total_cost: Decimal
    parts_used: tuple[PartUsed, ...]
    issued_by_id: str
    issued_at: datetime

    @property
    def parts_total(self) -> Decimal:
        return sum((p.line_total for p in self.parts_used), Decimal("0"))


@dataclass(frozen=True)
class InvoiceWarning:
    """Surfaced, non-fatal finding about an invoice."""

    code: str
    message: str
    total_cost: Decimal
    agreed_cost: Decimal
    difference: Decimal
    tolerance: Decimal


@dataclass(frozen=True)
class InvoiceTolerance:
    """How far an invoice total may drift from the agreed cost silently."""

    absolute: Decimal = Decimal("0")
    percent: Decimal = Decimal("0")


COST_DIVERGENCE = "INVOICE_COST_DIVERGENCE"


def divergence_tolerance(
    agreed_cost: Decimal,
    absolute: Decimal,
    percent: Decimal,
) -> Decimal:
    """Allowed gap: the larger of a fixed amount and a share of the agreed cost."""
    return max(absolute, agreed_cost * percent / Decimal("100"))


def check_cost_divergence(
    total_cost: Decimal,
    agreed_cost: Decimal | None,
    tolerance_policy: InvoiceTolerance,
) -> InvoiceWarning | None:
    """
    Compare the invoiced total against the agreed cost.

    Returns an ``InvoiceWarning`` when the gap exceeds the tolerance, or
    None when no cost was agreed or the totals are close enough.
    """
    if agreed_cost is None:
        return None
    difference = abs(total_cost - agreed_cost)
    tolerance = divergence_tolerance(
        agreed_cost, tolerance_policy.absolute, tolerance_policy.percent,
    )
    if difference <= tolerance:
        return None
    return InvoiceWarning(
        code=COST_DIVERGENCE,
        message=(
            f"Invoice total {total_cost} differs from agreed cost "
            f"{agreed_cost} by {difference} (tolerance {tolerance})"
        ),
        total_cost=total_cost,
        agreed_cost=agreed_cost,
        difference=difference,
        tolerance=tolerance,
    )
