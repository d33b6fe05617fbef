"""
InvoiceFinalizer -- closes a maintenance request with its invoice.

Responsibility:
    Validates that the job may be closed, records labor and parts, and
    flips the request to Completed in the same flush.  The sole path into
    ``Completed``.

Architecture position:
    Kernel > Services -- imperative shell.  Called by the
    RequestWorkflowCoordinator; never commits.

Invariants enforced:
    - If a cost deliberation exists it must be Agreed.
    - Invoice and status flip are one unit: both flush together or neither
      survives the caller's rollback.
    - The kernel computes no cost.  A total that strays from the agreed
      cost beyond the configured tolerance yields a non-blocking
      ``InvoiceWarning``.

Failure modes:
    - RequestNotFoundError, InvalidTransitionError, ForbiddenError
    - NegotiationNotResolvedError
    - ValidationError for negative hours/totals or malformed part lines
"""

from collections.abc import Mapping
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from fleet_kernel.db.types import MONEY_DECIMAL_PLACES, QUANTITY_DECIMAL_PLACES, to_decimal
from fleet_kernel.domain.clock import Clock, SystemClock
from fleet_kernel.domain.invoice import (
    Invoice,
    InvoiceTolerance,
    InvoiceWarning,
    PartUsed,
    check_cost_divergence,
)
from fleet_kernel.domain.negotiation import DeliberationStatus
from fleet_kernel.domain.request import RequestStatus
from fleet_kernel.exceptions import (
    InvalidTransitionError,
    NegotiationNotResolvedError,
    ValidationError,
)
from fleet_kernel.logging_config import get_logger
from fleet_kernel.models.cost_deliberation import CostDeliberationModel
from fleet_kernel.models.invoice import InvoiceModel, InvoicePartModel
from fleet_kernel.services.request_guard import (
    load_request,
    require_assigned_mechanic,
    require_open,
    touch,
)

logger = get_logger("services.invoice")


def _non_negative(field: str, value, places: int = MONEY_DECIMAL_PLACES) -> Decimal:
    try:
        number = to_decimal(value)
    except ValueError as exc:
        raise ValidationError(field, value, str(exc)) from exc
    if number < 0:
        raise ValidationError(field, value, "must not be negative")
    if number.as_tuple().exponent < -places:
        raise ValidationError(field, value, f"at most {places} decimal places")
    return number


def normalize_parts(parts_used) -> tuple[PartUsed, ...]:
    """Validate part lines given as ``PartUsed`` objects or mappings."""
    normalized = []
    for index, part in enumerate(parts_used or ()):
        field = f"parts_used[{index}]"
        if isinstance(part, Mapping):
            name = part.get("name")
            quantity = part.get("quantity")
            unit_price = part.get("unit_price")
        else:
            name = getattr(part, "name", None)
            quantity = getattr(part, "quantity", None)
            unit_price = getattr(part, "unit_price", None)

        if not isinstance(name, str) or not name.strip():
            raise ValidationError(f"{field}.name", name, "must be a non-empty string")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError(f"{field}.quantity", quantity, "must be an integer >= 1")
        price = _non_negative(f"{field}.unit_price", unit_price)
        normalized.append(PartUsed(name=name.strip(), quantity=quantity, unit_price=price))
    return tuple(normalized)


class InvoiceFinalizer:
    """
    Completes a request with its invoice.

    Contract:
        ``complete_with_invoice`` returns the invoice DTO and any warnings;
        warnings never block completion.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        tolerance: InvoiceTolerance | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._tolerance = tolerance or InvoiceTolerance()

    def complete_with_invoice(
        self,
        request_id: UUID,
        actor_id: str,
        labor_hours,
        total_cost,
        parts_used=(),
    ) -> tuple[Invoice, tuple[InvoiceWarning, ...]]:
        action = "complete_with_invoice"
        request = load_request(self._session, request_id)
        require_open(request, action)
        require_assigned_mechanic(request, actor_id, action)

        deliberation = self._session.execute(
            select(CostDeliberationModel)
            .where(CostDeliberationModel.request_id == request_id)
        ).scalar_one_or_none()
        if deliberation is not None and deliberation.status != DeliberationStatus.AGREED.value:
            raise NegotiationNotResolvedError(str(request_id), deliberation.status)

        hours = _non_negative("labor_hours", labor_hours, places=QUANTITY_DECIMAL_PLACES)
        total = _non_negative("total_cost", total_cost)
        parts = normalize_parts(parts_used)

        existing = self._session.execute(
            select(InvoiceModel).where(InvoiceModel.request_id == request_id)
        ).scalar_one_or_none()
        if existing is not None:
            raise InvalidTransitionError(
                "Invoice", "Issued", action, "request already has an invoice",
            )

        now = self._clock.now_utc()
        invoice = InvoiceModel(
            request_id=request_id,
            labor_hours=hours,
            total_cost=total,
            issued_by_id=actor_id,
            issued_at=now,
        )
        for line_number, part in enumerate(parts, start=1):
            invoice.parts.append(InvoicePartModel(
                line_number=line_number,
                name=part.name,
                quantity=part.quantity,
                unit_price=part.unit_price,
            ))
        self._session.add(invoice)

        request.status = RequestStatus.COMPLETED.value
        request.completed_at = now
        touch(request, now)
        self._session.flush()

        agreed = deliberation.agreed_cost if deliberation is not None else None
        warning = check_cost_divergence(total, agreed, self._tolerance)
        warnings = (warning,) if warning is not None else ()
        if warning is not None:
            logger.warning(
                "invoice_cost_divergence",
                extra={
                    "request_id": str(request_id),
                    "total_cost": total,
                    "agreed_cost": agreed,
                    "difference": warning.difference,
                    "tolerance": warning.tolerance,
                },
            )

        logger.info(
            "invoice_issued",
            extra={
                "request_id": str(request_id),
                "actor_id": actor_id,
                "labor_hours": hours,
                "total_cost": total,
                "part_count": len(parts),
            },
        )
        return invoice.to_dto(), warnings
