"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

The negotiation history is the audit record of who offered what and when.
Invoices close a job for billing.  Neither may be rewritten after the fact;
corrections are new records, never edits.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
We register listeners that intercept these events and check our invariants:

    session.flush()
         |
         v
    [before_update event] --> _check_*() --> ImmutabilityViolationError
         |                                         ^
         v                                         |
    [before_delete event] --> _reject_delete() ----+
         |
         v
    SQL sent to database (only if checks pass)

If a check fails, we raise ImmutabilityViolationError and the transaction
is aborted. The database is never modified.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                  | When Immutable                   | What
------------------------|----------------------------------|----------------------------
NegotiationHistoryEntry | ALWAYS (from creation)           | Whole row, no delete
LogisticsEvent          | ALWAYS (from creation)           | Whole row, no delete
ProgressUpdate          | ALWAYS (from creation)           | Whole row, no delete
Invoice / InvoicePart   | ALWAYS (from creation)           | Whole row, no delete
LogisticsTrail          | Per column, once non-null        | Milestone timestamps
CostDeliberation        | Per column, once non-null        | proposed_cost, agreed_cost
CostDeliberation        | ALWAYS                           | No delete

===============================================================================
USAGE
===============================================================================

init_engine_from_url() registers the listeners, so a host that builds its
engine there needs nothing more.  Anything that maps the models without it
registers them itself:

    from fleet_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY - never in production):

    from fleet_kernel.db.immutability import unregister_immutability_listeners
    unregister_immutability_listeners()
    # ... tamper to prove detection ...
    register_immutability_listeners()

===============================================================================
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from fleet_kernel.exceptions import ImmutabilityViolationError
from fleet_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

# Entity label used in errors/logs, keyed by model class name
_APPEND_ONLY_LABELS = {
    "NegotiationHistoryModel": "NegotiationHistoryEntry",
    "LogisticsEventModel": "LogisticsEvent",
    "ProgressUpdateModel": "ProgressUpdate",
    "InvoiceModel": "Invoice",
    "InvoicePartModel": "InvoicePart",
}

_TRAIL_FIELDS = (
    "received_at",
    "picked_up_at",
    "work_started_at",
    "ready_for_return_at",
    "returned_at",
)

_DELIBERATION_WRITE_ONCE_FIELDS = ("proposed_cost", "agreed_cost")


def _violation(entity_type: str, target, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "reason": reason,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _reject_update(mapper, connection, target):
    """Append-only records: any UPDATE is a violation."""
    label = _APPEND_ONLY_LABELS.get(type(target).__name__, type(target).__name__)
    raise _violation(label, target, "UPDATE", f"{label} records are immutable -- cannot modify")


def _reject_delete(mapper, connection, target):
    """Append-only records and deliberations: any DELETE is a violation."""
    name = type(target).__name__
    label = _APPEND_ONLY_LABELS.get(name, name.removesuffix("Model"))
    raise _violation(label, target, "DELETE", f"{label} records are immutable -- cannot delete")


def _check_write_once(entity_type: str, fields: tuple[str, ...]):
    """
    Build a before_update listener that freezes each field once it is set.

    Uses attribute history: ``history.deleted`` holds the value loaded from
    the database.  Setting None -> value is allowed; changing a non-null
    value is not.
    """

    def _listener(mapper, connection, target):
        for field in fields:
            history = get_history(target, field)
            if not history.has_changes():
                continue
            previous = [v for v in history.deleted if v is not None]
            if previous:
                raise _violation(
                    entity_type,
                    target,
                    "UPDATE",
                    f"{field} is already recorded ({previous[0]}) -- cannot change",
                )

    _listener.__name__ = f"_check_{entity_type.lower()}_write_once"
    return _listener


_check_trail_write_once = _check_write_once("LogisticsTrail", _TRAIL_FIELDS)
_check_deliberation_write_once = _check_write_once(
    "CostDeliberation", _DELIBERATION_WRITE_ONCE_FIELDS,
)


def _listener_specs():
    from fleet_kernel.models import (
        CostDeliberationModel,
        InvoiceModel,
        InvoicePartModel,
        LogisticsEventModel,
        LogisticsTrailModel,
        NegotiationHistoryModel,
        ProgressUpdateModel,
    )

    specs = []
    for model in (
        NegotiationHistoryModel,
        LogisticsEventModel,
        ProgressUpdateModel,
        InvoiceModel,
        InvoicePartModel,
    ):
        specs.append((model, "before_update", _reject_update))
        specs.append((model, "before_delete", _reject_delete))

    specs.append((LogisticsTrailModel, "before_update", _check_trail_write_once))
    specs.append((LogisticsTrailModel, "before_delete", _reject_delete))
    specs.append((CostDeliberationModel, "before_update", _check_deliberation_write_once))
    specs.append((CostDeliberationModel, "before_delete", _reject_delete))
    return specs


def register_immutability_listeners() -> None:
    """
    Register all immutability enforcement event listeners.

    Idempotent: listeners already registered are skipped.  Call after the
    models are importable and before any database work begins.
    """
    for target, name, fn in _listener_specs():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, name, fn in _listener_specs():
        if event.contains(target, name, fn):
            event.remove(target, name, fn)
