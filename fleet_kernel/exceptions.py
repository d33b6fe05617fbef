"""
Typed Exception Hierarchy for the Fleet Maintenance Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The workflow kernel is driven by two untrusted actors (requester side and
mechanic) from several browser sessions at once.  Callers must be able to
tell "you are out of turn" from "somebody else got there first" without
parsing messages:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example - RIGHT way:
    try:
        machine.negotiate(request_id, actor_id, Decimal("420"), "")
    except OutOfTurnError as e:
        api_response(code=e.code, last_actor=e.last_actor_id)
    except ConflictError as e:
        refetch_and_retry()   # the only retryable error

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from FleetKernelError:

    FleetKernelError (base)
    |
    +-- WorkflowError
    |   +-- InvalidTransitionError
    |   +-- OutOfTurnError
    |   +-- NegotiationNotResolvedError
    |
    +-- AuthorizationError
    |   +-- ForbiddenError
    |
    +-- LogisticsError
    |   +-- SequenceViolationError
    |   +-- AlreadyRecordedError
    |
    +-- ConcurrencyError
    |   +-- ConflictError
    |
    +-- NotFoundError
    |   +-- RequestNotFoundError
    |   +-- DeliberationNotFoundError
    |
    +-- ValidationError
    |
    +-- AuditError
    |   +-- LedgerChainBrokenError
    |   +-- LedgerInconsistencyError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Workflow        | INVALID_TRANSITION          | Action illegal for current status
                | OUT_OF_TURN                 | Same actor moving twice in a row
                | NEGOTIATION_NOT_RESOLVED    | Invoice before cost is Agreed
----------------|-----------------------------|-----------------------------------------
Authorization   | FORBIDDEN                   | Actor lacks the role/identity
----------------|-----------------------------|-----------------------------------------
Logistics       | SEQUENCE_VIOLATION          | Event fired before its predecessor
                | ALREADY_RECORDED            | Event fired a second time
----------------|-----------------------------|-----------------------------------------
Concurrency     | CONFLICT                    | Snapshot changed between read and write
----------------|-----------------------------|-----------------------------------------
Lookup          | NOT_FOUND                   | Unknown request / deliberation
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_ERROR            | Malformed amount, window, invoice line
----------------|-----------------------------|-----------------------------------------
Audit           | LEDGER_CHAIN_BROKEN         | History hash chain does not verify
                | LEDGER_INCONSISTENT         | Cached deliberation != ledger replay
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Modifying an append-only record

===============================================================================
"""


class FleetKernelError(Exception):
    """
    Base exception for all fleet kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.  ``retryable`` tells the coordinator whether the
    caller may re-fetch and re-apply automatically.
    """

    code: str = "FLEET_KERNEL_ERROR"
    retryable: bool = False


# Workflow-related exceptions


class WorkflowError(FleetKernelError):
    """Base exception for workflow state machine errors."""

    code: str = "WORKFLOW_ERROR"


class InvalidTransitionError(WorkflowError):
    """Action is not legal for the current status."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, entity_type: str, current_state: str, action: str, reason: str = ""):
        self.entity_type = entity_type
        self.current_state = current_state
        self.action = action
        self.reason = reason
        message = f"Cannot {action} {entity_type} in state {current_state}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class OutOfTurnError(WorkflowError):
    """
    Turn-taking violation.

    A negotiating party may not act twice in succession on the same open
    offer; the counterparty must respond first.
    """

    code: str = "OUT_OF_TURN"

    def __init__(self, request_id: str, actor_id: str, last_actor_id: str):
        self.request_id = request_id
        self.actor_id = actor_id
        self.last_actor_id = last_actor_id
        super().__init__(
            f"Actor {actor_id} made the last move on request {request_id}; "
            "waiting for the counterparty"
        )


class NegotiationNotResolvedError(WorkflowError):
    """Invoice attempted while the cost deliberation is not Agreed."""

    code: str = "NEGOTIATION_NOT_RESOLVED"

    def __init__(self, request_id: str, deliberation_status: str):
        self.request_id = request_id
        self.deliberation_status = deliberation_status
        super().__init__(
            f"Cost deliberation for request {request_id} is "
            f"{deliberation_status}, not Agreed"
        )


# Authorization-related exceptions


class AuthorizationError(FleetKernelError):
    """Base exception for actor permission errors."""

    code: str = "AUTHORIZATION_ERROR"


class ForbiddenError(AuthorizationError):
    """Actor lacks the role or identity required for the action."""

    code: str = "FORBIDDEN"

    def __init__(self, actor_id: str, action: str, reason: str):
        self.actor_id = actor_id
        self.action = action
        self.reason = reason
        super().__init__(f"Actor {actor_id} may not {action}: {reason}")


# Logistics-related exceptions


class LogisticsError(FleetKernelError):
    """Base exception for physical-handling sequence errors."""

    code: str = "LOGISTICS_ERROR"


class SequenceViolationError(LogisticsError):
    """Logistics event fired before its predecessor (or out of time order)."""

    code: str = "SEQUENCE_VIOLATION"

    def __init__(self, request_id: str, stage: str, reason: str):
        self.request_id = request_id
        self.stage = stage
        self.reason = reason
        super().__init__(
            f"Cannot record {stage} on request {request_id}: {reason}"
        )


class AlreadyRecordedError(LogisticsError):
    """Logistics event was already recorded; repeats are rejected, not merged."""

    code: str = "ALREADY_RECORDED"

    def __init__(self, request_id: str, stage: str, recorded_at: str):
        self.request_id = request_id
        self.stage = stage
        self.recorded_at = recorded_at
        super().__init__(
            f"{stage} already recorded on request {request_id} at {recorded_at}"
        )


# Concurrency-related exceptions


class ConcurrencyError(FleetKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConflictError(ConcurrencyError):
    """
    Optimistic concurrency collision.

    The snapshot the caller acted on changed before the write committed.
    This is the only error the caller should retry automatically.
    """

    code: str = "CONFLICT"
    retryable: bool = True

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Conflict on {entity_type} {entity_id}: "
            "modified by another session, refresh and retry"
        )


# Lookup-related exceptions


class NotFoundError(FleetKernelError):
    """Requested entity does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class RequestNotFoundError(NotFoundError):
    """Maintenance request with given ID was not found."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__("MaintenanceRequest", request_id)


class DeliberationNotFoundError(NotFoundError):
    """No cost deliberation exists yet for the request."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__("CostDeliberation", request_id)


# Validation


class ValidationError(FleetKernelError):
    """Payload supplied by an actor is malformed."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} ({value!r}): {reason}")


# Audit-related exceptions


class AuditError(FleetKernelError):
    """Base exception for audit trail errors."""

    code: str = "AUDIT_ERROR"


class LedgerChainBrokenError(AuditError):
    """
    Negotiation history hash chain validation failed.

    Treat as a security incident: an append-only record was altered
    outside the kernel.
    """

    code: str = "LEDGER_CHAIN_BROKEN"

    def __init__(self, request_id: str, sequence_number: int, reason: str):
        self.request_id = request_id
        self.sequence_number = sequence_number
        self.reason = reason
        super().__init__(
            f"History chain broken for request {request_id} at "
            f"#{sequence_number}: {reason}"
        )


class LedgerInconsistencyError(AuditError):
    """Cached cost deliberation disagrees with the replayed history."""

    code: str = "LEDGER_INCONSISTENT"

    def __init__(self, request_id: str, field: str, cached: object, replayed: object):
        self.request_id = request_id
        self.field = field
        self.cached = cached
        self.replayed = replayed
        super().__init__(
            f"Deliberation {request_id} field {field}: cached={cached!r} "
            f"replayed={replayed!r}"
        )


# Immutability-related exceptions


class ImmutabilityError(FleetKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Negotiation history entries, logistics events, progress updates and
    invoices are immutable after creation.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
