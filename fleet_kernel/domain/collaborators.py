"""
External collaborator interfaces (``fleet_kernel.domain.collaborators``).

Responsibility
--------------
Pluggable interfaces for the systems the workflow kernel consumes but
does not own: identity/role resolution, vehicle and user directories
for display metadata, and post-commit notification dispatch.  Simple
in-process implementations back tests and embedded use.

Architecture position
---------------------
**Kernel domain layer**.  ZERO I/O in the interfaces; the in-memory
implementations hold plain dicts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Protocol
from uuid import UUID


@dataclass(frozen=True)
class VehicleInfo:
    """Display metadata for a vehicle."""

    vehicle_id: str
    make: str | None = None
    model: str | None = None
    license_plate: str | None = None


@dataclass(frozen=True)
class StateChanged:
    """Fact emitted after every committed transition."""

    request_id: UUID
    operation: str
    actor_id: str
    request_status: str
    version: int
    occurred_at: datetime
    deliberation_status: str | None = None
    logistics_stage: str | None = None


# =========================================================================
# Protocols
# =========================================================================


class IdentityProvider(Protocol):
    """Resolves the roles an authenticated actor holds."""

    def get_actor_roles(self, actor_id: str) -> tuple[str, ...]:
        """Return all roles for an actor (empty if unknown)."""
        ...


class VehicleDirectory(Protocol):
    """Read-only vehicle lookup for display metadata."""

    def get_vehicle(self, vehicle_id: str) -> VehicleInfo | None:
        ...


class UserDirectory(Protocol):
    """Read-only user lookup for display metadata."""

    def get_display_name(self, user_id: str) -> str | None:
        ...


class NotificationDispatcher(Protocol):
    """Fire-and-forget sink for ``StateChanged`` facts."""

    def dispatch(self, event: StateChanged) -> None:
        ...


# =========================================================================
# In-process implementations
# =========================================================================


class StaticIdentityProvider:
    """Roles from a fixed mapping of actor id to role names."""

    def __init__(self, roles_by_actor: Mapping[str, tuple[str, ...] | list[str]] | None = None):
        self._roles = {k: tuple(v) for k, v in (roles_by_actor or {}).items()}

    def get_actor_roles(self, actor_id: str) -> tuple[str, ...]:
        return self._roles.get(actor_id, ())

    def grant(self, actor_id: str, *roles: str) -> None:
        self._roles[actor_id] = self._roles.get(actor_id, ()) + tuple(roles)


class InMemoryVehicleDirectory:
    def __init__(self, vehicles: list[VehicleInfo] | None = None):
        self._vehicles = {v.vehicle_id: v for v in vehicles or []}

    def add(self, vehicle: VehicleInfo) -> None:
        self._vehicles[vehicle.vehicle_id] = vehicle

    def get_vehicle(self, vehicle_id: str) -> VehicleInfo | None:
        return self._vehicles.get(vehicle_id)


class InMemoryUserDirectory:
    def __init__(self, names: Mapping[str, str] | None = None):
        self._names = dict(names or {})

    def get_display_name(self, user_id: str) -> str | None:
        return self._names.get(user_id)


@dataclass
class RecordingDispatcher:
    """Keeps every dispatched fact; used by tests."""

    events: list[StateChanged] = field(default_factory=list)

    def dispatch(self, event: StateChanged) -> None:
        self.events.append(event)


class NullDispatcher:
    """Drops every fact."""

    def dispatch(self, event: StateChanged) -> None:
        return None
