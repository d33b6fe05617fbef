"""
Workflow configuration schema.

Frozen dataclasses the loader parses ``defaults.yaml`` (or an operator's
override file) into.  ``RolePolicy`` and ``InvoiceTolerance`` are the
kernel's own value types, so a loaded config plugs straight into the
coordinator without a translation layer.
"""

from __future__ import annotations

from dataclasses import dataclass

from fleet_kernel.domain.invoice import InvoiceTolerance
from fleet_kernel.domain.request import RolePolicy

__all__ = [
    "DatabaseConfig",
    "InvoiceTolerance",
    "RolePolicy",
    "WorkflowConfig",
]


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings handed to ``init_engine_from_url``."""

    url: str
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout: int = 30

    @property
    def redacted_url(self) -> str:
        """URL with any password masked, for logs."""
        scheme, sep, rest = self.url.partition("://")
        if not sep or "@" not in rest:
            return self.url
        credentials, host = rest.rsplit("@", 1)
        user = credentials.split(":", 1)[0]
        return f"{scheme}://{user}:***@{host}"


@dataclass(frozen=True)
class WorkflowConfig:
    """The complete runtime configuration of the workflow kernel."""

    config_id: str
    version: int
    roles: RolePolicy
    invoice_tolerance: InvoiceTolerance
    database: DatabaseConfig
    checksum: str = ""
