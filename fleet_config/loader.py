"""
Configuration Loader (``fleet_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into the typed
``fleet_config.schema`` dataclasses.  The single public entry point for
runtime config is ``fleet_config.get_active_config()``.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; no silent defaults for required fields.
* Every parsed object is a frozen dataclass.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Negative tolerances, empty admin role list  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from fleet_config.schema import (
    DatabaseConfig,
    InvoiceTolerance,
    RolePolicy,
    WorkflowConfig,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, field: str) -> Decimal:
    """Parse a non-negative decimal; YAML floats go through ``str``."""
    try:
        number = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"{field}: cannot parse decimal from {value!r}") from exc
    if not number.is_finite() or number < 0:
        raise ValueError(f"{field}: must be a finite, non-negative number, got {value!r}")
    return number


def parse_role_policy(data: dict[str, Any]) -> RolePolicy:
    admin = frozenset(data["admin"])
    if not admin:
        raise ValueError("roles.admin: at least one administrator role is required")
    return RolePolicy(
        admin_roles=admin,
        reviewer_roles=frozenset(data.get("reviewer", ())),
    )


def parse_invoice_tolerance(data: dict[str, Any]) -> InvoiceTolerance:
    return InvoiceTolerance(
        absolute=parse_decimal(data.get("absolute", 0), "invoice_tolerance.absolute"),
        percent=parse_decimal(data.get("percent", 0), "invoice_tolerance.percent"),
    )


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    return DatabaseConfig(
        url=data["url"],
        echo=bool(data.get("echo", False)),
        pool_size=int(data.get("pool_size", 20)),
        max_overflow=int(data.get("max_overflow", 10)),
        pool_timeout=int(data.get("pool_timeout", 30)),
    )


def parse_workflow_config(data: dict[str, Any]) -> WorkflowConfig:
    """
    Parse a complete ``WorkflowConfig`` from a dict.

    The checksum is computed over the dict as given, so two files that
    parse identically always fingerprint identically.
    """
    return WorkflowConfig(
        config_id=data["config_id"],
        version=int(data["version"]),
        roles=parse_role_policy(data["roles"]),
        invoice_tolerance=parse_invoice_tolerance(data.get("invoice_tolerance", {})),
        database=parse_database(data["database"]),
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
