"""
fleet_config -- single public entrypoint for workflow configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component may read configuration
    files or environment variables directly.

Architecture position:
    Configuration -- sits above ``fleet_kernel``.  The kernel MUST NEVER
    import from ``fleet_config``; the loaded ``WorkflowConfig`` carries
    kernel value types (``RolePolicy``, ``InvoiceTolerance``) that callers
    hand to the coordinator.

Failure modes:
    - ``FileNotFoundError`` -- the requested config file does not exist.
    - ``ValueError`` / ``KeyError`` -- schema violations.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``FLEET_CONFIG_TRACE`` log entry with the config id, version and
    checksum, tying each workflow decision back to the configuration that
    governed it.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from fleet_config.loader import load_yaml_file, parse_workflow_config
from fleet_config.schema import (
    DatabaseConfig,
    InvoiceTolerance,
    RolePolicy,
    WorkflowConfig,
)

__all__ = [
    "DATABASE_URL_ENV",
    "DatabaseConfig",
    "InvoiceTolerance",
    "RolePolicy",
    "WorkflowConfig",
    "get_active_config",
]

_logger = logging.getLogger("fleet_kernel.config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"

DATABASE_URL_ENV = "FLEET_DATABASE_URL"


def get_active_config(
    config_path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> WorkflowConfig:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: YAML file to load.  Defaults to the packaged
            ``defaults.yaml``.
        environ: Environment to read overrides from.  Defaults to
            ``os.environ``.

    Returns:
        WorkflowConfig with ``database.url`` replaced by
        ``FLEET_DATABASE_URL`` when that variable is set.
    """
    path = Path(config_path) if config_path is not None else _DEFAULT_CONFIG_PATH
    env = os.environ if environ is None else environ

    data = load_yaml_file(path)
    override = env.get(DATABASE_URL_ENV)
    if override:
        data.setdefault("database", {})
        data["database"] = {**data["database"], "url": override}

    config = parse_workflow_config(data)

    _logger.info(
        "FLEET_CONFIG_TRACE",
        extra={
            "trace_type": "FLEET_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "config_path": str(path),
            "database_url": config.database.redacted_url,
            "database_url_overridden": bool(override),
            "admin_role_count": len(config.roles.admin_roles),
            "reviewer_role_count": len(config.roles.reviewer_roles),
        },
    )
    return config
