"""Selectors for the fleet kernel (read side)."""

from fleet_kernel.selectors.workflow_selector import WorkflowSelector

__all__ = [
    "WorkflowSelector",
]
