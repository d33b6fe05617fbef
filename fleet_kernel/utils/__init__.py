"""Utility modules for the fleet kernel."""

from fleet_kernel.utils.hashing import (
    canonicalize_json,
    hash_history_entry,
    hash_payload,
)

__all__ = [
    "canonicalize_json",
    "hash_history_entry",
    "hash_payload",
]
