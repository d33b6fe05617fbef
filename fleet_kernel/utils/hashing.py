"""
SHA-256 helpers for the negotiation history chain.

Payloads are hashed over a canonical JSON form (sorted keys, no spaces,
normalized decimals) so the same move always produces the same digest.
Each entry hash then folds in the previous entry's hash.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

GENESIS = "GENESIS"


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        # 500, 500.0 and 500.000000000 are the same amount
        return str(value.normalize())
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"cannot canonicalize {type(value).__name__}")


def canonicalize_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_encode)


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_payload(payload: dict) -> str:
    return _sha256(canonicalize_json(payload))


def hash_history_entry(
    request_id: UUID | str,
    sequence_number: int,
    kind: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Link hash for one history entry.

    Covers the request, the entry's position and kind, its payload hash and
    the predecessor's hash (``GENESIS`` for the first entry).  Rewriting or
    removing any entry therefore invalidates every hash after it.
    """
    return _sha256(
        "|".join((
            str(request_id),
            str(sequence_number),
            kind,
            payload_hash,
            prev_hash or GENESIS,
        ))
    )
