"""
Deterministic hashing utilities.

All hashing in the billing kernel must be deterministic and reproducible.
Used for consolidated invoice idempotency keys.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        # Normalize so that 1.0 and 1.00 hash identically
        return str(obj.normalize())
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    Keys are sorted, whitespace is removed, and Decimal/date/UUID values
    are serialized consistently.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: dict | list) -> str:
    """Compute the hex SHA-256 hash of a payload's canonical JSON."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_node_set(node_ids: list[str] | tuple[str, ...] | frozenset[str]) -> str:
    """Order-independent short hash of a set of billing node ids."""
    return hash_payload(sorted(node_ids))[:16]
