"""
Deterministic hashing utilities.

All hashes in the payroll kernel (preview hash, payout digest, artifact
content hash) are computed here so the same inputs always produce the same
digest across processes and restarts.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        # Normalized so 250.00 and 250.0 hash identically
        return str(obj.normalize())
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    - Keys are sorted alphabetically
    - No whitespace
    - Consistent handling of Decimal, datetime, UUID, Enum and sets
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: dict | list) -> str:
    """Hex-encoded SHA-256 of the canonical JSON form of ``payload``."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_bytes(data: bytes) -> str:
    """Hex-encoded SHA-256 of raw bytes (artifact verification)."""
    return hashlib.sha256(data).hexdigest()


def hash_payout_rows(rows: list[dict]) -> str:
    """
    Digest of a run's payout rows, independent of row order.

    Used to prove at execution time that the persisted payouts are exactly
    the ones materialised from the approved preview.
    """
    sorted_rows = sorted(rows, key=lambda r: r.get("idempotency_key", ""))
    return hash_payload({"payouts": sorted_rows})
