"""
Deterministic hashing utilities.

All hashes written by the kernel (audit data_hash / chain_hash, approval
history report_hash) go through canonical_json so that equal inputs always
produce equal digests regardless of dict ordering or value types.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """Serialize the non-JSON types the kernel stores in payloads."""
    if isinstance(obj, Decimal):
        # Fixed-point, trailing zeros stripped: Decimal("1500.00") -> "1500"
        return format(obj.normalize(), "f")
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


def canonicalize_json(data: Any) -> str:
    """
    Deterministic JSON: keys sorted, no whitespace, stable handling of
    Decimal, datetime, UUID, and Enum values.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def to_json_safe(data: Any) -> Any:
    """Round-trip through canonical JSON so the value can sit in a JSON column."""
    if data is None:
        return None
    return json.loads(canonicalize_json(data))


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_payload(payload: Any) -> str:
    """Hex-encoded SHA-256 of the canonical JSON of ``payload``."""
    return sha256_hex(canonicalize_json(payload))


def hash_chain_link(previous_chain_hash: str | None, data_hash: str) -> str:
    """
    Link an audit entry to its predecessor.

    Genesis entries (no predecessor) chain to themselves: the chain hash
    equals the data hash.
    """
    if previous_chain_hash is None:
        return data_hash
    return sha256_hex(f"{previous_chain_hash}|{data_hash}")
