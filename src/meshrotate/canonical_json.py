"""
canonical_json.py — Deterministic JSON for workspace state files

Snapshots and the phase file are written in a canonical form so that the
sha256 sidecar of a snapshot is stable:
- UTF-8 encoding
- Object keys sorted lexicographically
- No insignificant whitespace
- Byte fields carried as standard base64 strings
"""

from __future__ import annotations
import base64
import hashlib
import json
from typing import Any, Dict, Mapping


def canonical_dumps(obj: Any) -> str:
    """Return canonical JSON string with sorted keys and no whitespace."""
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def canonical_bytes(obj: Any) -> bytes:
    """Return canonical JSON as UTF-8 bytes."""
    return canonical_dumps(obj).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return lowercase hex SHA-256 digest."""
    return hashlib.sha256(data).hexdigest()


def encode_fields(fields: Mapping[str, bytes]) -> Dict[str, str]:
    """Base64-encode a mapping of secret field name to raw bytes."""
    return {k: base64.b64encode(v).decode("ascii") for k, v in fields.items()}


def decode_fields(fields: Mapping[str, str]) -> Dict[str, bytes]:
    """Inverse of :func:`encode_fields`."""
    return {k: base64.b64decode(v) for k, v in fields.items()}
