"""Helpers for canonical JSON serialization used for hashing and idempotency tokens."""

from __future__ import annotations

import hashlib
from decimal import Decimal
from typing import Any

import orjson

_ORJSON_OPTIONS = orjson.OPT_SORT_KEYS | orjson.OPT_NAIVE_UTC


def _default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"cannot serialize {type(value).__name__}")


def canonical_dumps(payload: Any) -> bytes:
    """Return canonical JSON bytes with sorted keys and stable formatting."""
    return orjson.dumps(payload, default=_default, option=_ORJSON_OPTIONS)


def canonical_hash(payload: Any) -> str:
    """Return a SHA-256 hex digest for the canonical JSON representation."""
    return hashlib.sha256(canonical_dumps(payload)).hexdigest()
