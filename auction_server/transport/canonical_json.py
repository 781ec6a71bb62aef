"""Helpers for canonical JSON serialization used for correlation ids and persistence."""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any, Union

import orjson

_ORJSON_OPTIONS = orjson.OPT_SORT_KEYS | orjson.OPT_STRICT_INTEGER | orjson.OPT_NAIVE_UTC

_CORRELATION_NAMESPACE = uuid.UUID("6f1c2a3e-8d4b-5c7a-9e0f-1a2b3c4d5e6f")


JsonType = Union[str, int, float, bool, None, list["JsonType"], dict[str, "JsonType"]]


def _default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"type {type(value).__name__} is not JSON serializable")


def canonical_dumps(payload: Any) -> bytes:
    """Return canonical JSON bytes with sorted keys and stable formatting."""
    return orjson.dumps(payload, default=_default, option=_ORJSON_OPTIONS)


def canonical_loads(raw: bytes | str) -> Any:
    return orjson.loads(raw)


def correlation_id(payload: Any) -> str:
    """Deterministic UUID for a payload; equal payloads always map to the same id."""
    return str(uuid.uuid5(_CORRELATION_NAMESPACE, canonical_dumps(payload).decode("utf-8")))
