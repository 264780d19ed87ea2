from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _to_json_primitives(value: Any) -> Any:
    """Convert config payloads into the primitive types rfc8785 accepts.

    Run configuration snapshots are opaque structured data, so nested models,
    enums and timestamps are flattened rather than rejected.

    Raises:
        TypeError: If the value holds a type with no JSON representation.
    """
    if isinstance(value, Enum):
        return _to_json_primitives(value.value)
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _to_json_primitives(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(k): _to_json_primitives(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_primitives(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize a value to RFC 8785 canonical JSON."""
    return rfc8785.dumps(_to_json_primitives(value)).decode("utf-8")


def canonical_sha256(value: Any) -> str:
    """Return the SHA-256 hex digest of the canonical JSON form of *value*."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
