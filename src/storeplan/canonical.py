from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from pathlib import PurePath
from typing import Any

import rfc8785
from pydantic import BaseModel

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | str | None | list[Any] | dict[str, Any]:
    """Recursively convert plan values into JSON-primitive types.

    Sets are emitted as sorted lists so that membership order can never reach
    a hash. Floats are rejected: nothing that feeds an identity is fractional,
    and float rendering is the usual source of cross-platform drift.

    Raises:
        TypeError: If value contains a type that cannot be converted to JSON.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))

    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]

    if isinstance(value, (set, frozenset)):
        return sorted((_normalize_for_jcs(item) for item in value), key=lambda item: rfc8785.dumps(item))

    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)

    if isinstance(value, PurePath):
        return value.as_posix()

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, float):
        raise TypeError(f"Refusing to canonicalize float value {value!r}; use an int or str")

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic, byte-for-byte reproducible JSON per RFC 8785."""
    normalized = _normalize_for_jcs(value)
    return rfc8785.dumps(normalized).decode("utf-8")


def canonical_sha256(value: Any) -> str:
    """Hex sha256 of the canonical JSON rendering of *value*."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
