from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

import rfc8785
from pydantic import BaseModel

_JSON_SCALARS = (bool, int, float, str, type(None))


def _to_json_primitives(value: Any) -> Any:
    """Reduce pydantic models, enums, timestamps and sets to JSON primitives.

    ``rfc8785.dumps`` accepts only bool, int, float, str, None, lists and
    dicts with string keys, so everything the orchestration records carry is
    converted first. Sets are emitted as sorted lists so that two equal sets
    always serialize to the same bytes.

    Raises:
        TypeError: If the value holds a type with no JSON representation.
    """
    if isinstance(value, Enum):
        return _to_json_primitives(value.value)
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, BaseModel):
        return _to_json_primitives(value.model_dump(mode="json", by_alias=True))
    if isinstance(value, dict):
        return {str(key): _to_json_primitives(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_primitives(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_to_json_primitives(item) for item in value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize a value to RFC 8785 canonical JSON text."""
    return rfc8785.dumps(_to_json_primitives(value)).decode("utf-8")


def canonical_digest(value: Any) -> str:
    """Return the hex SHA-256 of the canonical JSON form of ``value``."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
