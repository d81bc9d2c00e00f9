from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from pathlib import PurePath
from typing import Any

import rfc8785
from pydantic import BaseModel, SecretStr

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Reduce records, enums, dates and paths to JSON primitives for rfc8785.

    Raises:
        TypeError: For secrets, bytes, or any type with no JSON form.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, SecretStr):
        raise TypeError("Refusing to canonicalize a secret value")
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _normalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, Enum):
        return _normalize(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, PurePath):
        return value.as_posix()
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize *value* to RFC 8785 canonical JSON."""
    return rfc8785.dumps(_normalize(value)).decode("utf-8")


def fingerprint(value: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of *value*.

    Two records with the same logical content always fingerprint equally,
    regardless of key order or model class, which makes the digest usable
    as a compare-and-swap token.
    """
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()


def text_digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
