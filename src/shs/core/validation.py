"""Input validation shared by the coordinator and the sync engine."""

from __future__ import annotations

import json
from typing import Any


class ValidationError(ValueError):
    """Malformed caller input. Always propagated, never defaulted."""


def require_kind(kind: str) -> str:
    if not isinstance(kind, str) or not kind.strip():
        raise ValidationError(f"Invalid record kind: {kind!r}")
    return kind


def require_serializable(value: Any) -> None:
    """Reject values that cannot be stored as JSON."""
    if value is None:
        raise ValidationError("Cannot store a null value; use delete instead")
    try:
        json.dumps(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Value is not JSON-serializable: {exc}") from exc


def canonical_json(value: Any) -> str:
    """Order-stable serialization used for equality checks."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
