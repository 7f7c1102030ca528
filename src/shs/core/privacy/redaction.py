"""Redaction helpers — keep secrets and PII out of logs and audit rows.

* :func:`sanitize_context` redacts secret-looking keys and truncates long
  strings before an error context is logged or persisted.
* :func:`detect_pii` flags values that look like they carry personal
  identifiers (SSN, e-mail address, phone-length digit runs). Detection only
  warns; it never blocks a write.
"""

from __future__ import annotations

import json
import re
from typing import Any

REDACTED = "[REDACTED]"
TRUNCATED_SUFFIX = "...[TRUNCATED]"
MAX_STRING_LENGTH = 1000

_SENSITIVE_KEY_PARTS = ("password", "token", "secret", "key")

_PII_PATTERNS: dict[str, re.Pattern[str]] = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"\b\d{10,}\b"),
}


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in _SENSITIVE_KEY_PARTS)


def sanitize_context(context: dict[str, Any] | None) -> dict[str, Any]:
    """Return a shallow copy of ``context`` safe for logs.

    Keys containing password/token/secret/key are replaced with
    ``[REDACTED]``; strings longer than 1000 characters are truncated.
    Callables are replaced by their qualified name.
    """
    if not context:
        return {}

    sanitized: dict[str, Any] = {}
    for key, value in context.items():
        if is_sensitive_key(str(key)):
            sanitized[key] = REDACTED
        elif isinstance(value, str) and len(value) > MAX_STRING_LENGTH:
            sanitized[key] = value[:MAX_STRING_LENGTH] + TRUNCATED_SUFFIX
        elif callable(value):
            sanitized[key] = f"<callable {getattr(value, '__qualname__', type(value).__name__)}>"
        else:
            sanitized[key] = value
    return sanitized


def detect_pii(value: Any) -> list[str]:
    """Return the names of PII patterns found in ``value`` (serialized)."""
    if value is None:
        return []
    try:
        text = value if isinstance(value, str) else json.dumps(value, default=str)
    except (TypeError, ValueError):
        return []
    return [name for name, pattern in _PII_PATTERNS.items() if pattern.search(text)]
