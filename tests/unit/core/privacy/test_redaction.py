"""Unit tests for log/audit redaction and PII detection."""

from __future__ import annotations

import pytest

from shs.core.privacy.redaction import (
    MAX_STRING_LENGTH,
    REDACTED,
    TRUNCATED_SUFFIX,
    detect_pii,
    is_sensitive_key,
    sanitize_context,
)


class TestSanitizeContext:
    @pytest.mark.parametrize("key", ["password", "authToken", "client_secret", "api_key", "KEY"])
    def test_sensitive_keys_redacted(self, key):
        assert sanitize_context({key: "hunter2"}) == {key: REDACTED}

    def test_plain_keys_kept(self):
        assert sanitize_context({"kind": "goals", "attempt": 2}) == {"kind": "goals", "attempt": 2}

    def test_long_strings_truncated(self):
        value = "x" * (MAX_STRING_LENGTH + 50)
        result = sanitize_context({"detail": value})["detail"]
        assert result == "x" * MAX_STRING_LENGTH + TRUNCATED_SUFFIX

    def test_string_at_limit_untouched(self):
        value = "y" * MAX_STRING_LENGTH
        assert sanitize_context({"detail": value})["detail"] == value

    def test_callables_replaced_by_name(self):
        async def retry():
            return None

        result = sanitize_context({"retry": retry})["retry"]
        assert result.startswith("<callable ")
        assert "retry" in result

    @pytest.mark.parametrize("context", [None, {}])
    def test_empty(self, context):
        assert sanitize_context(context) == {}

    def test_input_not_mutated(self):
        context = {"password": "p"}
        sanitize_context(context)
        assert context == {"password": "p"}

    def test_is_sensitive_key(self):
        assert is_sensitive_key("refresh_token")
        assert not is_sensitive_key("owner_id")


class TestDetectPii:
    def test_ssn(self):
        assert detect_pii("ssn 123-45-6789") == ["ssn"]

    def test_email_inside_structure(self):
        assert detect_pii({"notes": ["mail me at sam@example.org"]}) == ["email"]

    def test_phone_digit_run(self):
        assert detect_pii(["5551234567"]) == ["phone"]

    def test_short_numbers_ignored(self):
        assert detect_pii({"points": 120, "steps": 9000}) == []

    def test_none(self):
        assert detect_pii(None) == []
