"""Tests for the AuditLogger."""

from __future__ import annotations

import json

import pytest

from shs.core.audit.logger import AuditEvent, AuditLogger, AuditSink

OWNER = "owner-a"


# ---------------------------------------------------------------------------
# AuditLogger.record / log_record_access
# ---------------------------------------------------------------------------

class TestRecord:
    def test_satisfies_sink_protocol(self, audit_logger):
        assert isinstance(audit_logger, AuditSink)

    def test_record_returns_uuid(self, audit_logger):
        eid = audit_logger.record(AuditEvent(action="record_read", kind="goals", owner_id=OWNER))
        assert isinstance(eid, str)
        assert len(eid) == 36  # UUID format

    def test_log_record_access_convenience(self, audit_logger):
        audit_logger.log_record_access("record_write", kind="goals", owner_id=OWNER)
        events = audit_logger.get_events()
        assert len(events) == 1
        assert events[0]["action"] == "record_write"
        assert events[0]["kind"] == "goals"
        assert events[0]["owner_id"] == OWNER
        assert events[0]["status"] == "success"

    def test_timestamp_filled_when_empty(self, audit_logger):
        audit_logger.record(AuditEvent(action="record_read"))
        assert audit_logger.get_events()[0]["timestamp"]

    def test_explicit_timestamp_kept(self, audit_logger):
        audit_logger.record(AuditEvent(action="record_read", timestamp="2024-01-01T00:00:00+00:00"))
        assert audit_logger.get_events()[0]["timestamp"] == "2024-01-01T00:00:00+00:00"

    def test_failure_status_and_error_type(self, audit_logger):
        audit_logger.log_record_access(
            "record_read",
            kind="goals",
            owner_id=OWNER,
            status="failure",
            error_type="RemoteUnavailableError",
        )
        event = audit_logger.get_events()[0]
        assert event["status"] == "failure"
        assert event["error_type"] == "RemoteUnavailableError"

    def test_metadata_is_sanitized(self, audit_logger):
        audit_logger.record(AuditEvent(
            action="owner_erase",
            owner_id=OWNER,
            metadata={"reason": "r", "session_token": "abc"},
        ))
        meta = json.loads(audit_logger.get_events()[0]["metadata_json"])
        assert meta == {"reason": "r", "session_token": "[REDACTED]"}

    def test_no_metadata_stores_null(self, audit_logger):
        audit_logger.record(AuditEvent(action="record_read"))
        assert audit_logger.get_events()[0]["metadata_json"] is None

    def test_failed_write_is_swallowed(self, cache_db):
        audit = AuditLogger(cache_db)
        cache_db.close()
        assert audit.record(AuditEvent(action="record_read")) == ""


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------

class TestQuery:
    @pytest.fixture
    def populated(self, audit_logger):
        for i, (action, kind) in enumerate([
            ("record_read", "goals"),
            ("record_write", "goals"),
            ("record_write", "symptoms"),
            ("record_delete", "points"),
        ]):
            audit_logger.record(AuditEvent(
                action=action,
                kind=kind,
                owner_id=OWNER,
                timestamp=f"2024-03-0{i + 1}T00:00:00+00:00",
            ))
        audit_logger.record(AuditEvent(
            action="record_read",
            kind="goals",
            owner_id="owner-b",
            timestamp="2024-03-05T00:00:00+00:00",
            status="failure",
        ))
        return audit_logger

    def test_newest_first(self, populated):
        timestamps = [e["timestamp"] for e in populated.get_events()]
        assert timestamps == sorted(timestamps, reverse=True)

    def test_filter_by_action(self, populated):
        assert len(populated.get_events(action="record_write")) == 2

    def test_filter_by_kind_and_owner(self, populated):
        assert len(populated.get_events(kind="goals", owner_id=OWNER)) == 2

    def test_filter_since(self, populated):
        assert len(populated.get_events(since="2024-03-03T00:00:00+00:00")) == 3

    def test_limit(self, populated):
        assert len(populated.get_events(limit=2)) == 2

    def test_count_events(self, populated):
        assert populated.count_events() == 5
        assert populated.count_events(status="failure") == 1
        assert populated.count_events(since="2024-03-04T00:00:00+00:00") == 2
