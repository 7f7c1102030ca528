"""Audit logger — append-only trail of remote record access and mutation.

Every read, write and delete that touches the Remote Record Store produces
one event ``{action, kind, owner_id, timestamp}``. The trail never contains
record values; free-form metadata is passed through
:func:`~shs.core.privacy.redaction.sanitize_context` first.

Audit is a side channel: a failed audit write is logged and swallowed, it
never aborts the primary operation.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from shs.core.privacy.redaction import sanitize_context
from shs.core.storage.database import CacheDatabase

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# AuditEvent dataclass
# ---------------------------------------------------------------------------

@dataclass
class AuditEvent:
    """A single audit log entry."""

    action: str                          # 'record_read' | 'record_write' | 'record_delete' | 'owner_erase'
    kind: str = ""
    owner_id: str = ""
    timestamp: str = ""                  # filled in by the sink when empty
    status: str = "success"              # 'success' | 'failure'
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class AuditSink(Protocol):
    """Write-only audit interface. Must never raise."""

    def record(self, event: AuditEvent) -> str:
        ...


# ---------------------------------------------------------------------------
# AuditLogger
# ---------------------------------------------------------------------------

class AuditLogger:
    """Records audit events to the ``audit_log`` SQLite table.

    All writes are committed immediately so no audit entry is lost on crash.

    Usage::

        audit = AuditLogger(cache_db)
        audit.log_record_access("record_write", kind="goals", owner_id="owner-1")
    """

    def __init__(self, database: CacheDatabase) -> None:
        self._db = database

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    def record(self, event: AuditEvent) -> str:
        """Insert an audit event and return its UUID ("" if the write failed)."""
        event_id = str(uuid.uuid4())
        timestamp = event.timestamp or datetime.now(timezone.utc).isoformat()

        metadata_json = (
            json.dumps(sanitize_context(event.metadata), separators=(",", ":"), default=str)
            if event.metadata
            else None
        )

        try:
            conn = self._db.connection
            conn.execute(
                """INSERT INTO audit_log
                   (id, timestamp, action, kind, owner_id, status, error_type, metadata_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event_id,
                    timestamp,
                    event.action,
                    event.kind or None,
                    event.owner_id or None,
                    event.status,
                    event.error_type,
                    metadata_json,
                ),
            )
            conn.commit()
        except Exception:
            logger.exception("Failed to write audit event — event lost")
            return ""

        return event_id

    def log_record_access(
        self,
        action: str,
        *,
        kind: str,
        owner_id: str,
        status: str = "success",
        error_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Convenience wrapper for a remote read/write/delete event."""
        return self.record(AuditEvent(
            action=action,
            kind=kind,
            owner_id=owner_id,
            status=status,
            error_type=error_type,
            metadata=metadata or {},
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    def get_events(
        self,
        *,
        action: str | None = None,
        kind: str | None = None,
        owner_id: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query audit events with optional filters, newest first."""
        conditions: list[str] = []
        params: list[Any] = []

        if action:
            conditions.append("action = ?")
            params.append(action)
        if kind:
            conditions.append("kind = ?")
            params.append(kind)
        if owner_id:
            conditions.append("owner_id = ?")
            params.append(owner_id)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def count_events(self, *, since: str | None = None, status: str | None = None) -> int:
        """Count audit events, optionally since a timestamp and/or by status."""
        conditions: list[str] = []
        params: list[Any] = []
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)
        if status:
            conditions.append("status = ?")
            params.append(status)
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        row = self._db.connection.execute(
            f"SELECT COUNT(*) FROM audit_log{where}", params
        ).fetchone()
        return row[0]
