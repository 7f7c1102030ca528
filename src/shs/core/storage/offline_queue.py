"""Offline Change Queue — durable list of remote writes awaiting connectivity.

Entries are persisted in SQLite, owned per owner, and replayed strictly in
``queued_at`` order: entry N+1 is not attempted until entry N's outcome
(processed or failed) has been recorded. Failed entries stay pending with
their last error message for the next drain, and later entries of the same
kind wait behind them. Nothing is ever deleted.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable

from shs.core.clock import Clock, to_iso, utc_now
from shs.core.storage.database import CacheDatabase
from shs.core.storage.models import QUEUE_OPERATIONS, DrainReport, OfflineChangeEntry

logger = logging.getLogger(__name__)

ApplyFn = Callable[[OfflineChangeEntry], Awaitable[None]]


class QueueError(Exception):
    """Raised for malformed queue operations."""


class OfflineChangeQueue:
    """SQLite-backed per-owner FIFO of pending remote mutations.

    Usage::

        queue = OfflineChangeQueue(db)
        queue.enqueue("goals", "update", encoded, "owner-1")
        report = await queue.drain("owner-1", apply=coordinator.replay_entry)
    """

    def __init__(self, database: CacheDatabase, *, clock: Clock = utc_now) -> None:
        self._db = database
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def enqueue(
        self,
        kind: str,
        operation: str,
        encoded_payload: str | None,
        owner_id: str,
        *,
        modified_at: str | None = None,
    ) -> OfflineChangeEntry:
        """Append a pending mutation for ``owner_id``.

        ``modified_at`` is the time of the local edit; replay stamps the
        remote record with it. Defaults to the enqueue time.

        Raises:
            QueueError: Unknown operation, empty kind/owner, or missing payload
                for insert/update.
        """
        if operation not in QUEUE_OPERATIONS:
            raise QueueError(f"Unknown queue operation: {operation!r}")
        if not kind or not owner_id:
            raise QueueError("Queue entries require a kind and an owner id")
        if operation != "delete" and not encoded_payload:
            raise QueueError(f"Operation {operation!r} requires an encoded payload")

        queued_at = to_iso(self._clock())
        entry = OfflineChangeEntry(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            kind=kind,
            operation=operation,
            encoded_payload=encoded_payload,
            queued_at=queued_at,
            modified_at=modified_at or queued_at,
        )
        conn = self._db.connection
        conn.execute(
            """INSERT INTO offline_changes_queue
               (id, owner_id, kind, operation, encoded_payload, queued_at, modified_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.id,
                entry.owner_id,
                entry.kind,
                entry.operation,
                entry.encoded_payload,
                entry.queued_at,
                entry.modified_at,
            ),
        )
        conn.commit()
        logger.info(
            "Queued offline %s of %s for owner %s (entry %s)",
            operation,
            kind,
            owner_id,
            entry.id,
        )
        return entry

    def mark_processed(self, entry_id: str) -> None:
        conn = self._db.connection
        conn.execute(
            """UPDATE offline_changes_queue
               SET processed = 1, processed_at = ?, error_message = NULL,
                   attempts = attempts + 1
               WHERE id = ?""",
            (to_iso(self._clock()), entry_id),
        )
        conn.commit()

    def mark_failed(self, entry_id: str, message: str) -> None:
        conn = self._db.connection
        conn.execute(
            """UPDATE offline_changes_queue
               SET error_message = ?, attempts = attempts + 1
               WHERE id = ?""",
            (message, entry_id),
        )
        conn.commit()

    def supersede_pending(
        self,
        owner_id: str,
        reason: str,
        *,
        kind: str | None = None,
        up_to_seq: int | None = None,
    ) -> int:
        """Close pending entries for ``owner_id`` without replaying them.

        Used by erasure so queued writes cannot resurrect erased records, and
        after a direct remote write so older queued values of ``kind`` cannot
        overwrite it later. ``up_to_seq`` limits the update to entries queued
        at or before that sequence number. Entries stay in the table, marked
        processed with ``reason``.
        """
        sql = """UPDATE offline_changes_queue
                 SET processed = 1, processed_at = ?, error_message = ?
                 WHERE owner_id = ? AND processed = 0"""
        params: list = [to_iso(self._clock()), reason, owner_id]
        if kind is not None:
            sql += " AND kind = ?"
            params.append(kind)
        if up_to_seq is not None:
            sql += " AND seq <= ?"
            params.append(up_to_seq)
        conn = self._db.connection
        cursor = conn.execute(sql, params)
        conn.commit()
        if cursor.rowcount:
            logger.warning(
                "Superseded %d pending offline changes for owner %s (%s)",
                cursor.rowcount,
                owner_id,
                reason,
            )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def pending(self, owner_id: str) -> list[OfflineChangeEntry]:
        """Unprocessed entries for ``owner_id`` in replay order."""
        rows = self._db.connection.execute(
            """SELECT * FROM offline_changes_queue
               WHERE owner_id = ? AND processed = 0
               ORDER BY queued_at ASC, seq ASC""",
            (owner_id,),
        ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def entries(self, owner_id: str) -> list[OfflineChangeEntry]:
        """All entries (processed or not) for ``owner_id`` in queue order."""
        rows = self._db.connection.execute(
            """SELECT * FROM offline_changes_queue
               WHERE owner_id = ?
               ORDER BY queued_at ASC, seq ASC""",
            (owner_id,),
        ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def get(self, entry_id: str) -> OfflineChangeEntry | None:
        row = self._db.connection.execute(
            "SELECT * FROM offline_changes_queue WHERE id = ?", (entry_id,)
        ).fetchone()
        return _row_to_entry(row) if row is not None else None

    def last_seq(self, owner_id: str, kind: str) -> int | None:
        """Sequence number of the newest pending entry for (owner, kind)."""
        row = self._db.connection.execute(
            """SELECT MAX(seq) FROM offline_changes_queue
               WHERE owner_id = ? AND kind = ? AND processed = 0""",
            (owner_id, kind),
        ).fetchone()
        return row[0]

    def count_pending(self, owner_id: str | None = None) -> int:
        if owner_id is None:
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM offline_changes_queue WHERE processed = 0"
            ).fetchone()
        else:
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM offline_changes_queue WHERE processed = 0 AND owner_id = ?",
                (owner_id,),
            ).fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    async def drain(self, owner_id: str, apply: ApplyFn) -> DrainReport:
        """Replay every pending entry for ``owner_id`` through ``apply``, in order.

        ``apply`` decodes and dispatches one entry; raising marks the entry
        failed (it stays pending). Once an entry of a kind fails, later entries
        of that kind are held back until the next drain, so a newer change is
        never delivered ahead of an older one it follows. Concurrent drains for
        the same owner are serialised so an entry is never replayed twice in
        parallel.
        """
        lock = self._locks.setdefault(owner_id, asyncio.Lock())
        report = DrainReport(owner_id=owner_id)

        async with lock:
            entries = self.pending(owner_id)
            if not entries:
                return report

            logger.info("Draining %d offline changes for owner %s", len(entries), owner_id)
            blocked: set[str] = set()
            for entry in entries:
                if entry.kind in blocked:
                    report.held.append(entry.id)
                    continue
                current = self.get(entry.id)
                if current is None or current.processed:
                    continue
                try:
                    await apply(entry)
                except Exception as exc:
                    message = str(exc) or type(exc).__name__
                    self.mark_failed(entry.id, message)
                    report.failed.append(entry.id)
                    blocked.add(entry.kind)
                    logger.warning(
                        "Offline change %s (%s %s) failed: %s",
                        entry.id,
                        entry.operation,
                        entry.kind,
                        message,
                    )
                    continue
                self.mark_processed(entry.id)
                report.processed.append(entry.id)

        logger.info(
            "Offline drain for owner %s: %d processed, %d failed, %d held",
            owner_id,
            len(report.processed),
            len(report.failed),
            len(report.held),
        )
        return report


def _row_to_entry(row) -> OfflineChangeEntry:
    return OfflineChangeEntry(
        id=row["id"],
        owner_id=row["owner_id"],
        kind=row["kind"],
        operation=row["operation"],
        encoded_payload=row["encoded_payload"],
        queued_at=row["queued_at"],
        modified_at=row["modified_at"],
        processed=bool(row["processed"]),
        processed_at=row["processed_at"],
        error_message=row["error_message"],
        attempts=row["attempts"],
    )
