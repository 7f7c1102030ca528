"""Local Cache Store — on-device key-value persistence.

Always available. Record values live under owner-scoped keys
(``<owner>:<kind>``) with a parallel ``<owner>:<kind>_timestamp`` entry that
the reconciliation engine compares against the remote copy. A handful of
global keys hold sync settings, sync state and the persisted error log tail.

When an encryptor is supplied, values are Fernet-encrypted at rest.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any

from shs.core.clock import Clock, to_iso, utc_now
from shs.core.storage.database import CacheDatabase
from shs.core.storage.encryption import EncryptionError, FieldEncryptor

logger = logging.getLogger(__name__)

TIMESTAMP_SUFFIX = "_timestamp"
# Keys with these prefixes are disposable and removed by cleanup().
DISPOSABLE_PREFIXES = ("cache_", "temp_")


class StorageError(Exception):
    """Raised when the local cache cannot be read or written."""


def record_key(owner_id: str, kind: str) -> str:
    return f"{owner_id}:{kind}"


def timestamp_key(owner_id: str, kind: str) -> str:
    return f"{owner_id}:{kind}{TIMESTAMP_SUFFIX}"


class LocalCacheStore:
    """Key-value cache backed by the ``local_cache`` SQLite table.

    Usage::

        store = LocalCacheStore(db)
        store.set_record("goals", [{"id": "g1"}], "owner-1", modified_at=ts)
        store.get_record("goals", "owner-1")       # [{"id": "g1"}]
        store.get_timestamp("goals", "owner-1")    # ts
    """

    def __init__(
        self,
        database: CacheDatabase,
        encryptor: FieldEncryptor | None = None,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._db = database
        self._enc = encryptor
        self._clock = clock

    # ------------------------------------------------------------------
    # Raw keys
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any | None:
        """Return the value stored under ``key``, or None."""
        try:
            row = self._db.connection.execute(
                "SELECT value_json, encrypted FROM local_cache WHERE key = ?", (key,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Local read failed for {key!r}: {exc}") from exc

        if row is None:
            return None
        if row["encrypted"]:
            if self._enc is None:
                logger.error("Encrypted cache entry %s but no key configured", key)
                return None
            try:
                return self._enc.decrypt(row["value_json"])
            except EncryptionError:
                logger.exception("Could not decrypt cache entry %s", key)
                return None
        return json.loads(row["value_json"])

    def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key`` (insert or replace)."""
        if self._enc is not None:
            stored, encrypted = self._enc.encrypt(value), 1
        else:
            stored, encrypted = json.dumps(value, separators=(",", ":")), 0

        try:
            conn = self._db.connection
            conn.execute(
                """INSERT INTO local_cache (key, value_json, encrypted, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                       value_json = excluded.value_json,
                       encrypted = excluded.encrypted,
                       updated_at = excluded.updated_at""",
                (key, stored, encrypted, to_iso(self._clock())),
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Local write failed for {key!r}: {exc}") from exc

    def remove(self, key: str) -> bool:
        """Delete ``key``. Returns True if something was removed."""
        try:
            conn = self._db.connection
            cursor = conn.execute("DELETE FROM local_cache WHERE key = ?", (key,))
            conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Local delete failed for {key!r}: {exc}") from exc
        return cursor.rowcount > 0

    def keys(self, prefix: str = "") -> list[str]:
        rows = self._db.connection.execute(
            "SELECT key FROM local_cache WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            (_like_prefix(prefix),),
        ).fetchall()
        return [row["key"] for row in rows]

    # ------------------------------------------------------------------
    # Owner-scoped records
    # ------------------------------------------------------------------

    def get_record(self, kind: str, owner_id: str) -> Any | None:
        return self.get(record_key(owner_id, kind))

    def get_timestamp(self, kind: str, owner_id: str) -> str | None:
        value = self.get(timestamp_key(owner_id, kind))
        return value if isinstance(value, str) else None

    def set_record(
        self,
        kind: str,
        value: Any,
        owner_id: str,
        *,
        modified_at: str | None = None,
    ) -> str:
        """Store a record value and its timestamp. Returns the timestamp used."""
        stamp = modified_at or to_iso(self._clock())
        self.set(record_key(owner_id, kind), value)
        self.set(timestamp_key(owner_id, kind), stamp)
        return stamp

    def set_timestamp(self, kind: str, owner_id: str, modified_at: str) -> None:
        self.set(timestamp_key(owner_id, kind), modified_at)

    def remove_record(self, kind: str, owner_id: str) -> bool:
        removed = self.remove(record_key(owner_id, kind))
        self.remove(timestamp_key(owner_id, kind))
        return removed

    def clear_owner(self, owner_id: str) -> int:
        """Remove every key scoped to ``owner_id``. Returns rows removed."""
        conn = self._db.connection
        cursor = conn.execute(
            "DELETE FROM local_cache WHERE key LIKE ? ESCAPE '\\'",
            (_like_prefix(f"{owner_id}:"),),
        )
        conn.commit()
        logger.warning("Cleared %d cached entries for owner %s", cursor.rowcount, owner_id)
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup(self) -> int:
        """Delete disposable ``cache_``/``temp_`` entries. Returns rows removed."""
        conn = self._db.connection
        removed = 0
        for prefix in DISPOSABLE_PREFIXES:
            cursor = conn.execute(
                "DELETE FROM local_cache WHERE key LIKE ? ESCAPE '\\'", (_like_prefix(prefix),)
            )
            removed += cursor.rowcount
        conn.commit()
        logger.info("Local cache cleanup removed %d disposable entries", removed)
        return removed

    def clear_all(self) -> int:
        conn = self._db.connection
        cursor = conn.execute("DELETE FROM local_cache")
        conn.commit()
        logger.warning("Cleared entire local cache: %d entries", cursor.rowcount)
        return cursor.rowcount


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped + "%"
