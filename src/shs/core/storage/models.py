"""Data models for the storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

QueueOperation = Literal["insert", "update", "delete"]

QUEUE_OPERATIONS: frozenset[str] = frozenset({"insert", "update", "delete"})


@dataclass
class RemoteRecord:
    """The authoritative copy of one (owner, kind) record.

    ``payload`` is codec-encoded; the remote store never sees plaintext when
    the secure path is available.
    """

    owner_id: str
    kind: str
    payload: str
    last_modified: str  # ISO 8601
    deleted: bool = False


@dataclass
class CachedRecord:
    """A decoded record as seen by callers of the coordinator."""

    kind: str
    value: Any
    last_modified: str  # ISO 8601, "" when unknown


@dataclass
class OfflineChangeEntry:
    """A remote mutation waiting for connectivity.

    Entries are never deleted, only marked ``processed`` so the queue doubles
    as a delivery log.
    """

    id: str
    owner_id: str
    kind: str
    operation: str  # 'insert' | 'update' | 'delete'
    encoded_payload: str | None
    queued_at: str  # ISO 8601
    processed: bool = False
    processed_at: str | None = None
    error_message: str | None = None
    attempts: int = 0
    modified_at: str | None = None  # time of the local edit

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "kind": self.kind,
            "operation": self.operation,
            "queued_at": self.queued_at,
            "modified_at": self.modified_at,
            "processed": self.processed,
            "processed_at": self.processed_at,
            "error_message": self.error_message,
            "attempts": self.attempts,
        }


@dataclass
class DrainReport:
    """Outcome of one pass over an owner's pending queue entries."""

    owner_id: str
    processed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    held: list[str] = field(default_factory=list)  # behind a failed entry of the same kind

    @property
    def attempted(self) -> int:
        return len(self.processed) + len(self.failed)
