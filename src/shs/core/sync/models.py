"""Data models for the reconciliation engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Literal

ConflictType = Literal["update", "delete", "concurrent_edit"]
ResolutionPolicy = Literal["local_wins", "remote_wins", "latest_timestamp", "manual"]
ManualResolution = Literal["use_local", "use_remote", "merge"]
SyncStatus = Literal["idle", "syncing", "conflict", "error", "offline"]

RESOLUTION_POLICIES: tuple[str, ...] = ("local_wins", "remote_wins", "latest_timestamp", "manual")
MANUAL_RESOLUTIONS: tuple[str, ...] = ("use_local", "use_remote", "merge")


@dataclass
class SyncConflict:
    """Local and remote hold different values for the same (owner, kind)."""

    kind: str
    local_value: Any
    remote_value: Any
    local_timestamp: str
    remote_timestamp: str
    conflict_type: str  # ConflictType
    table: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    """Aggregate outcome of one reconciliation run."""

    success: list[str] = field(default_factory=list)
    failed: list[dict[str, str]] = field(default_factory=list)
    conflicts: list[SyncConflict] = field(default_factory=list)
    total_synced: int = 0
    last_sync_time: str = ""
    sync_duration: float = 0.0  # seconds
    queue_processed: int = 0
    queue_failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": list(self.success),
            "failed": [dict(f) for f in self.failed],
            "conflicts": [c.to_dict() for c in self.conflicts],
            "total_synced": self.total_synced,
            "last_sync_time": self.last_sync_time,
            "sync_duration": round(self.sync_duration, 4),
            "queue_processed": self.queue_processed,
            "queue_failed": self.queue_failed,
        }


@dataclass
class SyncSettings:
    """User-adjustable reconciliation settings, persisted as ``sync_settings``."""

    auto_sync: bool = True
    sync_interval: float = 300.0  # seconds
    conflict_resolution: str = "latest_timestamp"  # ResolutionPolicy
    max_retries: int = 3
    batch_size: int = 5
    healthcare_priority: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any], defaults: SyncSettings | None = None) -> SyncSettings:
        """Overlay known keys from ``data`` on ``defaults``; unknown keys are ignored."""
        base = (defaults or cls()).to_dict()
        known = {f.name for f in fields(cls)}
        base.update({k: v for k, v in data.items() if k in known})
        return cls(**base)

    @classmethod
    def field_names(cls) -> set[str]:
        return {f.name for f in fields(cls)}
