"""Reconciliation Engine — keeps the local cache and the remote store aligned.

State machine::

    idle ──> syncing ──> idle | conflict | error
    conflict ──> idle        (once every pending conflict is resolved)

``offline`` is orthogonal: while the connectivity signal is down the engine
reports ``offline``, its timer is stopped and sync requests are refused.

A run drains the owner's offline queue, then compares every tracked kind in
fixed-size batches (concurrent within a batch, sequential across batches).
Differing values become :class:`SyncConflict` objects, which are resolved on
the spot unless the policy is ``manual``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from shs.core.clock import Clock, parse_timestamp, to_iso, utc_now
from shs.core.connectivity import ConnectivitySignal
from shs.core.identity import IdentityProvider, OwnershipViolationError, require_owner
from shs.core.storage.coordinator import HybridStorageCoordinator
from shs.core.storage.encryption import EncryptionError
from shs.core.storage.local_store import LocalCacheStore, StorageError
from shs.core.storage.models import CachedRecord
from shs.core.sync.models import (
    MANUAL_RESOLUTIONS,
    RESOLUTION_POLICIES,
    SyncConflict,
    SyncResult,
    SyncSettings,
)
from shs.core.sync.scheduler import CancelHandle, Scheduler
from shs.core.validation import ValidationError, canonical_json, require_kind

if TYPE_CHECKING:
    from shs.core.recovery.engine import ErrorRecoveryEngine

logger = logging.getLogger(__name__)

SETTINGS_KEY = "sync_settings"
STATE_KEY = "sync_state"

SyncListener = Callable[[str, list[SyncConflict]], None]


class SyncError(Exception):
    """Base exception for reconciliation failures."""


class SyncInProgressError(SyncError):
    """A run is already in flight; concurrent requests are rejected, not queued."""


class SyncOfflineError(SyncError):
    """Reconciliation needs connectivity."""


class ConflictNotFoundError(SyncError):
    """No pending conflict exists for the requested kind."""


def classify_conflict(local_timestamp: str, remote_timestamp: str, window: float = 60.0) -> str:
    """``concurrent_edit`` when the two edits are under ``window`` seconds apart."""
    delta = abs(
        (parse_timestamp(local_timestamp) - parse_timestamp(remote_timestamp)).total_seconds()
    )
    return "concurrent_edit" if delta < window else "update"


def pick_winner(conflict: SyncConflict, policy: str) -> tuple[Any, str] | None:
    """Return ``(value, timestamp)`` chosen by ``policy``, or None for manual.

    ``latest_timestamp`` prefers local on an exact tie.
    """
    if policy == "local_wins":
        return conflict.local_value, conflict.local_timestamp
    if policy == "remote_wins":
        return conflict.remote_value, conflict.remote_timestamp
    if policy == "latest_timestamp":
        if parse_timestamp(conflict.local_timestamp) >= parse_timestamp(conflict.remote_timestamp):
            return conflict.local_value, conflict.local_timestamp
        return conflict.remote_value, conflict.remote_timestamp
    return None


class SyncEngine:
    """Timer- and event-driven reconciliation between local and remote stores.

    Usage::

        engine = SyncEngine(
            coordinator=coordinator, identity_provider=session,
            connectivity=monitor, local_store=local, scheduler=scheduler,
        )
        engine.start()
        result = await engine.sync()
        if result.conflicts:
            await engine.resolve_conflict("goals", "use_local")
    """

    def __init__(
        self,
        *,
        coordinator: HybridStorageCoordinator,
        identity_provider: IdentityProvider,
        connectivity: ConnectivitySignal,
        local_store: LocalCacheStore,
        scheduler: Scheduler,
        recovery: ErrorRecoveryEngine | None = None,
        settings: SyncSettings | None = None,
        concurrent_edit_window: float = 60.0,
        clock: Clock = utc_now,
    ) -> None:
        self._coordinator = coordinator
        self._identity = identity_provider
        self._connectivity = connectivity
        self._local = local_store
        self._scheduler = scheduler
        self._recovery = recovery
        self._window = concurrent_edit_window
        self._clock = clock

        self._settings = self._load_settings(settings or SyncSettings())
        self._status = "idle"
        self._in_progress = False
        self._last_sync_time: str | None = self._load_last_sync_time()
        self._pending: dict[str, SyncConflict] = {}
        self._pending_owner: str | None = None
        self._listeners: list[SyncListener] = []
        self._timer: CancelHandle | None = None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def status(self) -> str:
        if not self._connectivity.is_online:
            return "offline"
        return self._status

    @property
    def last_sync_time(self) -> str | None:
        return self._last_sync_time

    @property
    def settings(self) -> SyncSettings:
        return SyncSettings.from_dict(self._settings.to_dict())

    @property
    def auto_sync_active(self) -> bool:
        return self._timer is not None

    def pending_conflicts(self) -> list[SyncConflict]:
        return list(self._pending.values())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._connectivity.subscribe(self._on_connectivity_change)
        if self._settings.auto_sync and self._connectivity.is_online:
            self._start_timer()

    async def shutdown(self) -> None:
        self._connectivity.unsubscribe(self._on_connectivity_change)
        self._stop_timer()
        self._save_state()

    async def _on_connectivity_change(self, online: bool) -> None:
        if not online:
            self._stop_timer()
            self._notify("offline")
            return

        self._notify(self.status, self.pending_conflicts())
        if self._settings.auto_sync:
            self._start_timer()
            await self._run_automatic("connectivity restored")

    async def _on_timer(self) -> None:
        if not self._connectivity.is_online or self._in_progress:
            return
        await self._run_automatic("timer")

    async def _run_automatic(self, trigger: str) -> None:
        if self._identity.current() is None:
            logger.debug("Skipping %s sync: no active session", trigger)
            return
        try:
            result = await self.sync()
        except SyncError as exc:
            logger.info("Automatic sync (%s) skipped: %s", trigger, exc)
        except Exception as exc:
            logger.warning("Automatic sync (%s) failed: %s", trigger, exc)
        else:
            logger.info(
                "Automatic sync (%s): %d synced, %d failed, %d conflicts",
                trigger,
                result.total_synced,
                len(result.failed),
                len(result.conflicts),
            )

    def _start_timer(self) -> None:
        if self._timer is None:
            self._timer = self._scheduler.schedule_repeating(
                self._settings.sync_interval, self._on_timer
            )

    def _stop_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def start_auto_sync(self) -> None:
        self._settings.auto_sync = True
        self._save_settings()
        if self._connectivity.is_online:
            self._start_timer()

    def stop_auto_sync(self) -> None:
        self._settings.auto_sync = False
        self._save_settings()
        self._stop_timer()

    def update_settings(self, **changes: Any) -> SyncSettings:
        """Apply and persist setting changes; restarts the timer when needed.

        Raises:
            ValidationError: Unknown setting or invalid value.
        """
        unknown = set(changes) - SyncSettings.field_names()
        if unknown:
            raise ValidationError(f"Unknown sync settings: {', '.join(sorted(unknown))}")
        if "conflict_resolution" in changes and changes["conflict_resolution"] not in RESOLUTION_POLICIES:
            raise ValidationError(f"Invalid conflict resolution: {changes['conflict_resolution']!r}")
        if "sync_interval" in changes and not changes["sync_interval"] > 0:
            raise ValidationError("sync_interval must be positive")
        if "batch_size" in changes and not int(changes["batch_size"]) >= 1:
            raise ValidationError("batch_size must be at least 1")

        self._settings = SyncSettings.from_dict(changes, defaults=self._settings)
        self._save_settings()

        if "auto_sync" in changes or "sync_interval" in changes:
            self._stop_timer()
            if self._settings.auto_sync and self._connectivity.is_online:
                self._start_timer()
        return self.settings

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self, owner_id: str | None = None) -> SyncResult:
        """Run one reconciliation pass for ``owner_id`` (default: session owner).

        Raises:
            SyncOfflineError: Connectivity is down.
            SyncInProgressError: Another run is in flight.
            SyncError: No authenticated identity.
            OwnershipViolationError: ``owner_id`` is not the session owner.
        """
        if not self._connectivity.is_online:
            raise SyncOfflineError("Cannot sync while offline")
        if self._in_progress:
            raise SyncInProgressError("Sync already in progress")

        self._in_progress = True
        started = time.monotonic()
        self._set_status("syncing")
        owner = owner_id
        try:
            owner = self._resolve_owner(owner_id)

            drain = await self._coordinator.flush_offline_queue(owner)
            result = await self._reconcile_all(owner)
            result.queue_processed = len(drain.processed)
            result.queue_failed = len(drain.failed)

            self._pending = {c.kind: c for c in result.conflicts}
            self._pending_owner = owner
            self._last_sync_time = to_iso(self._clock())
            result.last_sync_time = self._last_sync_time
            result.sync_duration = time.monotonic() - started
            self._save_state()

            for failure in result.failed:
                await self._report(
                    SyncError(failure["error"]), "low", owner, kind=failure["kind"]
                )

            if self._pending:
                self._set_status("conflict", result.conflicts)
            else:
                self._set_status("idle")
            return result
        except Exception as exc:
            self._set_status("error")
            if not isinstance(exc, OwnershipViolationError):
                await self._report(exc, "high", owner)
            raise
        finally:
            self._in_progress = False

    def _resolve_owner(self, owner_id: str | None) -> str:
        identity = self._identity.current()
        if identity is None or not identity.authenticated:
            raise SyncError("No authenticated identity")
        owner = owner_id or identity.owner_id
        require_owner(self._identity, owner)
        return owner

    async def _reconcile_all(self, owner_id: str) -> SyncResult:
        kinds = self._coordinator.kinds.tracked_names(
            healthcare_first=self._settings.healthcare_priority
        )
        size = max(1, int(self._settings.batch_size))
        result = SyncResult()

        for start in range(0, len(kinds), size):
            batch = kinds[start:start + size]
            outcomes = await asyncio.gather(
                *(self._reconcile_kind(kind, owner_id) for kind in batch),
                return_exceptions=True,
            )
            for kind, outcome in zip(batch, outcomes):
                if isinstance(outcome, OwnershipViolationError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    logger.warning("Failed to sync %s: %s", kind, outcome)
                    result.failed.append({"kind": kind, "error": str(outcome) or type(outcome).__name__})
                elif isinstance(outcome, SyncConflict):
                    result.conflicts.append(outcome)
                else:
                    result.success.append(kind)
                    if outcome:
                        result.total_synced += 1
        return result

    async def _reconcile_kind(self, kind: str, owner_id: str) -> bool | SyncConflict:
        """Align one kind. Returns True if data moved, or an unresolved conflict."""
        local = self._coordinator.local_record(kind, owner_id)
        remote = await self._coordinator.fetch_remote(kind, owner_id)

        if local is None:
            if remote is None:
                return False
            self._coordinator.pull_to_local(
                kind, remote.value, owner_id, modified_at=remote.last_modified or self._now()
            )
            return True

        if remote is None:
            await self._coordinator.apply_to_both(
                kind, local.value, owner_id, modified_at=local.last_modified or self._now()
            )
            return True

        if canonical_json(local.value) == canonical_json(remote.value):
            if remote.last_modified and local.last_modified != remote.last_modified:
                self._coordinator.pull_to_local(
                    kind, remote.value, owner_id, modified_at=remote.last_modified
                )
            return False

        conflict = self._build_conflict(kind, local, remote)
        if self._settings.conflict_resolution == "manual":
            return conflict

        winner = pick_winner(conflict, self._settings.conflict_resolution)
        if winner is None:
            return conflict
        value, stamp = winner
        try:
            await self._coordinator.apply_to_both(
                kind, value, owner_id, modified_at=stamp or self._now()
            )
        except OwnershipViolationError:
            raise
        except Exception as exc:
            logger.warning("Automatic resolution of %s failed, keeping conflict: %s", kind, exc)
            return conflict
        logger.info(
            "Resolved %s conflict on %s with %s",
            conflict.conflict_type,
            kind,
            self._settings.conflict_resolution,
        )
        return True

    def _build_conflict(self, kind: str, local: CachedRecord, remote: CachedRecord) -> SyncConflict:
        definition = self._coordinator.kinds.get(kind)
        return SyncConflict(
            kind=kind,
            local_value=local.value,
            remote_value=remote.value,
            local_timestamp=local.last_modified,
            remote_timestamp=remote.last_modified,
            conflict_type=classify_conflict(local.last_modified, remote.last_modified, self._window),
            table=definition.table if definition else "",
        )

    # ------------------------------------------------------------------
    # Manual resolution
    # ------------------------------------------------------------------

    async def resolve_conflict(
        self, kind: str, resolution: str, merged_value: Any = None
    ) -> bool:
        """Apply a caller's decision for a pending conflict.

        Returns False if the chosen value could not be written (the conflict
        stays pending).

        Raises:
            ConflictNotFoundError: No pending conflict for ``kind``.
            ValidationError: Unknown resolution, or ``merge`` without a value.
            SyncOfflineError: Connectivity is down.
        """
        require_kind(kind)
        conflict = self._pending.get(kind)
        if conflict is None:
            raise ConflictNotFoundError(f"No pending conflict found for kind: {kind}")
        if resolution not in MANUAL_RESOLUTIONS:
            raise ValidationError(f"Invalid resolution: {resolution!r}")
        if resolution == "merge" and merged_value is None:
            raise ValidationError("Merged value required for merge resolution")
        if not self._connectivity.is_online:
            raise SyncOfflineError("Cannot resolve conflicts while offline")

        owner = self._pending_owner or ""
        require_owner(self._identity, owner)

        if resolution == "use_local":
            value = conflict.local_value
        elif resolution == "use_remote":
            value = conflict.remote_value
        else:
            value = merged_value

        try:
            await self._coordinator.apply_to_both(kind, value, owner, modified_at=self._now())
        except OwnershipViolationError:
            raise
        except Exception as exc:
            logger.error("Failed to apply %s resolution for %s: %s", resolution, kind, exc)
            await self._report(exc, "medium", owner, kind=kind)
            return False

        del self._pending[kind]
        self._save_state()
        logger.info("Conflict on %s resolved manually (%s)", kind, resolution)
        if not self._pending and self._status == "conflict":
            self._set_status("idle")
        return True

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: SyncListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: SyncListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_status(self, status: str, conflicts: list[SyncConflict] | None = None) -> None:
        self._status = status
        self._notify(status, conflicts)

    def _notify(self, status: str, conflicts: list[SyncConflict] | None = None) -> None:
        for listener in list(self._listeners):
            try:
                listener(status, list(conflicts or []))
            except Exception:
                logger.exception("Sync listener %r failed", listener)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_settings(self, defaults: SyncSettings) -> SyncSettings:
        try:
            stored = self._local.get(SETTINGS_KEY)
        except StorageError:
            logger.exception("Failed to load sync settings")
            stored = None
        if isinstance(stored, dict):
            return SyncSettings.from_dict(stored, defaults=defaults)
        return SyncSettings.from_dict({}, defaults=defaults)

    def _save_settings(self) -> None:
        try:
            self._local.set(SETTINGS_KEY, self._settings.to_dict())
        except (StorageError, EncryptionError):
            logger.exception("Failed to persist sync settings")

    def _load_last_sync_time(self) -> str | None:
        try:
            state = self._local.get(STATE_KEY)
        except StorageError:
            return None
        if isinstance(state, dict) and isinstance(state.get("last_sync_time"), str):
            return state["last_sync_time"]
        return None

    def _save_state(self) -> None:
        state = {
            "last_sync_time": self._last_sync_time,
            "owner_id": self._pending_owner,
            "pending_conflicts": len(self._pending),
        }
        try:
            self._local.set(STATE_KEY, state)
        except (StorageError, EncryptionError):
            logger.exception("Failed to persist sync state")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> str:
        return to_iso(self._clock())

    async def _report(
        self, error: Exception, severity: str, owner_id: str | None, **context: Any
    ) -> None:
        if self._recovery is None:
            return
        await self._recovery.handle(error, "sync", severity, {"owner_id": owner_id, **context})
