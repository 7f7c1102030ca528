"""Hybrid Storage Coordinator — one read/write contract over two stores.

Reads prefer the Remote Record Store when online and mirror what they find
into the Local Cache Store. Writes always land locally first, then travel to
the remote store on a background delivery task; if that fails, or the device
is offline, the encoded payload waits in the Offline Change Queue.

Ownership is checked before any store is touched. A caller whose session
does not match the requested owner gets an
:class:`~shs.core.identity.OwnershipViolationError`, never cached data.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from shs.core.audit.logger import AuditEvent, AuditSink
from shs.core.clock import Clock, to_iso, utc_now
from shs.core.connectivity import ConnectivitySignal
from shs.core.identity import (
    IdentityProvider,
    InvalidOwnerError,
    OwnershipViolationError,
    require_owner,
)
from shs.core.privacy.redaction import detect_pii
from shs.core.storage.codec import (
    CodecAuthError,
    CodecDecodeError,
    CodecError,
    RecordCodec,
    safe_empty,
)
from shs.core.storage.encryption import EncryptionError
from shs.core.storage.local_store import LocalCacheStore, StorageError
from shs.core.storage.models import CachedRecord, DrainReport, OfflineChangeEntry
from shs.core.storage.offline_queue import OfflineChangeQueue
from shs.core.storage.remote_store import RemoteRecordStore, RemoteUnavailableError
from shs.core.sync.kinds import KindRegistry
from shs.core.sync.scheduler import AsyncioScheduler, Scheduler
from shs.core.validation import (
    ValidationError,
    canonical_json,
    require_kind,
    require_serializable,
)

if TYPE_CHECKING:
    from shs.core.recovery.engine import ErrorRecoveryEngine

logger = logging.getLogger(__name__)

DeliveryStatus = Literal["pending", "delivered", "queued", "failed", "superseded"]
ReadSource = Literal["remote", "local_cache"]


# ---------------------------------------------------------------------------
# Delivery handle
# ---------------------------------------------------------------------------

@dataclass
class DeliveryHandle:
    """Tracks the remote half of a two-phase write.

    ``status`` moves from ``pending`` to ``delivered`` (remote accepted),
    ``queued`` (parked in the offline queue), ``failed`` (not deliverable,
    e.g. no secure encoding path in production) or ``superseded`` (a newer
    write or delete of the same kind was made before this one went out).
    """

    id: str
    kind: str
    owner_id: str
    modified_at: str
    status: DeliveryStatus = "pending"
    entry_id: str | None = None
    error: str | None = None
    _task: asyncio.Future | None = field(default=None, repr=False, compare=False)
    _generation: int = field(default=0, repr=False, compare=False)
    _watermark: int | None = field(default=None, repr=False, compare=False)

    @property
    def done(self) -> bool:
        return self.status != "pending"

    async def wait(self) -> DeliveryStatus:
        """Wait for the delivery attempt to settle and return its status."""
        if self._task is not None:
            await self._task
        return self.status

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "owner_id": self.owner_id,
            "modified_at": self.modified_at,
            "status": self.status,
            "entry_id": self.entry_id,
            "error": self.error,
        }


def merge_with_default(default: list[Any], remote: list[Any]) -> list[Any]:
    """Union of ``default`` and ``remote``, default items first, no duplicates.

    An empty remote collection yields the default unchanged.
    """
    if not remote:
        return list(default)
    seen: set[str] = set()
    merged: list[Any] = []
    for item in [*default, *remote]:
        marker = canonical_json(item)
        if marker in seen:
            continue
        seen.add(marker)
        merged.append(item)
    return merged


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class HybridStorageCoordinator:
    """Composes the local cache and the remote store behind one contract.

    Usage::

        coordinator = HybridStorageCoordinator(
            local_store=local, remote_store=remote, codec=codec, queue=queue,
            identity_provider=session, connectivity=monitor, kinds=kinds,
            audit=audit_logger, recovery=recovery,
        )
        coordinator.start()
        handle = await coordinator.write("goals", [{"id": "g1"}], "owner-1")
        await handle.wait()
        goals = await coordinator.read("goals", "owner-1")
    """

    def __init__(
        self,
        *,
        local_store: LocalCacheStore,
        remote_store: RemoteRecordStore,
        codec: RecordCodec,
        queue: OfflineChangeQueue,
        identity_provider: IdentityProvider,
        connectivity: ConnectivitySignal,
        kinds: KindRegistry,
        audit: AuditSink | None = None,
        recovery: ErrorRecoveryEngine | None = None,
        scheduler: Scheduler | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._local = local_store
        self._remote = remote_store
        self._codec = codec
        self._queue = queue
        self._identity = identity_provider
        self._connectivity = connectivity
        self._kinds = kinds
        self._audit = audit
        self._recovery = recovery
        self._scheduler = scheduler or AsyncioScheduler()
        self._clock = clock
        self._deliveries: dict[str, DeliveryHandle] = {}
        # Bumped on every local write or delete of (owner, kind).
        self._generations: dict[tuple[str, str], int] = {}

    @property
    def is_online(self) -> bool:
        return self._connectivity.is_online

    @property
    def kinds(self) -> KindRegistry:
        return self._kinds

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._connectivity.subscribe(self._on_connectivity_change)

    async def shutdown(self) -> None:
        """Stop listening and let in-flight deliveries settle."""
        self._connectivity.unsubscribe(self._on_connectivity_change)
        pending = [h.wait() for h in self.pending_deliveries()]
        if pending:
            await asyncio.gather(*pending)

    async def _on_connectivity_change(self, online: bool) -> None:
        if not online:
            return
        identity = self._identity.current()
        if identity is None or not identity.authenticated:
            logger.info("Connectivity restored but no active session; queue left pending")
            return
        await self.flush_offline_queue(identity.owner_id)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def read(self, kind: str, owner_id: str) -> Any | None:
        """Return the current value of ``kind`` for ``owner_id``, or None.

        Remote first when online, mirrored into the local cache; local cache
        when offline or when the remote store fails for any reason other
        than an ownership violation.

        Raises:
            ValidationError: Empty kind.
            OwnershipViolationError: Owner invalid or not the active session.
        """
        value, _source = await self.read_sourced(kind, owner_id)
        return value

    async def read_sourced(self, kind: str, owner_id: str) -> tuple[Any | None, ReadSource]:
        """Like :meth:`read`, also naming the store the value came from.

        A remote payload that cannot be decoded is never mirrored: the cached
        value is returned instead, or the kind's safe empty value when
        nothing is cached.
        """
        require_kind(kind)
        require_owner(self._identity, owner_id)

        if self.is_online:
            try:
                record = await self.fetch_remote(kind, owner_id)
            except OwnershipViolationError:
                raise
            except CodecAuthError as exc:
                raise InvalidOwnerError(str(exc)) from exc
            except CodecDecodeError as exc:
                logger.error("Remote %s could not be decoded, keeping local cache: %s", kind, exc)
                await self._report(exc, "encryption", "medium", kind, owner_id, operation="read")
                cached = self._read_local(kind, owner_id)
                if cached is None:
                    cached = safe_empty(self._kinds.shape_of(kind))
                return cached, "local_cache"
            except Exception as exc:
                logger.warning("Remote read of %s failed, using local cache: %s", kind, exc)
                await self._report(exc, "network", "low", kind, owner_id, operation="read")
            else:
                if record is not None:
                    self._mirror_locally(record, owner_id)
                    return record.value, "remote"
                return self._read_local(kind, owner_id), "remote"

        return self._read_local(kind, owner_id), "local_cache"

    async def read_with_default(self, kind: str, owner_id: str, default: Any) -> Any:
        """Like :meth:`read`, but returns ``default`` on missing data or degraded failure.

        Kinds flagged ``merge_with_default`` union the default with the stored
        list (default first, duplicates dropped); an empty stored list yields
        the default.

        Raises:
            ValidationError: Empty kind.
            OwnershipViolationError: Owner invalid or not the active session.
        """
        try:
            value = await self.read(kind, owner_id)
        except (OwnershipViolationError, ValidationError):
            raise
        except Exception as exc:
            logger.warning("Failed to load %s, using default value: %s", kind, exc)
            return default
        return self.apply_default(kind, value, default)

    def apply_default(self, kind: str, value: Any, default: Any) -> Any:
        """Combine a read value with the caller's default for ``kind``."""
        if (
            self._kinds.merges_with_default(kind)
            and isinstance(value, list)
            and isinstance(default, list)
        ):
            return merge_with_default(default, value)
        return default if value is None else value

    def local_record(self, kind: str, owner_id: str) -> CachedRecord | None:
        """Cached value and timestamp, or None when nothing is cached."""
        value = self._local.get_record(kind, owner_id)
        if value is None:
            return None
        return CachedRecord(
            kind=kind,
            value=value,
            last_modified=self._local.get_timestamp(kind, owner_id) or "",
        )

    def _read_local(self, kind: str, owner_id: str) -> Any | None:
        try:
            return self._local.get_record(kind, owner_id)
        except StorageError as exc:
            logger.error("Local read of %s failed: %s", kind, exc)
            return None

    def _mirror_locally(self, record: CachedRecord, owner_id: str) -> None:
        try:
            self._local.set_record(
                record.kind, record.value, owner_id, modified_at=record.last_modified or None
            )
        except StorageError as exc:
            logger.warning("Could not mirror %s into local cache: %s", record.kind, exc)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def write(self, kind: str, value: Any, owner_id: str) -> DeliveryHandle:
        """Commit ``value`` locally, then deliver it to the remote store.

        The local effect is visible to subsequent reads immediately. The
        returned handle tracks the remote delivery; callers may ``await
        handle.wait()`` but need not.

        Raises:
            ValidationError: Empty kind or a null / non-JSON value.
            OwnershipViolationError: Owner invalid or not the active session.
        """
        require_kind(kind)
        require_owner(self._identity, owner_id)
        require_serializable(value)
        self._warn_on_pii(kind, value)

        operation = "update" if self._local.get_timestamp(kind, owner_id) else "insert"
        stamp = to_iso(self._clock())
        try:
            self._local.set_record(kind, value, owner_id, modified_at=stamp)
        except (StorageError, EncryptionError) as exc:
            logger.error("Local write of %s failed: %s", kind, exc)
            await self._report(exc, "storage", "high", kind, owner_id, operation=operation)

        handle = DeliveryHandle(
            id=str(uuid.uuid4()),
            kind=kind,
            owner_id=owner_id,
            modified_at=stamp,
            _generation=self._bump_generation(kind, owner_id),
            _watermark=self._queue.last_seq(owner_id, kind),
        )
        self._deliveries = {k: h for k, h in self._deliveries.items() if not h.done}
        self._deliveries[handle.id] = handle

        try:
            payload = self._codec.encode(value, owner_id)
        except CodecError as exc:
            handle.status, handle.error = "failed", str(exc)
            logger.error("Cannot encode %s for remote delivery: %s", kind, exc)
            await self._report(exc, "encryption", "high", kind, owner_id, operation=operation)
            return handle

        if not self.is_online:
            self._park(handle, operation, payload, reason="offline")
            return handle

        handle._task = self._scheduler.spawn(self._deliver(handle, operation, payload))
        return handle

    async def _deliver(self, handle: DeliveryHandle, operation: str, payload: str) -> None:
        if self._is_stale(handle):
            handle.status = "superseded"
            return
        try:
            await self.push_remote(
                handle.kind, payload, handle.owner_id, modified_at=handle.modified_at
            )
        except OwnershipViolationError as exc:
            handle.status, handle.error = "failed", str(exc)
            logger.error("Remote delivery of %s refused: %s", handle.kind, exc)
            return
        except Exception as exc:
            if self._is_stale(handle):
                handle.status, handle.error = "superseded", str(exc)
            else:
                self._park(handle, operation, payload, reason=str(exc))
            await self._report(
                exc, "sync", "medium", handle.kind, handle.owner_id, operation=operation
            )
            return
        handle.status = "delivered"
        self._settle_queue(handle.kind, handle.owner_id, handle._watermark)
        logger.debug("Delivered %s for owner %s", handle.kind, handle.owner_id)

    def _park(self, handle: DeliveryHandle, operation: str, payload: str, *, reason: str) -> None:
        entry = self._queue.enqueue(
            handle.kind, operation, payload, handle.owner_id, modified_at=handle.modified_at
        )
        handle.status, handle.entry_id, handle.error = "queued", entry.id, reason

    def pending_deliveries(self) -> list[DeliveryHandle]:
        return [h for h in self._deliveries.values() if not h.done]

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, kind: str, owner_id: str) -> bool:
        """Remove ``kind`` locally now and remotely on a best-effort basis.

        A remote failure (or being offline) queues a delete entry for the next
        drain instead of retrying inline. Returns True if a local value existed.
        """
        require_kind(kind)
        require_owner(self._identity, owner_id)

        removed = self._local.remove_record(kind, owner_id)
        self._bump_generation(kind, owner_id)
        watermark = self._queue.last_seq(owner_id, kind)

        if not self.is_online:
            self._queue.enqueue(kind, "delete", None, owner_id)
            return removed

        try:
            await self.remove_remote(kind, owner_id)
        except OwnershipViolationError:
            raise
        except Exception as exc:
            logger.warning("Remote delete of %s failed, queued for later: %s", kind, exc)
            self._queue.enqueue(kind, "delete", None, owner_id)
            await self._report(exc, "sync", "low", kind, owner_id, operation="delete")
            return removed
        self._settle_queue(kind, owner_id, watermark)
        return removed

    # ------------------------------------------------------------------
    # Remote path (audited)
    # ------------------------------------------------------------------

    async def fetch_remote(self, kind: str, owner_id: str) -> CachedRecord | None:
        """Fetch and decode the remote record. Errors propagate.

        Raises:
            CodecDecodeError: The remote payload is undecodable.
        """
        try:
            record = await self._remote.fetch(kind, owner_id)
        except Exception as exc:
            self._audit_access("record_read", kind, owner_id, exc)
            raise
        self._audit_access("record_read", kind, owner_id)
        if record is None:
            return None
        value = self._codec.decode(
            record.payload, owner_id, shape=self._kinds.shape_of(kind), strict=True
        )
        return CachedRecord(kind=kind, value=value, last_modified=record.last_modified)

    async def push_remote(
        self, kind: str, payload: str, owner_id: str, *, modified_at: str
    ) -> None:
        """Store an already-encoded payload remotely. Errors propagate."""
        try:
            await self._remote.store(kind, payload, owner_id, modified_at=modified_at)
        except Exception as exc:
            self._audit_access("record_write", kind, owner_id, exc)
            raise
        self._audit_access("record_write", kind, owner_id)

    async def store_remote(
        self, kind: str, value: Any, owner_id: str, *, modified_at: str
    ) -> None:
        """Encode ``value`` and store it remotely. Errors propagate."""
        await self.push_remote(
            kind, self._codec.encode(value, owner_id), owner_id, modified_at=modified_at
        )

    async def remove_remote(self, kind: str, owner_id: str) -> bool:
        try:
            removed = await self._remote.remove(kind, owner_id)
        except Exception as exc:
            self._audit_access("record_delete", kind, owner_id, exc)
            raise
        self._audit_access("record_delete", kind, owner_id)
        return removed

    def pull_to_local(self, kind: str, value: Any, owner_id: str, *, modified_at: str) -> None:
        """Overwrite the cached value with a remote one, keeping its timestamp."""
        self._local.set_record(kind, value, owner_id, modified_at=modified_at)

    async def apply_to_both(
        self, kind: str, value: Any, owner_id: str, *, modified_at: str
    ) -> None:
        """Write ``value`` remotely, then locally, under one timestamp.

        Queued changes of ``kind`` older than this write are superseded.
        """
        watermark = self._queue.last_seq(owner_id, kind)
        await self.store_remote(kind, value, owner_id, modified_at=modified_at)
        self._local.set_record(kind, value, owner_id, modified_at=modified_at)
        self._settle_queue(kind, owner_id, watermark)

    # ------------------------------------------------------------------
    # Offline queue
    # ------------------------------------------------------------------

    async def replay_entry(self, entry: OfflineChangeEntry) -> None:
        """Deliver one queued change. Raises on failure so the entry stays pending.

        Payloads are decoded and re-encoded, so a change queued under the
        plaintext fallback is encrypted once a session is available. The
        remote record keeps the time of the original edit.
        """
        require_owner(self._identity, entry.owner_id)
        if not self.is_online:
            raise RemoteUnavailableError("Offline")

        if entry.operation == "delete":
            await self.remove_remote(entry.kind, entry.owner_id)
            return

        if not entry.encoded_payload:
            raise ValidationError(f"Queued {entry.operation} of {entry.kind} has no payload")
        value = self._codec.decode(
            entry.encoded_payload,
            entry.owner_id,
            shape=self._kinds.shape_of(entry.kind),
            strict=True,
        )
        await self.store_remote(
            entry.kind, value, entry.owner_id, modified_at=entry.modified_at or entry.queued_at
        )

    async def flush_offline_queue(self, owner_id: str) -> DrainReport:
        """Replay ``owner_id``'s pending changes in queue order."""
        require_owner(self._identity, owner_id)
        if not self.is_online:
            logger.info("Offline; %d changes stay queued", self._queue.count_pending(owner_id))
            return DrainReport(owner_id=owner_id)
        return await self._queue.drain(owner_id, self.replay_entry)

    def pending_changes(self, owner_id: str) -> list[OfflineChangeEntry]:
        require_owner(self._identity, owner_id)
        return self._queue.pending(owner_id)

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    async def push_all(self, owner_id: str) -> dict[str, list[str]]:
        """Force-push every locally cached kind to the remote store."""
        require_owner(self._identity, owner_id)
        results: dict[str, list[str]] = {"success": [], "failed": []}

        for kind in self._kinds.all():
            cached = self.local_record(kind.name, owner_id)
            if cached is None:
                continue
            if not self.is_online:
                results["failed"].append(kind.name)
                continue
            watermark = self._queue.last_seq(owner_id, kind.name)
            try:
                await self.store_remote(
                    kind.name,
                    cached.value,
                    owner_id,
                    modified_at=cached.last_modified or to_iso(self._clock()),
                )
            except OwnershipViolationError:
                raise
            except Exception as exc:
                logger.error("Failed to push %s: %s", kind.name, exc)
                results["failed"].append(kind.name)
                continue
            self._settle_queue(kind.name, owner_id, watermark)
            results["success"].append(kind.name)

        logger.info(
            "Pushed %d kinds for owner %s (%d failed)",
            len(results["success"]),
            owner_id,
            len(results["failed"]),
        )
        return results

    async def erase_owner_data(self, owner_id: str, reason: str = "User request") -> dict[str, Any]:
        """Erase every record of ``owner_id`` from both stores (right to erasure).

        Pending queued writes are superseded first so a later drain cannot
        resurrect them. Remote deletes that fail, or happen offline, are
        queued.
        """
        require_owner(self._identity, owner_id)
        superseded = self._queue.supersede_pending(owner_id, f"superseded by erasure: {reason}")

        remote_removed: list[str] = []
        queued: list[str] = []
        for kind in self._kinds.all():
            if not self.is_online:
                self._queue.enqueue(kind.name, "delete", None, owner_id)
                queued.append(kind.name)
                continue
            try:
                if await self.remove_remote(kind.name, owner_id):
                    remote_removed.append(kind.name)
            except OwnershipViolationError:
                raise
            except Exception as exc:
                logger.warning("Remote erase of %s failed, queued: %s", kind.name, exc)
                self._queue.enqueue(kind.name, "delete", None, owner_id)
                queued.append(kind.name)

        local_removed = self._local.clear_owner(owner_id)

        if self._audit is not None:
            self._safe_audit(AuditEvent(
                action="owner_erase",
                owner_id=owner_id,
                metadata={
                    "reason": reason,
                    "remote_removed": len(remote_removed),
                    "queued": len(queued),
                },
            ))
        logger.warning("Erased data for owner %s (%s)", owner_id, reason)
        return {
            "owner_id": owner_id,
            "remote_removed": remote_removed,
            "queued_deletes": queued,
            "superseded_changes": superseded,
            "local_entries_removed": local_removed,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _bump_generation(self, kind: str, owner_id: str) -> int:
        key = (owner_id, kind)
        self._generations[key] = self._generations.get(key, 0) + 1
        return self._generations[key]

    def _is_stale(self, handle: DeliveryHandle) -> bool:
        return self._generations.get((handle.owner_id, handle.kind), 0) != handle._generation

    def _settle_queue(self, kind: str, owner_id: str, watermark: int | None) -> None:
        """Retire queued changes of ``kind`` made obsolete by a newer remote write."""
        if watermark is None:
            return
        self._queue.supersede_pending(
            owner_id, "superseded by a newer remote write", kind=kind, up_to_seq=watermark
        )

    def _warn_on_pii(self, kind: str, value: Any) -> None:
        if not self._kinds.is_healthcare(kind):
            return
        found = detect_pii(value)
        if found:
            logger.warning(
                "Possible PII (%s) in %s record - ensure GDPR compliance",
                ", ".join(found),
                kind,
            )

    def _audit_access(
        self, action: str, kind: str, owner_id: str, error: Exception | None = None
    ) -> None:
        if self._audit is None:
            return
        self._safe_audit(AuditEvent(
            action=action,
            kind=kind,
            owner_id=owner_id,
            timestamp=to_iso(self._clock()),
            status="failure" if error is not None else "success",
            error_type=type(error).__name__ if error is not None else None,
        ))

    def _safe_audit(self, event: AuditEvent) -> None:
        try:
            self._audit.record(event)
        except Exception:
            logger.exception("Audit sink failed for %s", event.action)

    async def _report(
        self,
        error: Exception,
        category: str,
        severity: str,
        kind: str,
        owner_id: str,
        **context: Any,
    ) -> None:
        if self._recovery is None:
            return
        await self._recovery.handle(
            error, category, severity, {"owner_id": owner_id, "kind": kind, **context}
        )
