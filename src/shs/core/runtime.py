"""SyncRuntime — builds and owns one instance of every sync component.

The hosting process (the MCP server, or a test) constructs a runtime,
calls :meth:`SyncRuntime.start` once and :meth:`SyncRuntime.shutdown` on the
way out. Components hold explicit references to each other; there are no
module-level singletons.
"""

from __future__ import annotations

import logging
from typing import Any

from shs.core.audit.logger import AuditLogger
from shs.core.clock import Clock, utc_now
from shs.core.config.settings import Settings, get_settings
from shs.core.connectivity import ConnectivityMonitor
from shs.core.identity import IdentityProvider, StaticIdentityProvider
from shs.core.recovery.engine import ErrorRecoveryEngine
from shs.core.storage.codec import RecordCodec
from shs.core.storage.coordinator import HybridStorageCoordinator
from shs.core.storage.database import CacheDatabase
from shs.core.storage.encryption import EncryptionError, FieldEncryptor
from shs.core.storage.local_store import LocalCacheStore
from shs.core.storage.offline_queue import OfflineChangeQueue
from shs.core.storage.remote_store import (
    InMemoryRemoteStore,
    MCPRemoteRecordStore,
    RemoteRecordStore,
)
from shs.core.sync.engine import SyncEngine
from shs.core.sync.kinds import KindRegistry, load_default_kinds
from shs.core.sync.models import SyncSettings
from shs.core.sync.scheduler import AsyncioScheduler, Scheduler

logger = logging.getLogger(__name__)


class SyncRuntime:
    """Composition root for the offline-first sync stack.

    Usage::

        runtime = SyncRuntime.build(get_settings())
        runtime.start()
        await runtime.coordinator.write("goals", goals, runtime.owner_id)
        await runtime.shutdown()
    """

    def __init__(
        self,
        *,
        settings: Settings,
        database: CacheDatabase,
        local_store: LocalCacheStore,
        remote_store: RemoteRecordStore,
        codec: RecordCodec,
        queue: OfflineChangeQueue,
        identity_provider: IdentityProvider,
        connectivity: ConnectivityMonitor,
        kinds: KindRegistry,
        audit: AuditLogger,
        recovery: ErrorRecoveryEngine,
        coordinator: HybridStorageCoordinator,
        sync_engine: SyncEngine,
        scheduler: Scheduler,
    ) -> None:
        self.settings = settings
        self.database = database
        self.local_store = local_store
        self.remote_store = remote_store
        self.codec = codec
        self.queue = queue
        self.identity_provider = identity_provider
        self.connectivity = connectivity
        self.kinds = kinds
        self.audit = audit
        self.recovery = recovery
        self.coordinator = coordinator
        self.sync_engine = sync_engine
        self.scheduler = scheduler
        self._started = False

    @classmethod
    def build(
        cls,
        settings: Settings | None = None,
        *,
        database: CacheDatabase | None = None,
        remote_store: RemoteRecordStore | None = None,
        identity_provider: IdentityProvider | None = None,
        connectivity: ConnectivityMonitor | None = None,
        scheduler: Scheduler | None = None,
        kinds: KindRegistry | None = None,
        clock: Clock = utc_now,
    ) -> SyncRuntime:
        """Wire every component from ``settings``; any collaborator may be overridden."""
        settings = settings or get_settings()

        if database is None:
            database = CacheDatabase(settings.db_path)
        database.initialize()

        encryptor: FieldEncryptor | None = None
        if settings.encryption_key:
            try:
                encryptor = FieldEncryptor(settings.encryption_key)
            except EncryptionError as exc:
                logger.error("Invalid ENCRYPTION_KEY: %s", exc)
        if encryptor is None:
            if settings.allow_plaintext_fallback:
                logger.warning(
                    "No encryption key configured; cache is unencrypted and remote "
                    "payloads use the plaintext fallback (%s only)",
                    settings.environment,
                )
            else:
                logger.error(
                    "No encryption key configured in production; remote writes will be refused"
                )

        identity_provider = identity_provider or StaticIdentityProvider(settings.session_owner_id)
        connectivity = connectivity or ConnectivityMonitor(online=True)
        scheduler = scheduler or AsyncioScheduler()
        kinds = kinds or load_default_kinds()

        if remote_store is None:
            if settings.remote_store_url:
                from fastmcp import Client as MCPClient

                remote_store = MCPRemoteRecordStore(MCPClient(settings.remote_store_url))
                logger.info("Remote record store configured for %s", settings.remote_store_url)
            else:
                remote_store = InMemoryRemoteStore(identity_provider=identity_provider)
                logger.info("No REMOTE_STORE_URL configured; using in-process remote store")

        local_store = LocalCacheStore(database, encryptor, clock=clock)
        codec = RecordCodec(
            identity_provider,
            encryptor,
            allow_plaintext_fallback=settings.allow_plaintext_fallback,
        )
        queue = OfflineChangeQueue(database, clock=clock)
        audit = AuditLogger(database)

        runtime_ref: dict[str, SyncRuntime] = {}

        async def _restart() -> bool:
            return await runtime_ref["runtime"].restart()

        recovery = ErrorRecoveryEngine(
            local_store=local_store,
            codec=codec,
            identity_provider=identity_provider,
            connectivity=connectivity,
            allow_plaintext_fallback=settings.allow_plaintext_fallback,
            capacity=settings.error_log_capacity,
            persisted=settings.error_log_persisted,
            clock=clock,
            restart=_restart,
        )
        coordinator = HybridStorageCoordinator(
            local_store=local_store,
            remote_store=remote_store,
            codec=codec,
            queue=queue,
            identity_provider=identity_provider,
            connectivity=connectivity,
            kinds=kinds,
            audit=audit,
            recovery=recovery,
            scheduler=scheduler,
            clock=clock,
        )
        sync_engine = SyncEngine(
            coordinator=coordinator,
            identity_provider=identity_provider,
            connectivity=connectivity,
            local_store=local_store,
            scheduler=scheduler,
            recovery=recovery,
            settings=SyncSettings(
                auto_sync=settings.sync_auto,
                sync_interval=settings.sync_interval_seconds,
                conflict_resolution=settings.sync_conflict_resolution,
                max_retries=settings.sync_max_retries,
                batch_size=settings.sync_batch_size,
                healthcare_priority=settings.sync_healthcare_priority,
            ),
            concurrent_edit_window=settings.concurrent_edit_window_seconds,
            clock=clock,
        )

        runtime = cls(
            settings=settings,
            database=database,
            local_store=local_store,
            remote_store=remote_store,
            codec=codec,
            queue=queue,
            identity_provider=identity_provider,
            connectivity=connectivity,
            kinds=kinds,
            audit=audit,
            recovery=recovery,
            coordinator=coordinator,
            sync_engine=sync_engine,
            scheduler=scheduler,
        )
        runtime_ref["runtime"] = runtime
        return runtime

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started

    @property
    def owner_id(self) -> str:
        """Owner of the active session ("" when signed out)."""
        identity = self.identity_provider.current()
        return identity.owner_id if identity is not None else ""

    def start(self) -> None:
        """Subscribe components to connectivity and start the sync timer.

        Must be called with an event loop running. Subscription order fixes
        what happens on reconnect: the offline queue drains first, then
        queued error retries run, then a sync pass.
        """
        if self._started:
            return
        self.coordinator.start()
        self.recovery.start()
        self.sync_engine.start()
        self._started = True
        logger.info("Sync runtime started (%d kinds tracked)", len(self.kinds.tracked_names()))

    async def stop(self) -> None:
        """Stop timers and wait for in-flight deliveries; the cache stays open."""
        if not self._started:
            return
        await self.sync_engine.shutdown()
        await self.coordinator.shutdown()
        self.recovery.shutdown()
        scheduler_shutdown = getattr(self.scheduler, "shutdown", None)
        if scheduler_shutdown is not None:
            await scheduler_shutdown()
        self._started = False
        logger.info("Sync runtime stopped")

    async def shutdown(self) -> None:
        await self.stop()
        self.database.close()

    async def restart(self) -> bool:
        """Restart the sync loop without dropping local state."""
        await self.sync_engine.shutdown()
        self.sync_engine.start()
        logger.warning("Sync runtime restarted")
        return True

    def describe(self) -> dict[str, Any]:
        return {
            "environment": self.settings.environment,
            "online": self.connectivity.is_online,
            "secure_codec": self.codec.secure_path_available,
            "remote_store": type(self.remote_store).__name__,
            "kinds_tracked": self.kinds.tracked_names(),
            "schema_version": self.database.get_schema_version(),
        }
