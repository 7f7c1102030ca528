"""Error Recovery Engine — turns failures into fallbacks, retries or escalations.

Other components report failures through :meth:`ErrorRecoveryEngine.handle`
instead of handling them ad hoc. Each call:

1. records a sanitized :class:`ErrorRecord` in a bounded in-memory log
   (the newest entries are mirrored to the local cache as ``error_log``),
2. runs the category's fallback strategies in priority order until one
   succeeds,
3. queues retryable strategy failures for the next connectivity-restored
   event,
4. escalates unresolved errors by severity; critical errors carry
   user-facing :class:`RecoveryAction` options.

``handle`` never raises.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable

from shs.core.clock import Clock, parse_timestamp, to_iso, utc_now
from shs.core.connectivity import ConnectivitySignal
from shs.core.identity import IdentityProvider
from shs.core.privacy.redaction import sanitize_context
from shs.core.recovery.models import (
    CATEGORY_MAX_RETRIES,
    ERROR_CATEGORIES,
    SEVERITIES,
    ErrorRecord,
    FallbackStrategy,
    RecoveryAction,
    RecoveryError,
    RecoveryResult,
    StrategyNotApplicableError,
)
from shs.core.recovery.strategies import build_default_strategies
from shs.core.storage.codec import RecordCodec
from shs.core.storage.encryption import EncryptionError
from shs.core.storage.local_store import LocalCacheStore, StorageError

logger = logging.getLogger(__name__)

ERROR_LOG_KEY = "error_log"
SYNC_STATE_KEY = "sync_state"
RESOLVED_ERROR_RETENTION = timedelta(days=7)

ErrorListener = Callable[[ErrorRecord], None]

_SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


@dataclass
class _RetryEntry:
    record: ErrorRecord
    strategy: FallbackStrategy
    context: dict[str, Any]
    limit: int


class ErrorRecoveryEngine:
    """Categorized failure handling with fallback strategies and a retry queue.

    Usage::

        recovery = ErrorRecoveryEngine(local_store=store, connectivity=monitor)
        recovery.start()
        result = await recovery.handle(exc, "network", "low", {"owner_id": owner})
    """

    def __init__(
        self,
        *,
        local_store: LocalCacheStore | None = None,
        codec: RecordCodec | None = None,
        identity_provider: IdentityProvider | None = None,
        connectivity: ConnectivitySignal | None = None,
        strategies: list[FallbackStrategy] | None = None,
        allow_plaintext_fallback: bool = True,
        capacity: int = 1000,
        persisted: int = 100,
        clock: Clock = utc_now,
        network_probe: Callable[[], Awaitable[bool]] | None = None,
        restart: Callable[[], Awaitable[bool]] | None = None,
    ) -> None:
        self._local = local_store
        self._codec = codec
        self._connectivity = connectivity
        self._capacity = capacity
        self._persisted = persisted
        self._clock = clock
        self._network_probe = network_probe
        self._restart = restart

        self._log: dict[str, ErrorRecord] = {}
        self._retry_queue: dict[str, _RetryEntry] = {}
        self._listeners: list[ErrorListener] = []
        if strategies is None:
            strategies = build_default_strategies(
                identity_provider=identity_provider,
                codec=codec,
                cleanup=self.cleanup_storage,
                allow_plaintext_fallback=allow_plaintext_fallback,
            )
        self._strategies: list[FallbackStrategy] = list(strategies)

        self._load_log()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._connectivity is not None:
            self._connectivity.subscribe(self._on_connectivity_change)

    def shutdown(self) -> None:
        if self._connectivity is not None:
            self._connectivity.unsubscribe(self._on_connectivity_change)
        self._save_log()

    async def _on_connectivity_change(self, online: bool) -> None:
        if online:
            await self.process_retry_queue()

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def register_strategy(self, strategy: FallbackStrategy) -> None:
        self._strategies.append(strategy)

    def strategies_for(self, category: str) -> list[FallbackStrategy]:
        """Strategies registered for ``category``, lowest priority first."""
        return sorted(
            (s for s in self._strategies if s.category == category),
            key=lambda s: s.priority,
        )

    # ------------------------------------------------------------------
    # Handle
    # ------------------------------------------------------------------

    async def handle(
        self,
        error: Exception,
        category: str,
        severity: str = "medium",
        context: dict[str, Any] | None = None,
    ) -> RecoveryResult:
        """Record ``error`` and try to recover from it. Never raises."""
        if category not in ERROR_CATEGORIES:
            logger.warning("Unknown error category %r, treating as system", category)
            category = "system"
        if severity not in SEVERITIES:
            logger.warning("Unknown error severity %r, treating as medium", severity)
            severity = "medium"
        raw_context = dict(context or {})

        record = self._create_record(error, category, severity, raw_context)
        self._append(record)
        self._notify(record)

        for strategy in self.strategies_for(category):
            try:
                value = await strategy.handler(error, raw_context)
            except StrategyNotApplicableError as exc:
                logger.debug("Strategy %s not applicable: %s", strategy.name, exc)
                continue
            except Exception as exc:
                logger.warning("Fallback strategy %s failed: %s", strategy.name, exc)
                limit = min(strategy.max_retries, record.max_retries)
                if strategy.can_retry and record.retry_count < limit:
                    self._queue_retry(record, strategy, raw_context, limit)
                continue

            record.resolved = True
            self._save_log()
            logger.info("Error %s resolved by strategy %s", record.id, strategy.name)
            return RecoveryResult(
                error_id=record.id,
                category=category,
                severity=severity,
                resolved=True,
                strategy=strategy.name,
                value=value,
                message=record.message,
                silent=True,
            )

        return self._escalate(record)

    def _create_record(
        self,
        error: Exception,
        category: str,
        severity: str,
        context: dict[str, Any],
    ) -> ErrorRecord:
        owner_id = context.get("owner_id")
        return ErrorRecord(
            id=f"error_{uuid.uuid4().hex[:12]}",
            message=str(error) or type(error).__name__,
            category=category,
            severity=severity,
            timestamp=to_iso(self._clock()),
            owner_id=owner_id if isinstance(owner_id, str) else None,
            error_type=type(error).__name__,
            context=_jsonable(sanitize_context(context)),
            max_retries=CATEGORY_MAX_RETRIES.get(category, 1),
        )

    def _append(self, record: ErrorRecord) -> None:
        self._log[record.id] = record

        overflow = len(self._log) - self._capacity
        if overflow > 0:
            oldest = sorted(self._log.values(), key=lambda r: parse_timestamp(r.timestamp))
            for stale in oldest[:overflow]:
                del self._log[stale.id]

        self._save_log()
        logger.log(
            _SEVERITY_LEVELS[record.severity],
            "[%s] %s (error %s)",
            record.category.upper(),
            record.message,
            record.id,
        )

    def _escalate(self, record: ErrorRecord) -> RecoveryResult:
        base = dict(
            error_id=record.id,
            category=record.category,
            severity=record.severity,
            resolved=False,
            message=record.message,
        )
        if record.severity == "critical":
            actions = self.recovery_actions_for(record)
            logger.critical(
                "Unrecovered critical error %s; offering %s",
                record.id,
                ", ".join(a.name for a in actions),
            )
            return RecoveryResult(**base, critical=True, recovery_actions=actions)
        if record.severity == "high":
            return RecoveryResult(**base, can_retry=True)
        return RecoveryResult(**base, silent=True)

    # ------------------------------------------------------------------
    # Retry queue
    # ------------------------------------------------------------------

    def _queue_retry(
        self,
        record: ErrorRecord,
        strategy: FallbackStrategy,
        context: dict[str, Any],
        limit: int,
    ) -> None:
        record.retry_count += 1
        self._retry_queue[record.id] = _RetryEntry(record, strategy, context, limit)
        logger.info(
            "Queued error %s for retry with %s (attempt %d/%d)",
            record.id,
            strategy.name,
            record.retry_count,
            limit,
        )

    @property
    def retry_queue_size(self) -> int:
        return len(self._retry_queue)

    async def process_retry_queue(self) -> int:
        """Re-run queued strategies. Returns the number of errors resolved."""
        if self._connectivity is not None and not self._connectivity.is_online:
            return 0
        if not self._retry_queue:
            return 0

        logger.info("Processing %d queued error retries", len(self._retry_queue))
        resolved = 0
        for error_id, entry in list(self._retry_queue.items()):
            record, strategy = entry.record, entry.strategy
            try:
                await strategy.handler(RecoveryError(record.message), entry.context)
            except StrategyNotApplicableError:
                self._retry_queue.pop(error_id, None)
                continue
            except Exception as exc:
                logger.warning("Retry of error %s with %s failed: %s", error_id, strategy.name, exc)
                if record.retry_count >= entry.limit:
                    self._retry_queue.pop(error_id, None)
                    logger.warning("Max retries exceeded for error %s; dropped from retry queue", error_id)
                else:
                    record.retry_count += 1
                continue

            record.resolved = True
            self._retry_queue.pop(error_id, None)
            resolved += 1
            logger.info("Retry of error %s succeeded", error_id)

        self._save_log()
        return resolved

    # ------------------------------------------------------------------
    # Recovery actions
    # ------------------------------------------------------------------

    def recovery_actions_for(self, record: ErrorRecord) -> list[RecoveryAction]:
        """User-facing remediations for a critical error, tailored by category."""
        actions: list[RecoveryAction] = []

        if record.category == "encryption":
            actions.append(RecoveryAction(
                name="reset_encryption",
                description="Reset encryption keys (will require re-login)",
                action=self._reset_encryption,
                is_destructive=True,
                requires_confirmation=True,
            ))
        elif record.category == "storage":
            actions.append(RecoveryAction(
                name="clear_cache",
                description="Clear application cache",
                action=self._clear_cache,
            ))
        elif record.category == "sync":
            actions.append(RecoveryAction(
                name="force_resync",
                description="Force complete data resynchronization",
                action=self._force_resync,
                requires_confirmation=True,
            ))
        elif record.category == "network":
            actions.append(RecoveryAction(
                name="retry_connection",
                description="Retry network connection",
                action=self._retry_connection,
            ))

        actions.append(RecoveryAction(
            name="restart_app",
            description="Restart the application",
            action=self._restart_app,
            requires_confirmation=True,
        ))
        return actions

    async def execute_recovery_action(self, action_name: str, error_id: str) -> bool:
        """Run a named recovery action for a logged error.

        Raises:
            RecoveryError: Unknown error id, or the action is not offered for it.
        """
        record = self._log.get(error_id)
        if record is None:
            raise RecoveryError(f"Error {error_id} not found")

        action = next(
            (a for a in self.recovery_actions_for(record) if a.name == action_name), None
        )
        if action is None:
            raise RecoveryError(f"Recovery action {action_name} not found")

        logger.info("Executing recovery action %s for error %s", action_name, error_id)
        try:
            success = await action.action()
        except Exception:
            logger.exception("Recovery action %s failed", action_name)
            return False

        if success:
            record.resolved = True
            self._save_log()
        return success

    async def _reset_encryption(self) -> bool:
        if self._codec is not None:
            self._codec.reset_key_material()
        if self._local is not None:
            self._local.clear_all()
        return True

    async def _clear_cache(self) -> bool:
        self.cleanup_storage()
        return True

    async def _force_resync(self) -> bool:
        if self._local is not None:
            self._local.remove(SYNC_STATE_KEY)
        return True

    async def _retry_connection(self) -> bool:
        if self._network_probe is not None:
            return await self._network_probe()
        return self._connectivity.is_online if self._connectivity is not None else False

    async def _restart_app(self) -> bool:
        if self._restart is None:
            logger.warning("No restart hook configured")
            return False
        return await self._restart()

    def cleanup_storage(self) -> int:
        """Drop week-old resolved errors and disposable cache keys.

        Returns the number of cache entries removed.
        """
        cutoff = self._clock() - RESOLVED_ERROR_RETENTION
        stale = [
            r.id for r in self._log.values()
            if r.resolved and parse_timestamp(r.timestamp) < cutoff
        ]
        for error_id in stale:
            del self._log[error_id]
        self._save_log()

        removed = self._local.cleanup() if self._local is not None else 0
        logger.info("Storage cleanup: %d old errors, %d cache entries", len(stale), removed)
        return removed

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_error(self, error_id: str) -> ErrorRecord | None:
        return self._log.get(error_id)

    def statistics(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "total": len(self._log),
            "by_severity": {s: 0 for s in SEVERITIES},
            "by_category": {},
            "resolved": 0,
            "unresolved": 0,
            "pending_retries": len(self._retry_queue),
        }
        for record in self._log.values():
            stats["by_severity"][record.severity] = stats["by_severity"].get(record.severity, 0) + 1
            stats["by_category"][record.category] = stats["by_category"].get(record.category, 0) + 1
            if record.resolved:
                stats["resolved"] += 1
            else:
                stats["unresolved"] += 1
        return stats

    def recent_errors(self, limit: int = 50) -> list[ErrorRecord]:
        """Most recent errors first."""
        ordered = sorted(
            self._log.values(), key=lambda r: parse_timestamp(r.timestamp), reverse=True
        )
        return ordered[:limit]

    def clear_log(self) -> None:
        self._log.clear()
        self._save_log()

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: ErrorListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ErrorListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, record: ErrorRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception:
                logger.exception("Error listener %r failed", listener)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save_log(self) -> None:
        if self._local is None:
            return
        tail = list(self._log.values())[-self._persisted:] if self._persisted > 0 else []
        try:
            self._local.set(ERROR_LOG_KEY, {r.id: r.to_dict() for r in tail})
        except (StorageError, EncryptionError):
            logger.exception("Failed to persist error log")

    def _load_log(self) -> None:
        if self._local is None:
            return
        try:
            data = self._local.get(ERROR_LOG_KEY)
        except StorageError:
            logger.exception("Failed to load persisted error log")
            return
        if not isinstance(data, dict):
            return
        for error_id, raw in data.items():
            try:
                self._log[error_id] = ErrorRecord.from_dict(raw)
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed persisted error %s", error_id)
        if self._log:
            logger.info("Loaded %d persisted errors", len(self._log))


def _jsonable(context: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(context, default=str))
