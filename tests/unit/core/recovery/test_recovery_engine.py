"""Tests for ErrorRecoveryEngine — strategies, retry queue, escalation, persistence."""

from __future__ import annotations

import asyncio

import pytest

from shs.core.recovery.engine import ERROR_LOG_KEY, SYNC_STATE_KEY, ErrorRecoveryEngine
from shs.core.recovery.models import (
    ERROR_CATEGORIES,
    SEVERITIES,
    FallbackStrategy,
    RecoveryError,
)

OWNER = "owner-a"


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _fails(error, context):
    raise RuntimeError("still broken")


async def _succeeds(error, context):
    return "ok"


class TestHandle:
    @pytest.mark.parametrize(
        "category,strategy",
        [
            ("network", "offline_mode"),
            ("authentication", "token_refresh"),
            ("encryption", "encryption_key_regenerate"),
            ("storage", "storage_cleanup"),
            ("sync", "queue_for_later"),
        ],
    )
    def test_default_strategies_resolve(self, recovery, category, strategy):
        result = _run(recovery.handle(RuntimeError("x"), category, "medium", {"owner_id": OWNER}))
        assert result.resolved is True
        assert result.strategy == strategy
        assert result.silent is True

    @pytest.mark.parametrize("category", ["validation", "compliance", "user_action", "system"])
    def test_categories_without_strategies_escalate(self, recovery, category):
        result = _run(recovery.handle(ValueError("bad"), category, "low"))
        assert result.resolved is False
        assert result.silent is True

    def test_network_retry_uses_supplied_operation(self, recovery):
        calls: list[int] = []

        async def retry():
            calls.append(1)
            return "fetched"

        result = _run(recovery.handle(ConnectionError("down"), "network", "low", {"retry": retry}))
        assert result.strategy == "network_retry"
        assert result.value == "fetched"
        assert calls == [1]

    def test_offline_mode_returns_fallback_data(self, recovery):
        result = _run(recovery.handle(
            ConnectionError("down"), "network", "low", {"fallback_data": [1, 2]}
        ))
        assert result.value == {"mode": "offline", "data": [1, 2]}

    def test_auth_falls_back_to_reauth_when_refresh_fails(self, recovery, identity):
        identity.refresh_fails = True
        result = _run(recovery.handle(PermissionError("expired"), "authentication", "high"))
        assert result.strategy == "reauth_required"
        assert result.value == {"requires_reauth": True}
        assert recovery.retry_queue_size == 1

    def test_unknown_category_and_severity_are_normalised(self, recovery):
        result = _run(recovery.handle(RuntimeError("x"), "cosmic", "apocalyptic"))
        assert result.category == "system"
        assert result.severity == "medium"

    def test_handle_never_raises_on_strategy_bug(self, local_store):
        engine = ErrorRecoveryEngine(
            local_store=local_store,
            strategies=[FallbackStrategy("explodes", "system", _fails)],
        )
        result = _run(engine.handle(RuntimeError("x"), "system", "high"))
        assert result.resolved is False
        assert result.can_retry is True

    @pytest.mark.parametrize("severity", SEVERITIES)
    @pytest.mark.parametrize("category", ERROR_CATEGORIES)
    def test_every_category_escalates_when_all_strategies_fail(
        self, local_store, category, severity
    ):
        engine = ErrorRecoveryEngine(
            local_store=local_store,
            strategies=[
                FallbackStrategy(f"{name}_broken", name, _fails) for name in ERROR_CATEGORIES
            ],
        )
        result = _run(engine.handle(RuntimeError("x"), category, severity, {"owner_id": OWNER}))
        assert result.resolved is False
        assert result.category == category
        assert result.severity == severity
        assert result.critical is (severity == "critical")
        if severity == "critical":
            assert result.recovery_actions
            assert "restart_app" in [a.name for a in result.recovery_actions]
        assert engine.statistics()["unresolved"] == 1

    def test_context_is_sanitized(self, recovery):
        result = _run(recovery.handle(
            RuntimeError("x"), "validation", "low", {"api_token": "abc", "kind": "goals"}
        ))
        record = recovery.get_error(result.error_id)
        assert record.context == {"api_token": "[REDACTED]", "kind": "goals"}

    def test_listener_notified(self, recovery):
        seen = []
        recovery.add_listener(seen.append)
        _run(recovery.handle(RuntimeError("x"), "system", "low", {"owner_id": OWNER}))
        assert len(seen) == 1
        assert seen[0].owner_id == OWNER


class TestEscalation:
    def test_critical_offers_actions(self, recovery):
        result = _run(recovery.handle(RuntimeError("x"), "compliance", "critical"))
        assert result.critical is True
        assert [a.name for a in result.recovery_actions] == ["restart_app"]

    def test_critical_sync_offers_force_resync(self, local_store):
        engine = ErrorRecoveryEngine(local_store=local_store, strategies=[])
        result = _run(engine.handle(RuntimeError("x"), "sync", "critical"))
        assert [a.name for a in result.recovery_actions] == ["force_resync", "restart_app"]

    def test_high_is_retryable(self, recovery):
        result = _run(recovery.handle(RuntimeError("x"), "validation", "high"))
        assert result.can_retry is True
        assert result.critical is False


class TestRetryQueue:
    def test_retry_limit_is_smaller_of_strategy_and_category(self, local_store, connectivity):
        engine = ErrorRecoveryEngine(
            local_store=local_store,
            connectivity=connectivity,
            strategies=[FallbackStrategy("flaky", "encryption", _fails, can_retry=True, max_retries=5)],
        )
        result = _run(engine.handle(RuntimeError("x"), "encryption", "medium"))
        assert engine.retry_queue_size == 1
        # Category limit for encryption is 1, so the first failed retry drops it.
        _run(engine.process_retry_queue())
        assert engine.retry_queue_size == 0
        assert engine.get_error(result.error_id).resolved is False

    def test_successful_retry_resolves(self, local_store, connectivity):
        attempts: list[int] = []

        async def flaky(error, context):
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("first try fails")
            return "ok"

        engine = ErrorRecoveryEngine(
            local_store=local_store,
            connectivity=connectivity,
            strategies=[FallbackStrategy("flaky", "network", flaky, can_retry=True, max_retries=3)],
        )
        result = _run(engine.handle(RuntimeError("x"), "network", "low"))
        assert _run(engine.process_retry_queue()) == 1
        assert engine.get_error(result.error_id).resolved is True

    def test_not_processed_while_offline(self, local_store, connectivity):
        engine = ErrorRecoveryEngine(
            local_store=local_store,
            connectivity=connectivity,
            strategies=[FallbackStrategy("flaky", "network", _fails, can_retry=True, max_retries=3)],
        )

        async def _flow():
            await engine.handle(RuntimeError("x"), "network", "low")
            await connectivity.set_online(False)
            return await engine.process_retry_queue()

        assert _run(_flow()) == 0
        assert engine.retry_queue_size == 1

    def test_reconnect_processes_queue(self, local_store, connectivity):
        outcomes = iter([RuntimeError("fail"), None])

        async def flaky(error, context):
            outcome = next(outcomes)
            if outcome is not None:
                raise outcome
            return "ok"

        engine = ErrorRecoveryEngine(
            local_store=local_store,
            connectivity=connectivity,
            strategies=[FallbackStrategy("flaky", "sync", flaky, can_retry=True, max_retries=2)],
        )
        engine.start()

        async def _flow():
            await engine.handle(RuntimeError("x"), "sync", "low")
            await connectivity.set_online(False)
            await connectivity.set_online(True)

        _run(_flow())
        assert engine.retry_queue_size == 0
        assert engine.statistics()["resolved"] == 1


class TestRecoveryActions:
    def test_unknown_error_id(self, recovery):
        with pytest.raises(RecoveryError, match="not found"):
            _run(recovery.execute_recovery_action("restart_app", "error_missing"))

    def test_action_not_offered(self, recovery):
        result = _run(recovery.handle(RuntimeError("x"), "system", "critical"))
        with pytest.raises(RecoveryError, match="clear_cache"):
            _run(recovery.execute_recovery_action("clear_cache", result.error_id))

    def test_force_resync_clears_sync_state(self, local_store):
        local_store.set(SYNC_STATE_KEY, {"last_sync_time": "x"})
        engine = ErrorRecoveryEngine(local_store=local_store, strategies=[])
        result = _run(engine.handle(RuntimeError("x"), "sync", "critical"))
        assert _run(engine.execute_recovery_action("force_resync", result.error_id)) is True
        assert local_store.get(SYNC_STATE_KEY) is None
        assert engine.get_error(result.error_id).resolved is True

    def test_restart_without_hook_fails(self, local_store):
        engine = ErrorRecoveryEngine(local_store=local_store, strategies=[])
        result = _run(engine.handle(RuntimeError("x"), "system", "critical"))
        assert _run(engine.execute_recovery_action("restart_app", result.error_id)) is False

    def test_restart_hook_called(self, local_store):
        restarted: list[int] = []

        async def restart():
            restarted.append(1)
            return True

        engine = ErrorRecoveryEngine(local_store=local_store, strategies=[], restart=restart)
        result = _run(engine.handle(RuntimeError("x"), "system", "critical"))
        assert _run(engine.execute_recovery_action("restart_app", result.error_id)) is True
        assert restarted == [1]

    def test_reset_encryption_clears_cache(self, local_store, codec):
        local_store.set_record("goals", ["x"], OWNER)
        engine = ErrorRecoveryEngine(local_store=local_store, codec=codec, strategies=[])
        result = _run(engine.handle(RuntimeError("x"), "encryption", "critical"))
        assert _run(engine.execute_recovery_action("reset_encryption", result.error_id)) is True
        assert local_store.get_record("goals", OWNER) is None


class TestPersistence:
    def test_log_persisted_and_reloaded(self, local_store):
        engine = ErrorRecoveryEngine(local_store=local_store, strategies=[])
        result = _run(engine.handle(RuntimeError("disk"), "storage", "high", {"owner_id": OWNER}))

        reloaded = ErrorRecoveryEngine(local_store=local_store, strategies=[])
        record = reloaded.get_error(result.error_id)
        assert record.message == "disk"
        assert record.owner_id == OWNER

    def test_persisted_tail_is_bounded(self, local_store):
        engine = ErrorRecoveryEngine(local_store=local_store, strategies=[], persisted=2)
        for i in range(4):
            _run(engine.handle(RuntimeError(str(i)), "system", "low"))
        assert len(local_store.get(ERROR_LOG_KEY)) == 2

    def test_capacity_drops_oldest(self, local_store, clock):
        engine = ErrorRecoveryEngine(local_store=local_store, strategies=[], capacity=3, clock=clock)
        ids = []
        for i in range(5):
            clock.advance(1)
            ids.append(_run(engine.handle(RuntimeError(str(i)), "system", "low")).error_id)
        assert engine.statistics()["total"] == 3
        assert engine.get_error(ids[0]) is None
        assert engine.get_error(ids[-1]) is not None

    def test_cleanup_drops_old_resolved(self, local_store, clock):
        engine = ErrorRecoveryEngine(
            local_store=local_store,
            strategies=[FallbackStrategy("ok", "system", _succeeds)],
            clock=clock,
        )
        result = _run(engine.handle(RuntimeError("x"), "system", "low"))
        local_store.set("temp_upload", "junk")
        clock.advance(8 * 24 * 3600)
        assert engine.cleanup_storage() == 1
        assert engine.get_error(result.error_id) is None

    def test_recent_errors_newest_first(self, recovery, clock):
        first = _run(recovery.handle(RuntimeError("a"), "system", "low")).error_id
        clock.advance(5)
        second = _run(recovery.handle(RuntimeError("b"), "system", "low")).error_id
        assert [r.id for r in recovery.recent_errors()] == [second, first]
