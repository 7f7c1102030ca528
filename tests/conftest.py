"""Shared test fixtures for Sovereign Health Sync tests."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("DB_PATH", ":memory:")
    monkeypatch.setenv("REMOTE_STORE_URL", "")
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("SESSION_OWNER_ID", "")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from shs.core.audit.logger import AuditLogger  # noqa: E402
from shs.core.connectivity import ConnectivityMonitor  # noqa: E402
from shs.core.identity import StaticIdentityProvider  # noqa: E402
from shs.core.recovery.engine import ErrorRecoveryEngine  # noqa: E402
from shs.core.storage.codec import RecordCodec  # noqa: E402
from shs.core.storage.coordinator import HybridStorageCoordinator  # noqa: E402
from shs.core.storage.database import CacheDatabase  # noqa: E402
from shs.core.storage.encryption import FieldEncryptor  # noqa: E402
from shs.core.storage.local_store import LocalCacheStore  # noqa: E402
from shs.core.storage.offline_queue import OfflineChangeQueue  # noqa: E402
from shs.core.storage.remote_store import InMemoryRemoteStore  # noqa: E402
from shs.core.sync.engine import SyncEngine  # noqa: E402
from shs.core.sync.kinds import load_default_kinds  # noqa: E402
from shs.core.sync.models import SyncSettings  # noqa: E402
from shs.core.sync.scheduler import VirtualScheduler  # noqa: E402

OWNER = "owner-a"
OTHER_OWNER = "owner-b"
BASE_TIME = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced clock: ``clock()`` returns the pinned time."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set(self, seconds: float) -> datetime:
        """Jump to ``seconds`` after the test epoch."""
        self.now = BASE_TIME + timedelta(seconds=seconds)
        return self.now


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def cache_db():
    """Create an in-memory CacheDatabase for testing."""
    db = CacheDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def encryption_key() -> str:
    return FieldEncryptor.generate_key()


@pytest.fixture
def field_encryptor(encryption_key: str) -> FieldEncryptor:
    """Create a FieldEncryptor with a test key."""
    return FieldEncryptor(encryption_key)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def identity() -> StaticIdentityProvider:
    """Signed-in session for OWNER."""
    return StaticIdentityProvider(OWNER)


@pytest.fixture
def connectivity() -> ConnectivityMonitor:
    return ConnectivityMonitor(online=True)


@pytest.fixture
def scheduler() -> VirtualScheduler:
    return VirtualScheduler()


@pytest.fixture
def kinds():
    return load_default_kinds()


@pytest.fixture
def local_store(cache_db, field_encryptor, clock) -> LocalCacheStore:
    return LocalCacheStore(cache_db, field_encryptor, clock=clock)


@pytest.fixture
def codec(identity, field_encryptor) -> RecordCodec:
    return RecordCodec(identity, field_encryptor, allow_plaintext_fallback=True)


@pytest.fixture
def remote_store(identity) -> InMemoryRemoteStore:
    return InMemoryRemoteStore(identity_provider=identity)


@pytest.fixture
def offline_queue(cache_db, clock) -> OfflineChangeQueue:
    return OfflineChangeQueue(cache_db, clock=clock)


@pytest.fixture
def audit_logger(cache_db) -> AuditLogger:
    """Create an AuditLogger backed by in-memory SQLite."""
    return AuditLogger(cache_db)


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def recovery(local_store, codec, identity, connectivity, clock) -> ErrorRecoveryEngine:
    from shs.core.recovery.strategies import build_default_strategies

    engine = ErrorRecoveryEngine(
        local_store=local_store,
        codec=codec,
        identity_provider=identity,
        connectivity=connectivity,
        clock=clock,
        strategies=[],
    )
    for strategy in build_default_strategies(
        identity_provider=identity,
        codec=codec,
        cleanup=engine.cleanup_storage,
        sleep=_no_sleep,
        jitter=lambda a, b: 0.0,
    ):
        engine.register_strategy(strategy)
    return engine


@pytest.fixture
def coordinator(
    local_store,
    remote_store,
    codec,
    offline_queue,
    identity,
    connectivity,
    kinds,
    audit_logger,
    recovery,
    scheduler,
    clock,
) -> HybridStorageCoordinator:
    return HybridStorageCoordinator(
        local_store=local_store,
        remote_store=remote_store,
        codec=codec,
        queue=offline_queue,
        identity_provider=identity,
        connectivity=connectivity,
        kinds=kinds,
        audit=audit_logger,
        recovery=recovery,
        scheduler=scheduler,
        clock=clock,
    )


@pytest.fixture
def sync_engine(
    coordinator, identity, connectivity, local_store, scheduler, recovery, clock
) -> SyncEngine:
    return SyncEngine(
        coordinator=coordinator,
        identity_provider=identity,
        connectivity=connectivity,
        local_store=local_store,
        scheduler=scheduler,
        recovery=recovery,
        settings=SyncSettings(auto_sync=False),
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Mock record service MCP client
# ---------------------------------------------------------------------------

@dataclass
class _TextBlock:
    """Mimics fastmcp content block structure."""

    type: str
    text: str


class MockMCPClient:
    """Mock fastmcp.Client that emulates the remote record service tools.

    Suitable for injecting into MCPRemoteRecordStore for unit tests without
    a running record service.
    """

    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self._responses = responses or {}
        self.records: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.raise_on_call: Exception | None = None

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> list[Any]:
        self.calls.append((tool_name, arguments))
        if self.raise_on_call is not None:
            raise self.raise_on_call
        if tool_name in self._responses:
            payload = self._responses[tool_name]
            text = payload if isinstance(payload, str) else json.dumps(payload)
            return [_TextBlock(type="text", text=text)]

        key = (arguments.get("owner_id", ""), arguments.get("kind", ""))
        if tool_name == "fetch_record":
            payload = {"status": "ok", "record": self.records.get(key)}
        elif tool_name == "store_record":
            record = {
                "owner_id": key[0],
                "kind": key[1],
                "payload": arguments["payload"],
                "last_modified": arguments["modified_at"],
            }
            self.records[key] = record
            payload = {"status": "ok", "record": record}
        elif tool_name == "remove_record":
            existed = self.records.pop(key, None) is not None
            payload = {"status": "ok", "removed": existed}
        else:
            payload = {"status": "error", "error": {"code": "unknown_tool", "message": tool_name}}
        return [_TextBlock(type="text", text=json.dumps(payload))]

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        pass


@pytest.fixture
def mock_mcp_client() -> MockMCPClient:
    """Create a MockMCPClient with an empty record table."""
    return MockMCPClient()
