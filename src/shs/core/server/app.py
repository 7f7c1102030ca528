"""Sovereign Health Sync MCP Server — application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastmcp import FastMCP

from shs.core.config.settings import get_settings
from shs.core.runtime import SyncRuntime
from shs.domains.health.tools.audit_tools import register_audit_tools
from shs.domains.health.tools.data_management_tools import register_data_management_tools
from shs.domains.health.tools.record_tools import register_record_tools
from shs.domains.health.tools.recovery_tools import register_recovery_tools
from shs.domains.health.tools.sync_tools import register_sync_tools

logger = logging.getLogger(__name__)

SERVER_NAME = "Sovereign Health Sync"
SERVER_VERSION = "0.1.0"


def create_app(*, runtime_override: SyncRuntime | None = None) -> FastMCP:
    """Create and configure the Sovereign Health Sync MCP server.

    This is the main application factory. It:
    1. Builds the sync runtime (cache, codec, queue, coordinator, sync, recovery)
    2. Creates the FastMCP server whose lifespan starts and stops the runtime
    3. Registers record, sync, recovery, audit and data management tools
    """
    settings = get_settings()

    runtime = runtime_override if runtime_override is not None else SyncRuntime.build(settings)
    logger.info(
        "Sync runtime ready: cache %s (schema v%d), %d kinds",
        runtime.settings.db_path,
        runtime.database.get_schema_version(),
        len(runtime.kinds.all()),
    )
    if not runtime.owner_id:
        logger.warning(
            "No SESSION_OWNER_ID configured; record tools will refuse every request"
        )

    @asynccontextmanager
    async def lifespan(server: FastMCP):
        runtime.start()
        try:
            yield {"runtime": runtime}
        finally:
            await runtime.stop()

    # --- Server instance ---
    server = FastMCP(
        SERVER_NAME,
        instructions=(
            "Offline-first record synchronization for a personal health app. "
            "Records are committed to an encrypted local cache first and "
            "delivered to the remote store when connectivity allows. Use the "
            "sync tools to reconcile, inspect and resolve conflicts."
        ),
        lifespan=lifespan,
    )

    # --- Register tools ---
    @server.tool
    def health_check() -> dict:
        """Check server health and return basic status information."""
        status = {
            "status": "ok",
            "server": SERVER_NAME,
            "version": SERVER_VERSION,
            "session_active": bool(runtime.owner_id),
            "sync_status": runtime.sync_engine.status,
            "pending_offline_changes": runtime.queue.count_pending(),
        }
        status.update(runtime.describe())
        return status

    register_record_tools(server, runtime.coordinator, runtime.identity_provider)
    register_sync_tools(
        server,
        runtime.sync_engine,
        runtime.connectivity,
        runtime.coordinator,
        runtime.identity_provider,
    )
    register_recovery_tools(server, runtime.recovery)
    register_audit_tools(server, runtime.audit)
    register_data_management_tools(server, runtime.coordinator, runtime.identity_provider)
    logger.info("Record, sync, recovery, audit and data management tools registered")

    return server


# Module-level instance for FastMCP discovery (fastmcp.json: "server": "...app.py:mcp").
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
