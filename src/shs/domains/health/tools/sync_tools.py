"""MCP tools for driving and inspecting reconciliation."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from shs.core.identity import OwnershipViolationError
from shs.core.sync.engine import SyncError
from shs.core.validation import ValidationError
from shs.domains.health.tools.record_tools import error_response, session_owner

if TYPE_CHECKING:
    from shs.core.connectivity import ConnectivityMonitor
    from shs.core.identity import IdentityProvider
    from shs.core.storage.coordinator import HybridStorageCoordinator
    from shs.core.sync.engine import SyncEngine

logger = logging.getLogger(__name__)


def register_sync_tools(
    mcp: FastMCP,
    sync_engine: SyncEngine,
    connectivity: ConnectivityMonitor,
    coordinator: HybridStorageCoordinator,
    identity_provider: IdentityProvider,
) -> None:
    """Register sync tools on the MCP server."""

    @mcp.tool
    async def sync_now(ctx: Context) -> str:
        """Replay queued offline changes, then reconcile every tracked record kind.

        Returns per-kind successes and failures, any conflicts that need a
        manual decision, and how many offline changes were replayed.
        """
        try:
            result = await sync_engine.sync()
        except (SyncError, OwnershipViolationError) as exc:
            return error_response(exc, sync_status=sync_engine.status)

        return json.dumps({
            "status": sync_engine.status,
            "result": result.to_dict(),
        }, indent=2)

    @mcp.tool
    async def sync_status(ctx: Context) -> str:
        """Current sync status, settings, last sync time and queue depth."""
        owner_id = session_owner(identity_provider)
        pending_changes = len(coordinator.pending_changes(owner_id)) if owner_id else 0
        return json.dumps({
            "status": sync_engine.status,
            "online": connectivity.is_online,
            "last_sync_time": sync_engine.last_sync_time,
            "auto_sync_active": sync_engine.auto_sync_active,
            "settings": sync_engine.settings.to_dict(),
            "pending_conflicts": len(sync_engine.pending_conflicts()),
            "pending_offline_changes": pending_changes,
            "pending_deliveries": len(coordinator.pending_deliveries()),
        }, indent=2)

    @mcp.tool
    async def list_conflicts(ctx: Context) -> str:
        """List conflicts from the last sync that await a manual decision."""
        conflicts = sync_engine.pending_conflicts()
        return json.dumps({
            "status": "ok",
            "count": len(conflicts),
            "conflicts": [c.to_dict() for c in conflicts],
        }, indent=2)

    @mcp.tool
    async def resolve_conflict(
        ctx: Context,
        kind: str,
        resolution: str,
        merged_value: Any = None,
    ) -> str:
        """Resolve a pending conflict by keeping one side or supplying a merge.

        Args:
            kind: Record kind with a pending conflict.
            resolution: "use_local", "use_remote" or "merge".
            merged_value: Required when resolution is "merge".
        """
        try:
            applied = await sync_engine.resolve_conflict(kind, resolution, merged_value)
        except (SyncError, ValidationError, OwnershipViolationError) as exc:
            return error_response(exc, kind=kind)

        return json.dumps({
            "status": "resolved" if applied else "failed",
            "kind": kind,
            "resolution": resolution,
            "remaining_conflicts": len(sync_engine.pending_conflicts()),
        })

    @mcp.tool
    async def update_sync_settings(
        ctx: Context,
        auto_sync: bool | None = None,
        sync_interval: float | None = None,
        conflict_resolution: str | None = None,
        max_retries: int | None = None,
        batch_size: int | None = None,
        healthcare_priority: bool | None = None,
    ) -> str:
        """Change sync settings. Omitted arguments keep their current value.

        Args:
            auto_sync: Enable or disable the periodic sync timer.
            sync_interval: Seconds between automatic syncs.
            conflict_resolution: "local_wins", "remote_wins",
                "latest_timestamp" or "manual".
            max_retries: Retry limit for failed sync operations.
            batch_size: Number of kinds reconciled concurrently.
            healthcare_priority: Reconcile symptoms, calendar notes and goals first.
        """
        changes = {
            name: value
            for name, value in {
                "auto_sync": auto_sync,
                "sync_interval": sync_interval,
                "conflict_resolution": conflict_resolution,
                "max_retries": max_retries,
                "batch_size": batch_size,
                "healthcare_priority": healthcare_priority,
            }.items()
            if value is not None
        }
        try:
            settings = sync_engine.update_settings(**changes)
        except ValidationError as exc:
            return error_response(exc)

        logger.info("Sync settings updated: %s", ", ".join(sorted(changes)) or "(none)")
        return json.dumps({
            "status": "updated",
            "changed": sorted(changes),
            "settings": settings.to_dict(),
            "auto_sync_active": sync_engine.auto_sync_active,
        })

    @mcp.tool
    async def set_connectivity(ctx: Context, online: bool) -> str:
        """Report a connectivity change to the sync runtime.

        Going online replays queued offline changes, retries queued
        recoverable errors and runs a sync pass, in that order.

        Args:
            online: True when the remote store is reachable.
        """
        await connectivity.set_online(online)
        return json.dumps({
            "status": "ok",
            "online": connectivity.is_online,
            "sync_status": sync_engine.status,
            "last_sync_time": sync_engine.last_sync_time,
        })
