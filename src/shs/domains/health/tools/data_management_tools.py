"""MCP tools for user data management (force push, right to erasure).

Erasure removes every record kind of the signed-in user from the remote
store and the local cache, and supersedes any queued offline change so it
cannot resurrect erased data. Erasures are audit-logged.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from shs.core.identity import OwnershipViolationError
from shs.domains.health.tools.record_tools import (
    error_response,
    no_session_response,
    session_owner,
)

if TYPE_CHECKING:
    from shs.core.identity import IdentityProvider
    from shs.core.storage.coordinator import HybridStorageCoordinator

logger = logging.getLogger(__name__)


def register_data_management_tools(
    mcp: FastMCP,
    coordinator: HybridStorageCoordinator,
    identity_provider: IdentityProvider,
) -> None:
    """Register data management tools on the MCP server."""

    @mcp.tool
    async def push_all_records(ctx: Context) -> str:
        """Force-push every locally cached record kind to the remote store."""
        owner_id = session_owner(identity_provider)
        if owner_id is None:
            return no_session_response()

        start_time = time.monotonic()
        try:
            results = await coordinator.push_all(owner_id)
        except OwnershipViolationError as exc:
            return error_response(exc)
        elapsed_ms = (time.monotonic() - start_time) * 1000

        return json.dumps({
            "status": "pushed" if not results["failed"] else "partial",
            "success": results["success"],
            "failed": results["failed"],
            "duration_ms": round(elapsed_ms, 1),
        })

    @mcp.tool
    async def erase_my_data(
        ctx: Context,
        confirm: str = "",
        reason: str = "User request",
    ) -> str:
        """Permanently erase ALL records of the signed-in user.

        Removes every record kind from the remote store and the local cache.
        Remote deletes that cannot run now are queued. It cannot be undone.

        Args:
            confirm: Must be exactly 'ERASE_ALL' to proceed. Safety gate.
            reason: Free-text reason stored in the audit trail.
        """
        if confirm != "ERASE_ALL":
            return json.dumps({
                "status": "cancelled",
                "message": (
                    "To erase all of your data, call this tool with "
                    "confirm='ERASE_ALL'. This action cannot be undone."
                ),
            })

        owner_id = session_owner(identity_provider)
        if owner_id is None:
            return no_session_response()

        start_time = time.monotonic()
        try:
            summary = await coordinator.erase_owner_data(owner_id, reason)
        except OwnershipViolationError as exc:
            return error_response(exc)
        elapsed_ms = (time.monotonic() - start_time) * 1000

        return json.dumps({
            "status": "erased",
            **summary,
            "duration_ms": round(elapsed_ms, 1),
            "message": "All of your records have been erased.",
        })
