"""MCP tools for inspecting handled errors and running recovery actions."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from shs.core.recovery.models import RecoveryError

if TYPE_CHECKING:
    from shs.core.recovery.engine import ErrorRecoveryEngine

logger = logging.getLogger(__name__)

# Destructive actions need an explicit confirmation argument.
CONFIRMATION_PHRASE = "CONFIRM"


def register_recovery_tools(
    mcp: FastMCP,
    recovery: ErrorRecoveryEngine,
) -> None:
    """Register error recovery tools on the MCP server."""

    @mcp.tool
    async def error_summary(
        ctx: Context,
        limit: int = 20,
    ) -> str:
        """Summarize recently handled errors and the actions offered for each.

        Error contexts are sanitized before they are logged, so credentials
        and tokens never appear here.

        Args:
            limit: Maximum number of recent errors to list (default: 20).
        """
        recent = []
        for record in recovery.recent_errors(limit=max(1, limit)):
            entry = record.to_dict()
            if not record.resolved and record.severity == "critical":
                entry["recovery_actions"] = [
                    a.to_dict() for a in recovery.recovery_actions_for(record)
                ]
            recent.append(entry)

        return json.dumps({
            "status": "ok",
            "statistics": recovery.statistics(),
            "recent_errors": recent,
        }, indent=2)

    @mcp.tool
    async def execute_recovery_action(
        ctx: Context,
        action_name: str,
        error_id: str,
        confirm: str = "",
    ) -> str:
        """Run a recovery action offered for a logged error.

        Args:
            action_name: One of the actions listed by error_summary, e.g.
                "clear_cache", "force_resync", "reset_encryption".
            error_id: The id of the error the action addresses.
            confirm: Must be 'CONFIRM' for actions that require confirmation.
        """
        record = recovery.get_error(error_id)
        if record is not None:
            offered = {a.name: a for a in recovery.recovery_actions_for(record)}
            action = offered.get(action_name)
            if action is not None and action.requires_confirmation and confirm != CONFIRMATION_PHRASE:
                return json.dumps({
                    "status": "cancelled",
                    "action": action_name,
                    "message": (
                        f"'{action_name}' requires confirmation. Call again with "
                        f"confirm='{CONFIRMATION_PHRASE}'."
                        + (" This action is destructive." if action.is_destructive else "")
                    ),
                })

        try:
            success = await recovery.execute_recovery_action(action_name, error_id)
        except RecoveryError as exc:
            return json.dumps({
                "status": "error",
                "error_type": type(exc).__name__,
                "message": str(exc),
            })

        logger.info("Recovery action %s for %s: %s", action_name, error_id, success)
        return json.dumps({
            "status": "completed" if success else "failed",
            "action": action_name,
            "error_id": error_id,
        })
