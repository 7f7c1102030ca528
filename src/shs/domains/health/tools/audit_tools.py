"""MCP tools for viewing the audit trail.

The audit log records which remote operations ran, for which record kind
and owner, and whether they succeeded. It never stores record values.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from shs.core.clock import to_iso, utc_now

if TYPE_CHECKING:
    from shs.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)


def register_audit_tools(
    mcp: FastMCP,
    audit_logger: AuditLogger,
) -> None:
    """Register audit trail tools on the MCP server."""

    @mcp.tool
    async def audit_summary(
        ctx: Context,
        days: int = 30,
        kind: str = "",
    ) -> str:
        """View recent remote record access events.

        Args:
            days: Number of days to look back (default: 30).
            kind: Optional record kind to filter by.
        """
        since = to_iso(utc_now() - timedelta(days=days))

        total_events = audit_logger.count_events(since=since)
        failed_events = audit_logger.count_events(since=since, status="failure")
        recent_events = audit_logger.get_events(since=since, kind=kind or None, limit=20)

        # Simplify events for display (strip internal IDs)
        display_events = []
        for event in recent_events:
            display_events.append({
                "timestamp": event.get("timestamp"),
                "action": event.get("action"),
                "kind": event.get("kind"),
                "status": event.get("status"),
                "error_type": event.get("error_type"),
            })

        return json.dumps({
            "status": "ok",
            "period_days": days,
            "total_events": total_events,
            "failed_events": failed_events,
            "recent_events": display_events,
            "note": "This audit trail contains no record values.",
        }, indent=2)
