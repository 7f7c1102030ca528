"""MCP tools for reading and writing health-app records.

Every tool acts on behalf of the active session owner. Writes land in the
local cache immediately; remote delivery happens in the background (or is
queued while offline).
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from shs.core.identity import OwnershipViolationError
from shs.core.validation import ValidationError

if TYPE_CHECKING:
    from shs.core.identity import IdentityProvider
    from shs.core.storage.coordinator import HybridStorageCoordinator

logger = logging.getLogger(__name__)


def session_owner(identity_provider: IdentityProvider) -> str | None:
    """Owner id of the active session, or None when signed out."""
    identity = identity_provider.current()
    return identity.owner_id if identity is not None else None


def no_session_response() -> str:
    return json.dumps({
        "status": "error",
        "error_type": "no_session",
        "message": "No active session. Sign in before accessing records.",
    })


def error_response(exc: Exception, **extra: Any) -> str:
    return json.dumps({
        "status": "error",
        "error_type": type(exc).__name__,
        "message": str(exc),
        **extra,
    })


def register_record_tools(
    mcp: FastMCP,
    coordinator: HybridStorageCoordinator,
    identity_provider: IdentityProvider,
) -> None:
    """Register record read/write/delete tools on the MCP server."""

    def _unknown_kind(kind: str) -> str | None:
        if coordinator.kinds.get(kind) is not None:
            return None
        return json.dumps({
            "status": "error",
            "error_type": "unknown_kind",
            "message": f"Unknown record kind: {kind!r}",
            "known_kinds": [k.name for k in coordinator.kinds.all()],
        })

    @mcp.tool
    async def read_record(
        ctx: Context,
        kind: str,
        default: Any = None,
    ) -> str:
        """Read the current value of a record kind for the signed-in user.

        Reads the remote store when online (mirroring into the local cache)
        and falls back to the local cache otherwise.

        Args:
            kind: Record kind, e.g. "symptoms", "goals", "calendar_notes".
            default: Optional value returned when nothing is stored. For
                "skills_list" the default is merged with the stored list.
        """
        owner_id = session_owner(identity_provider)
        if owner_id is None:
            return no_session_response()
        unknown = _unknown_kind(kind)
        if unknown is not None:
            return unknown

        try:
            value, source = await coordinator.read_sourced(kind, owner_id)
        except (OwnershipViolationError, ValidationError) as exc:
            return error_response(exc, kind=kind)
        if default is not None:
            value = coordinator.apply_default(kind, value, default)

        cached = coordinator.local_record(kind, owner_id)
        return json.dumps({
            "status": "ok" if value is not None else "not_found",
            "kind": kind,
            "value": value,
            "last_modified": cached.last_modified if cached is not None else None,
            "source": source,
        })

    @mcp.tool
    async def write_record(
        ctx: Context,
        kind: str,
        value: Any,
        wait_for_delivery: bool = True,
    ) -> str:
        """Write a record for the signed-in user (local first, then remote).

        Args:
            kind: Record kind, e.g. "symptoms", "goals", "calendar_notes".
            value: JSON value to store. Null is rejected.
            wait_for_delivery: Wait for the remote delivery attempt to settle
                before returning (default: True).
        """
        owner_id = session_owner(identity_provider)
        if owner_id is None:
            return no_session_response()
        unknown = _unknown_kind(kind)
        if unknown is not None:
            return unknown

        start_time = time.monotonic()
        try:
            handle = await coordinator.write(kind, value, owner_id)
        except (OwnershipViolationError, ValidationError) as exc:
            return error_response(exc, kind=kind)

        if wait_for_delivery:
            await handle.wait()
        elapsed_ms = (time.monotonic() - start_time) * 1000

        return json.dumps({
            "status": "written",
            "delivery": handle.to_dict(),
            "duration_ms": round(elapsed_ms, 1),
        })

    @mcp.tool
    async def delete_record(
        ctx: Context,
        kind: str,
    ) -> str:
        """Delete a record kind for the signed-in user.

        The local copy is removed immediately; the remote delete is queued
        if the remote store is unreachable.

        Args:
            kind: Record kind to delete.
        """
        owner_id = session_owner(identity_provider)
        if owner_id is None:
            return no_session_response()
        unknown = _unknown_kind(kind)
        if unknown is not None:
            return unknown

        try:
            removed = await coordinator.delete(kind, owner_id)
        except (OwnershipViolationError, ValidationError) as exc:
            return error_response(exc, kind=kind)

        return json.dumps({
            "status": "deleted" if removed else "not_found",
            "kind": kind,
            "pending_offline_changes": len(coordinator.pending_changes(owner_id)),
        })
