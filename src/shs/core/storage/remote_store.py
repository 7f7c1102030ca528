"""Remote Record Store — the authoritative, networked copy of each record.

Records are organised per data kind with per-owner isolation. Payloads are
codec-encoded before they reach this layer.

Two implementations ship here:

* :class:`InMemoryRemoteStore` — in-process store used when no remote endpoint
  is configured, and by tests. Supports availability toggling, one-shot
  failure injection and session-owner enforcement (row-level security).
* :class:`MCPRemoteRecordStore` — talks to a record service over MCP via
  ``fastmcp.Client``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol, runtime_checkable

from shs.core.identity import IdentityMismatchError, IdentityProvider
from shs.core.storage.models import RemoteRecord

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Exceptions
# ------------------------------------------------------------------

class RemoteStoreError(Exception):
    """Base exception for remote store failures."""


class RemoteUnavailableError(RemoteStoreError):
    """The remote store could not be reached (offline, timeout, 5xx)."""


class RemoteResponseError(RemoteStoreError):
    """The remote store answered with something unexpected."""


# ------------------------------------------------------------------
# Protocol
# ------------------------------------------------------------------

@runtime_checkable
class RemoteRecordStore(Protocol):
    """Abstract interface to the authoritative record store."""

    async def fetch(self, kind: str, owner_id: str) -> RemoteRecord | None:
        """Return the current (non-deleted) record, or None."""
        ...

    async def store(
        self, kind: str, payload: str, owner_id: str, *, modified_at: str
    ) -> RemoteRecord:
        """Insert or replace the record for (owner, kind)."""
        ...

    async def remove(self, kind: str, owner_id: str) -> bool:
        """Soft-delete the record. Returns True if one existed."""
        ...


# ------------------------------------------------------------------
# In-process implementation
# ------------------------------------------------------------------

class InMemoryRemoteStore:
    """Dictionary-backed remote store with failure injection.

    Usage::

        remote = InMemoryRemoteStore(identity_provider=session)
        await remote.store("goals", payload, "owner-1", modified_at=ts)
        remote.set_available(False)   # every call now raises RemoteUnavailableError
    """

    def __init__(self, identity_provider: IdentityProvider | None = None) -> None:
        self._identity = identity_provider
        self._records: dict[tuple[str, str], RemoteRecord] = {}
        self._available = True
        self._failures: dict[str, list[Exception]] = {}
        self.calls: list[tuple[str, str, str]] = []

    # --- test / simulation controls -------------------------------------

    @property
    def available(self) -> bool:
        return self._available

    def set_available(self, available: bool) -> None:
        self._available = available

    def fail_next(self, operation: str, error: Exception | None = None, times: int = 1) -> None:
        """Make the next ``times`` calls to ``operation`` raise ``error``."""
        exc = error or RemoteUnavailableError(f"Injected {operation} failure")
        self._failures.setdefault(operation, []).extend([exc] * times)

    def peek(self, kind: str, owner_id: str) -> RemoteRecord | None:
        """Inspect a stored record (including soft-deleted) without auditing."""
        return self._records.get((owner_id, kind))

    def seed(self, record: RemoteRecord) -> None:
        self._records[(record.owner_id, record.kind)] = record

    # --- RemoteRecordStore ------------------------------------------------

    async def fetch(self, kind: str, owner_id: str) -> RemoteRecord | None:
        await self._enter("fetch", kind, owner_id)
        record = self._records.get((owner_id, kind))
        if record is None or record.deleted:
            return None
        return RemoteRecord(
            owner_id=record.owner_id,
            kind=record.kind,
            payload=record.payload,
            last_modified=record.last_modified,
        )

    async def store(
        self, kind: str, payload: str, owner_id: str, *, modified_at: str
    ) -> RemoteRecord:
        await self._enter("store", kind, owner_id)
        record = RemoteRecord(
            owner_id=owner_id, kind=kind, payload=payload, last_modified=modified_at
        )
        self._records[(owner_id, kind)] = record
        return record

    async def remove(self, kind: str, owner_id: str) -> bool:
        await self._enter("remove", kind, owner_id)
        record = self._records.get((owner_id, kind))
        if record is None or record.deleted:
            return False
        record.deleted = True
        return True

    async def _enter(self, operation: str, kind: str, owner_id: str) -> None:
        # Every remote call is a suspension point.
        await asyncio.sleep(0)
        self.calls.append((operation, kind, owner_id))

        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)
        if not self._available:
            raise RemoteUnavailableError("Remote record store unreachable")

        if self._identity is not None:
            identity = self._identity.current()
            if identity is None or identity.owner_id != owner_id:
                raise IdentityMismatchError(
                    "Session owner does not match requested owner - cross-owner access refused"
                )


# ------------------------------------------------------------------
# MCP-backed implementation
# ------------------------------------------------------------------

class MCPRemoteRecordStore:
    """Remote store reached over MCP (``fastmcp.Client`` or compatible).

    The record service exposes three tools: ``fetch_record``,
    ``store_record`` and ``remove_record``, each answering with a JSON object
    carrying ``status`` and either ``record``/``removed`` or ``error``.

    Usage::

        from fastmcp import Client
        remote = MCPRemoteRecordStore(Client("http://127.0.0.1:8003/mcp"))
        record = await remote.fetch("goals", "owner-1")
    """

    def __init__(self, mcp_client: Any) -> None:
        self._client = mcp_client

    async def fetch(self, kind: str, owner_id: str) -> RemoteRecord | None:
        parsed = await self._call_tool("fetch_record", {"kind": kind, "owner_id": owner_id})
        raw = parsed.get("record")
        if raw is None:
            return None
        record = _record_from_dict(raw, kind=kind, owner_id=owner_id)
        return None if record.deleted else record

    async def store(
        self, kind: str, payload: str, owner_id: str, *, modified_at: str
    ) -> RemoteRecord:
        parsed = await self._call_tool(
            "store_record",
            {
                "kind": kind,
                "owner_id": owner_id,
                "payload": payload,
                "modified_at": modified_at,
            },
        )
        raw = parsed.get("record") or {
            "payload": payload,
            "last_modified": modified_at,
        }
        return _record_from_dict(raw, kind=kind, owner_id=owner_id)

    async def remove(self, kind: str, owner_id: str) -> bool:
        parsed = await self._call_tool("remove_record", {"kind": kind, "owner_id": owner_id})
        return bool(parsed.get("removed", False))

    async def _call_tool(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        logger.debug("Calling record service tool %s", tool_name)
        try:
            async with self._client:
                result = await self._client.call_tool(tool_name, arguments)
        except Exception as exc:
            logger.warning("Record service call %s failed: %s", tool_name, exc)
            raise RemoteUnavailableError(
                f"Failed to call record service tool '{tool_name}'"
            ) from exc

        payload = _extract_payload(result)
        if payload is None:
            raise RemoteResponseError(f"No usable content in response from {tool_name}")

        if isinstance(payload, str):
            try:
                parsed: Any = json.loads(payload)
            except (json.JSONDecodeError, TypeError) as exc:
                raise RemoteResponseError(f"Invalid JSON from {tool_name}: {exc}") from exc
        else:
            parsed = payload

        if not isinstance(parsed, dict):
            raise RemoteResponseError(
                f"Expected JSON object from {tool_name}, got {type(parsed).__name__}"
            )

        if parsed.get("status") == "error":
            error = parsed.get("error") or {}
            code = error.get("code") if isinstance(error, dict) else None
            message = _format_error(error)
            if code == "ownership_violation":
                raise IdentityMismatchError(message)
            if code == "unavailable":
                raise RemoteUnavailableError(message)
            raise RemoteResponseError(f"Record service returned error: {message}")

        return parsed


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _record_from_dict(data: dict[str, Any], *, kind: str, owner_id: str) -> RemoteRecord:
    return RemoteRecord(
        owner_id=data.get("owner_id", owner_id),
        kind=data.get("kind", kind),
        payload=data.get("payload", ""),
        last_modified=data.get("last_modified", ""),
        deleted=bool(data.get("deleted", False)),
    )


def _extract_payload(result: Any) -> Any | None:
    """Extract a usable payload from a fastmcp tool result.

    Accepts a list of content blocks (``.text`` JSON or ``.data`` dicts),
    a single block, a raw string, or an already-parsed dict.
    """
    if isinstance(result, dict):
        return result
    if isinstance(result, str):
        return result

    blocks = result if isinstance(result, list) else [result]
    # fastmcp CallToolResult exposes .content
    if not isinstance(result, list) and hasattr(result, "content"):
        blocks = list(result.content)

    for block in blocks:
        if isinstance(block, dict):
            if "data" in block:
                return block["data"]
            if "text" in block:
                return block["text"]
            continue
        data = getattr(block, "data", None)
        if isinstance(data, dict):
            return data
        if hasattr(block, "text"):
            return block.text
        if isinstance(block, str):
            return block
    return None


def _format_error(error: Any) -> str:
    if not error:
        return "Unknown error"
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        msg = error.get("message") or error.get("code")
        return msg if isinstance(msg, str) and msg else str(error)
    return str(error)
