"""Sovereign Health Sync entry point — ``python -m shs.core.server.main``."""

from __future__ import annotations

import logging
from ipaddress import ip_address

from shs.core.config.settings import get_settings
from shs.core.server.app import create_app


def _is_loopback_host(host: str) -> bool:
    if host in {"localhost"}:
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def run() -> None:
    """Start the sync MCP server with Streamable HTTP transport."""
    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.shs_log_level.upper(), logging.INFO))

    logger = logging.getLogger(__name__)
    if not settings.shs_allow_insecure_bind and not _is_loopback_host(settings.shs_host):
        raise RuntimeError(
            "Refusing to bind the sync server to a non-loopback host without an auth layer. "
            "Set SHS_ALLOW_INSECURE_BIND=true to override (unsafe)."
        )
    logger.info(
        "Starting Sovereign Health Sync server on %s:%d (%s)",
        settings.shs_host,
        settings.shs_port,
        settings.environment,
    )

    mcp = create_app()
    mcp.run(
        transport="streamable-http",
        host=settings.shs_host,
        port=settings.shs_port,
    )


if __name__ == "__main__":
    run()
