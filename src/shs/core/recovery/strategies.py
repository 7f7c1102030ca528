"""Default fallback strategies, per error category.

Handlers receive the raw exception and the caller's (unsanitized) context.
Recognised context keys:

``retry``           async callable re-running the failed network operation
``fallback_data``   value to serve in offline mode
``plain_data``      value to pass through when encryption is disabled
``priority_sync``   async callable syncing only the high-priority kinds
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable

from shs.core.identity import IdentityProvider
from shs.core.recovery.models import FallbackStrategy, StrategyNotApplicableError
from shs.core.storage.codec import RecordCodec

logger = logging.getLogger(__name__)

MAX_RETRY_JITTER_SECONDS = 2.0


def build_default_strategies(
    *,
    identity_provider: IdentityProvider | None = None,
    codec: RecordCodec | None = None,
    cleanup: Callable[[], int] | None = None,
    allow_plaintext_fallback: bool = True,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    jitter: Callable[[float, float], float] = random.uniform,
) -> list[FallbackStrategy]:
    """Build the standard strategy table.

    ``sleep``/``jitter`` are injectable so tests do not wait on the
    retry backoff.
    """

    # -- network -------------------------------------------------------------

    async def network_retry(error: Exception, context: dict[str, Any]) -> Any:
        retry = context.get("retry")
        if not callable(retry):
            raise StrategyNotApplicableError("No retry operation supplied")
        await sleep(jitter(0.0, MAX_RETRY_JITTER_SECONDS))
        return await retry()

    async def offline_mode(error: Exception, context: dict[str, Any]) -> Any:
        return {"mode": "offline", "data": context.get("fallback_data")}

    # -- authentication ------------------------------------------------------

    async def token_refresh(error: Exception, context: dict[str, Any]) -> Any:
        if identity_provider is None:
            raise StrategyNotApplicableError("No identity provider configured")
        identity = await identity_provider.refresh()
        return {"session_refreshed": True, "owner_id": identity.owner_id}

    async def reauth_required(error: Exception, context: dict[str, Any]) -> Any:
        return {"requires_reauth": True}

    # -- encryption ----------------------------------------------------------

    async def encryption_key_regenerate(error: Exception, context: dict[str, Any]) -> Any:
        if codec is None:
            raise StrategyNotApplicableError("No codec configured")
        codec.reset_key_material()
        return {"key_regenerated": True}

    async def encryption_fallback(error: Exception, context: dict[str, Any]) -> Any:
        if not allow_plaintext_fallback:
            raise StrategyNotApplicableError("Plaintext fallback is disabled in production")
        logger.warning("Encryption disabled for this call (plaintext fallback)")
        return {"encryption_disabled": True, "data": context.get("plain_data")}

    # -- storage -------------------------------------------------------------

    async def storage_cleanup(error: Exception, context: dict[str, Any]) -> Any:
        if cleanup is None:
            raise StrategyNotApplicableError("No cleanup routine configured")
        removed = cleanup()
        return {"storage_cleaned_up": True, "removed": removed}

    async def local_only_mode(error: Exception, context: dict[str, Any]) -> Any:
        return {"use_local_storage_only": True}

    # -- sync ----------------------------------------------------------------

    async def partial_sync(error: Exception, context: dict[str, Any]) -> Any:
        priority_sync = context.get("priority_sync")
        if not callable(priority_sync):
            raise StrategyNotApplicableError("No priority sync operation supplied")
        result = await priority_sync()
        return {"partial_sync_attempted": True, "result": result}

    async def queue_for_later(error: Exception, context: dict[str, Any]) -> Any:
        return {"queued_for_later": True}

    return [
        FallbackStrategy("network_retry", "network", network_retry, can_retry=True, max_retries=3, priority=1),
        FallbackStrategy("offline_mode", "network", offline_mode, priority=2),
        FallbackStrategy("token_refresh", "authentication", token_refresh, can_retry=True, max_retries=2, priority=1),
        FallbackStrategy("reauth_required", "authentication", reauth_required, priority=2),
        FallbackStrategy("encryption_key_regenerate", "encryption", encryption_key_regenerate, can_retry=True, max_retries=1, priority=1),
        FallbackStrategy("encryption_fallback", "encryption", encryption_fallback, priority=2),
        FallbackStrategy("storage_cleanup", "storage", storage_cleanup, can_retry=True, max_retries=1, priority=1),
        FallbackStrategy("local_only_mode", "storage", local_only_mode, priority=2),
        FallbackStrategy("partial_sync", "sync", partial_sync, can_retry=True, max_retries=2, priority=1),
        FallbackStrategy("queue_for_later", "sync", queue_for_later, priority=2),
    ]
