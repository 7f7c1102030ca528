"""Identity/session provider seam.

The authentication provider itself lives outside this package. Components
only need a stable owner identifier, an "authenticated" signal and, for the
recovery engine, a way to ask for a session refresh.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class OwnershipViolationError(Exception):
    """The caller's identity may not touch the requested owner's records.

    Never absorbed into a degraded result: silently serving cached data under
    a mismatched identity would leak one owner's records to another.
    """


class InvalidOwnerError(OwnershipViolationError):
    """The owner id is empty, malformed, or no session is active."""


class IdentityMismatchError(OwnershipViolationError):
    """The active session belongs to a different owner than the one requested."""


class SessionRefreshError(Exception):
    """The identity provider could not refresh the session."""


@dataclass(frozen=True)
class Identity:
    """Snapshot of the active session."""

    owner_id: str
    authenticated: bool = True


@runtime_checkable
class IdentityProvider(Protocol):
    """Abstract interface to the external authentication provider."""

    def current(self) -> Identity | None:
        """Return the active identity, or None when signed out."""
        ...

    async def refresh(self) -> Identity:
        """Refresh the session. Raises SessionRefreshError on failure."""
        ...


class StaticIdentityProvider:
    """Identity provider holding a single, settable session.

    Used by the hosted server (owner from settings) and by tests.
    """

    def __init__(self, owner_id: str = "", *, authenticated: bool | None = None) -> None:
        self._owner_id = owner_id
        self._authenticated = bool(owner_id) if authenticated is None else authenticated
        self.refresh_count = 0
        self.refresh_fails = False

    def current(self) -> Identity | None:
        if not self._owner_id:
            return None
        return Identity(owner_id=self._owner_id, authenticated=self._authenticated)

    async def refresh(self) -> Identity:
        self.refresh_count += 1
        if self.refresh_fails or not self._owner_id:
            raise SessionRefreshError("Session refresh failed")
        self._authenticated = True
        logger.info("Session refreshed for owner %s", self._owner_id)
        return Identity(owner_id=self._owner_id, authenticated=True)

    def sign_in(self, owner_id: str) -> None:
        self._owner_id = owner_id
        self._authenticated = True

    def sign_out(self) -> None:
        self._owner_id = ""
        self._authenticated = False


def require_owner(identity_provider: IdentityProvider, owner_id: str) -> Identity:
    """Validate that ``owner_id`` is well formed and matches the active session.

    Raises:
        InvalidOwnerError: Empty/blank owner id, or no authenticated session.
        IdentityMismatchError: Session owner differs from ``owner_id``.
    """
    if not isinstance(owner_id, str) or not owner_id.strip():
        raise InvalidOwnerError(f"Invalid owner id: {owner_id!r}")

    identity = identity_provider.current()
    if identity is None or not identity.authenticated:
        raise InvalidOwnerError("No authenticated session for record access")

    if identity.owner_id != owner_id:
        logger.error(
            "SECURITY: session owner %s does not match requested owner %s",
            identity.owner_id,
            owner_id,
        )
        raise IdentityMismatchError(
            "Session owner does not match requested owner - cross-owner access refused"
        )
    return identity
