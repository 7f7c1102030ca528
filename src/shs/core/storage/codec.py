"""Record codec — the encode/decode capability used for remote payloads.

Wire formats understood by :meth:`RecordCodec.decode`:

* ``ciphertext`` — a Fernet token under the owner's derived key.
* ``fallback``   — ``fallback:`` + base64(JSON); produced when no authenticated
  identity or key is available and plaintext is permitted (never in production).
* ``json``       — already-plaintext JSON (legacy rows).
* ``unknown``    — anything else; decodes to a safe empty value.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Literal

from shs.core.identity import IdentityProvider
from shs.core.storage.encryption import EncryptionError, FieldEncryptor

logger = logging.getLogger(__name__)

FALLBACK_PREFIX = "fallback:"
# Every Fernet token starts with the base64url encoding of version byte 0x80.
CIPHERTEXT_PREFIX = "gAAAAA"

WireFormat = Literal["ciphertext", "fallback", "json", "unknown"]
Shape = Literal["list", "object", "string", "number", "boolean"]

_SAFE_EMPTY: dict[str, Any] = {
    "list": [],
    "object": {},
    "string": "",
    "number": 0,
    "boolean": False,
}


class CodecError(Exception):
    """Base exception for codec failures."""


class CodecUnavailableError(CodecError):
    """The secure path is unavailable and plaintext fallback is not permitted."""


class CodecAuthError(CodecError):
    """Ciphertext cannot be decoded without an authenticated owner session."""


class CodecDecodeError(CodecError):
    """A payload could not be decoded (corrupt token, wrong key, unknown format)."""


def safe_empty(shape: str) -> Any:
    """Return a fresh empty value of the expected shape (``object`` if unknown)."""
    value = _SAFE_EMPTY.get(shape, _SAFE_EMPTY["object"])
    return type(value)() if isinstance(value, (list, dict)) else value


def detect_format(payload: str) -> WireFormat:
    """Classify an encoded payload before choosing a decode strategy."""
    if payload.startswith(FALLBACK_PREFIX):
        return "fallback"
    if payload.startswith(CIPHERTEXT_PREFIX):
        return "ciphertext"
    try:
        json.loads(payload)
    except (TypeError, ValueError):
        return "unknown"
    return "json"


class RecordCodec:
    """Encodes record values to transportable strings and back.

    Usage::

        codec = RecordCodec(identity, FieldEncryptor(master_key))
        token = codec.encode({"text": "walk daily"}, "owner-1")
        value = codec.decode(token, "owner-1", shape="object")
    """

    def __init__(
        self,
        identity_provider: IdentityProvider,
        encryptor: FieldEncryptor | None = None,
        *,
        allow_plaintext_fallback: bool = True,
    ) -> None:
        self._identity = identity_provider
        self._encryptor = encryptor
        self._allow_fallback = allow_plaintext_fallback
        self._owner_encryptors: dict[str, FieldEncryptor] = {}

    @property
    def secure_path_available(self) -> bool:
        identity = self._identity.current()
        return (
            self._encryptor is not None
            and identity is not None
            and identity.authenticated
        )

    # ------------------------------------------------------------------
    # Encode
    # ------------------------------------------------------------------

    def encode(self, value: Any, owner_id: str) -> str:
        """Encode ``value`` for ``owner_id``.

        Raises:
            CodecError: ``value`` is None or not JSON-serializable.
            CodecUnavailableError: No secure path and plaintext is not allowed.
        """
        if value is None:
            raise CodecError("Cannot encode null or undefined data")

        if self._can_encrypt_for(owner_id):
            try:
                return self._owner_encryptor(owner_id).encrypt(value)
            except EncryptionError as exc:
                logger.warning("Secure encoding failed for owner %s: %s", owner_id, exc)
                return self._fallback_encode(value, reason=str(exc))

        return self._fallback_encode(value, reason="no authenticated identity or key")

    def _fallback_encode(self, value: Any, *, reason: str) -> str:
        if not self._allow_fallback:
            raise CodecUnavailableError(
                f"Secure encoding unavailable ({reason}) and plaintext fallback is disabled"
            )
        try:
            raw = json.dumps(value, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise CodecError(f"Value is not serializable: {exc}") from exc
        logger.debug("Using plaintext fallback encoding (%s)", reason)
        return FALLBACK_PREFIX + base64.b64encode(raw.encode("utf-8")).decode("ascii")

    # ------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------

    def decode(
        self, payload: str, owner_id: str, *, shape: str = "object", strict: bool = False
    ) -> Any:
        """Decode a payload produced by :meth:`encode` (or a legacy format).

        Unrecoverable format problems yield :func:`safe_empty` of ``shape``,
        or raise :class:`CodecDecodeError` when ``strict`` is set. Callers that
        would persist the decoded value use ``strict`` so a placeholder never
        overwrites real data.

        Raises:
            CodecError: ``payload`` is not a non-empty string.
            CodecAuthError: Ciphertext but no authenticated session for ``owner_id``.
            CodecDecodeError: ``strict`` and the payload is undecodable.
        """
        if not isinstance(payload, str) or not payload:
            raise CodecError("Invalid data for decoding: expected a non-empty string")

        fmt = detect_format(payload)
        logger.debug("Detected payload format: %s", fmt)

        if fmt == "fallback":
            try:
                raw = base64.b64decode(payload[len(FALLBACK_PREFIX):], validate=True)
                return json.loads(raw.decode("utf-8"))
            except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
                return self._undecodable("Corrupt fallback payload", shape, strict, exc)

        if fmt == "ciphertext":
            if not self._can_encrypt_for(owner_id):
                raise CodecAuthError(
                    "Owner must be authenticated for ciphertext decoding"
                )
            try:
                return self._owner_encryptor(owner_id).decrypt(payload)
            except EncryptionError as exc:
                logger.error("Ciphertext decode failed for owner %s: %s", owner_id, exc)
                return self._undecodable("Undecodable ciphertext", shape, strict, exc)

        if fmt == "json":
            return json.loads(payload)

        return self._undecodable("Unknown payload format", shape, strict)

    @staticmethod
    def _undecodable(
        reason: str, shape: str, strict: bool, cause: Exception | None = None
    ) -> Any:
        if strict:
            raise CodecDecodeError(reason) from cause
        logger.warning("%s; using safe empty %s", reason, shape)
        return safe_empty(shape)

    # ------------------------------------------------------------------
    # Key material
    # ------------------------------------------------------------------

    def reset_key_material(self) -> None:
        """Drop cached per-owner keys; they are re-derived on next use."""
        count = len(self._owner_encryptors)
        self._owner_encryptors.clear()
        logger.warning("Codec key material reset (%d cached owner keys dropped)", count)

    def _can_encrypt_for(self, owner_id: str) -> bool:
        identity = self._identity.current()
        return (
            self._encryptor is not None
            and identity is not None
            and identity.authenticated
            and identity.owner_id == owner_id
        )

    def _owner_encryptor(self, owner_id: str) -> FieldEncryptor:
        encryptor = self._owner_encryptors.get(owner_id)
        if encryptor is None:
            assert self._encryptor is not None
            encryptor = self._encryptor.for_owner(owner_id)
            self._owner_encryptors[owner_id] = encryptor
        return encryptor
