"""Fernet-based field encryption for record payloads.

A single master key is configured; each owner gets a distinct Fernet key
derived from it with HKDF, so one owner's ciphertext never decrypts under
another owner's key context.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger(__name__)

_HKDF_SALT = b"shs-owner-key-v1"


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""


class FieldEncryptor:
    """Encrypts and decrypts JSON-serializable data using Fernet symmetric encryption.

    Usage::

        encryptor = FieldEncryptor(key="...")
        encrypted = encryptor.encrypt({"mood": 3})
        decrypted = encryptor.decrypt(encrypted)  # {"mood": 3}
    """

    def __init__(self, key: str) -> None:
        """Initialize with a Fernet key.

        Args:
            key: A valid Fernet key string. Generate with
                 :meth:`generate_key`.

        Raises:
            EncryptionError: If the key is empty or invalid.
        """
        if not key or not key.strip():
            raise EncryptionError("Encryption key must not be empty")
        self._key = key
        try:
            self._fernet = Fernet(key.encode())
        except (ValueError, TypeError) as exc:
            raise EncryptionError(f"Invalid encryption key: {exc}") from exc

    def encrypt(self, data: Any) -> str:
        """Encrypt a JSON-serializable value to a Fernet token string.

        Returns an empty string for ``None``.

        Raises:
            EncryptionError: If serialization or encryption fails.
        """
        if data is None:
            return ""
        try:
            plaintext = json.dumps(data, separators=(",", ":")).encode("utf-8")
            return self._fernet.encrypt(plaintext).decode("utf-8")
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Encryption failed: {exc}") from exc

    def decrypt(self, token: str) -> Any:
        """Decrypt a Fernet token string back to a Python object.

        Raises:
            EncryptionError: If the token is invalid or decryption fails.
        """
        if not token:
            return None
        try:
            plaintext = self._fernet.decrypt(token.encode("utf-8"))
            return json.loads(plaintext)
        except InvalidToken as exc:
            raise EncryptionError("Decryption failed: invalid token or wrong key") from exc
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Decryption failed: {exc}") from exc

    def for_owner(self, owner_id: str) -> FieldEncryptor:
        """Return an encryptor bound to the owner-specific derived key."""
        return FieldEncryptor(derive_owner_key(self._key, owner_id))

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key (URL-safe base64, 32 bytes)."""
        return Fernet.generate_key().decode("utf-8")


def derive_owner_key(master_key: str, owner_id: str) -> str:
    """Derive a per-owner Fernet key from the master key with HKDF-SHA256."""
    if not owner_id:
        raise EncryptionError("Owner id is required to derive a key")
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_HKDF_SALT,
        info=f"owner:{owner_id}".encode("utf-8"),
    )
    derived = hkdf.derive(master_key.encode("utf-8"))
    return base64.urlsafe_b64encode(derived).decode("utf-8")
