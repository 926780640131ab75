"""Key management capability used by reversible de-identification.

The engine never stores key material.  It asks a ``KeyManagementService``
for the key named by ``reversal_key_id`` and uses it to encrypt the
original span values; only the key id and the ciphertext are recorded.
Any failure surfaces as ``KeyManagementError`` so callers can retry.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol, runtime_checkable

from cryptography.fernet import Fernet, InvalidToken

from phiguard.errors import KeyManagementError

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyManagementService(Protocol):
    """External key store."""

    def get_key(self, key_id: str) -> bytes:
        """Fetch key material for *key_id*; raise KeyManagementError if unavailable."""
        ...

    def encrypt(self, key: bytes, plaintext: bytes) -> bytes: ...

    def decrypt(self, key: bytes, ciphertext: bytes) -> bytes: ...


class FernetKeyManager:
    """In-process key store backed by Fernet (AES-128-CBC + HMAC-SHA256).

    Suitable for development and tests, or as an adapter in front of a real
    KMS that hands out Fernet keys.
    """

    def __init__(self, keys: dict[str, bytes] | None = None) -> None:
        self._lock = threading.Lock()
        self._keys: dict[str, bytes] = dict(keys or {})

    def create_key(self, key_id: str) -> None:
        """Generate a new key under *key_id*, replacing any previous one."""
        with self._lock:
            self._keys[key_id] = Fernet.generate_key()
        logger.info("Created reversal key %s", key_id)

    def revoke(self, key_id: str) -> None:
        with self._lock:
            self._keys.pop(key_id, None)
        logger.info("Revoked reversal key %s", key_id)

    def get_key(self, key_id: str) -> bytes:
        with self._lock:
            key = self._keys.get(key_id)
        if key is None:
            raise KeyManagementError(f"Reversal key '{key_id}' is not available")
        return key

    def encrypt(self, key: bytes, plaintext: bytes) -> bytes:
        try:
            return Fernet(key).encrypt(plaintext)
        except (ValueError, TypeError) as e:
            raise KeyManagementError(f"Encryption failed: {e}") from e

    def decrypt(self, key: bytes, ciphertext: bytes) -> bytes:
        try:
            return Fernet(key).decrypt(ciphertext)
        except InvalidToken as e:
            raise KeyManagementError(
                "Decryption failed: ciphertext does not match the reversal key"
            ) from e
        except (ValueError, TypeError) as e:
            raise KeyManagementError(f"Decryption failed: {e}") from e
