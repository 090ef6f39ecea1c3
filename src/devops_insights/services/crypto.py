"""Symmetric encryption for secrets stored in the database.

Uses Fernet with a key derived from SETTINGS_ENCRYPTION_KEY. Used for the
system-config PAT and per-repository access tokens.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


def _derive_key(secret: str) -> bytes:
    """Derive a Fernet-compatible key from a secret string using SHA-256."""
    digest = hashlib.sha256(secret.encode()).digest()
    return base64.urlsafe_b64encode(digest)


def _get_encryption_key() -> bytes:
    secret = os.getenv("SETTINGS_ENCRYPTION_KEY")
    if not secret:
        raise RuntimeError(
            "SETTINGS_ENCRYPTION_KEY environment variable is required for encryption"
        )
    return _derive_key(secret)


def encrypt_value(plaintext: str) -> str:
    """Encrypt a plaintext string and return the Fernet token as text."""
    return Fernet(_get_encryption_key()).encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str) -> str:
    f = Fernet(_get_encryption_key())
    try:
        return f.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.error("Failed to decrypt value - invalid token or wrong key")
        raise ValueError("Decryption failed - check SETTINGS_ENCRYPTION_KEY")


def is_encrypted(value: str | None) -> bool:
    """Whether ``value`` decrypts with the current key."""
    if not value:
        return False
    try:
        decrypt_value(value)
    except (ValueError, RuntimeError):
        return False
    return True
