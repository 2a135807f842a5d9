"""Reversible encryption for git tokens and client secrets stored at rest."""

from __future__ import annotations

import base64
import hashlib
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken


@lru_cache(maxsize=8)
def _fernet(encryption_key: str) -> Fernet:
    # Fernet wants 32 url-safe base64 bytes; any configured string maps onto one.
    return Fernet(base64.urlsafe_b64encode(hashlib.sha256(encryption_key.encode()).digest()))


def encrypt_value(plaintext: str, encryption_key: str) -> str:
    return _fernet(encryption_key).encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str, encryption_key: str) -> str:
    """Raises ValueError when the key is wrong or the ciphertext was altered."""
    try:
        plaintext = _fernet(encryption_key).decrypt(ciphertext.encode())
    except InvalidToken as exc:
        msg = "Failed to decrypt stored secret"
        raise ValueError(msg) from exc
    return plaintext.decode()


def decrypt_optional(ciphertext: str | None, encryption_key: str) -> str | None:
    """Empty or missing ciphertext yields None."""
    if not ciphertext:
        return None
    return decrypt_value(ciphertext, encryption_key)
