"""Tests for secret encryption/decryption."""

from __future__ import annotations

import pytest

from gitrelay.services.crypto_service import decrypt_optional, decrypt_value, encrypt_value


class TestCryptoService:
    def test_encrypt_decrypt_roundtrip(self) -> None:
        ciphertext = encrypt_value("ghp_token", "key")
        assert ciphertext != "ghp_token"
        assert decrypt_value(ciphertext, "key") == "ghp_token"

    def test_decrypt_with_wrong_key_raises(self) -> None:
        ciphertext = encrypt_value("secret data", "correct-key")
        with pytest.raises(ValueError, match="Failed to decrypt"):
            decrypt_value(ciphertext, "wrong-key")

    def test_decrypt_garbage_raises(self) -> None:
        with pytest.raises(ValueError, match="Failed to decrypt"):
            decrypt_value("not-valid-ciphertext", "any-key")

    def test_decrypt_optional_none_and_empty(self) -> None:
        assert decrypt_optional(None, "key") is None
        assert decrypt_optional("", "key") is None
        assert decrypt_optional(encrypt_value("t", "key"), "key") == "t"
