"""
Signing key encryption at rest
"""

import base64

import pytest

from utils.key_vault import IV_LENGTH, TAG_LENGTH, KeyVault, KeyVaultError


class TestKeyVault:

    def test_blob_layout(self, key_vault):
        """base64(iv | tag | ciphertext)"""
        plaintext = "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
        blob = key_vault.encrypt(plaintext)
        raw = base64.b64decode(blob)
        assert len(raw) == IV_LENGTH + TAG_LENGTH + len(plaintext)
        assert key_vault.decrypt(blob) == plaintext

    def test_fresh_iv_per_encryption(self, key_vault):
        assert key_vault.encrypt("same") != key_vault.encrypt("same")

    def test_tampered_blob_fails_authentication(self, key_vault):
        raw = bytearray(base64.b64decode(key_vault.encrypt("secret")))
        raw[-1] ^= 0x01
        with pytest.raises(KeyVaultError):
            key_vault.decrypt(base64.b64encode(bytes(raw)).decode())

    def test_wrong_key_fails(self, key_vault):
        other = KeyVault(KeyVault.generate_key())
        with pytest.raises(KeyVaultError):
            other.decrypt(key_vault.encrypt("secret"))

    def test_truncated_blob(self, key_vault):
        with pytest.raises(KeyVaultError):
            key_vault.decrypt(base64.b64encode(b"short").decode())

    def test_key_must_be_32_bytes(self):
        with pytest.raises(KeyVaultError):
            KeyVault(base64.b64encode(b"x" * 16).decode())
