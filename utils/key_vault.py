"""
Signing Key Encryption
AES-256-GCM at rest; blob layout is base64(iv[12] | tag[16] | ciphertext)
"""

import base64
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import Config

logger = logging.getLogger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16


class KeyVaultError(Exception):
    """Encryption key missing or an encrypted blob could not be opened"""
    pass


class KeyVault:
    """Encrypts and decrypts wallet signing keys"""

    def __init__(self, encryption_key: Optional[str] = None):
        raw_key = encryption_key or Config.WALLET_ENCRYPTION_KEY
        if not raw_key:
            raise KeyVaultError("WALLET_ENCRYPTION_KEY is not configured")
        try:
            key_bytes = base64.b64decode(raw_key)
        except (ValueError, TypeError) as e:
            raise KeyVaultError("WALLET_ENCRYPTION_KEY must be base64") from e
        if len(key_bytes) != 32:
            raise KeyVaultError("Encryption key must be 32 bytes for AES-256-GCM")
        self._aesgcm = AESGCM(key_bytes)

    @staticmethod
    def generate_key() -> str:
        """New base64 key suitable for WALLET_ENCRYPTION_KEY"""
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        try:
            data = base64.b64decode(blob)
        except (ValueError, TypeError) as e:
            raise KeyVaultError("Encrypted key is not valid base64") from e
        if len(data) < IV_LENGTH + TAG_LENGTH:
            raise KeyVaultError("Encrypted key is truncated")

        iv = data[:IV_LENGTH]
        tag = data[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
        ciphertext = data[IV_LENGTH + TAG_LENGTH:]
        try:
            return self._aesgcm.decrypt(iv, ciphertext + tag, None).decode("utf-8")
        except InvalidTag as e:
            logger.error("❌ KEY_DECRYPT_FAILED: authentication tag mismatch")
            raise KeyVaultError("Encrypted key failed authentication") from e
