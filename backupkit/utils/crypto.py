"""
Decryption of credentials stored in backup definitions (database passwords,
S3 keys, SFTP passwords).
Uses Fernet symmetric encryption with a key derived from the master password.
"""

import os
import base64
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


ENCRYPTED_SUFFIX = '_encrypted'


class CryptoManager:
    """Handles encryption and decryption of credentials."""

    def __init__(self):
        self._fernet = None
        self._salt = None

    def initialize(self, password: str, salt: Optional[bytes] = None) -> bytes:
        """
        Initialize the encryption manager with a password.

        Args:
            password: Master password to derive encryption key from
            salt: Optional salt (if None, generates new one)

        Returns:
            The salt used (keep it next to the definition file)
        """
        if salt is None:
            salt = os.urandom(16)

        self._salt = salt

        # Derive a 32-byte key from password using PBKDF2
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=480000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(password.encode()))

        self._fernet = Fernet(key)
        return salt

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string.

        Raises:
            RuntimeError: If crypto manager not initialized
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        encrypted_bytes = self._fernet.encrypt(plaintext.encode())
        return base64.urlsafe_b64encode(encrypted_bytes).decode()

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt a string.

        Raises:
            RuntimeError: If crypto manager not initialized
            cryptography.fernet.InvalidToken: If decryption fails
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        encrypted_bytes = base64.urlsafe_b64decode(encrypted.encode())
        decrypted_bytes = self._fernet.decrypt(encrypted_bytes)
        return decrypted_bytes.decode()

    def decrypt_settings(self, settings: Dict[str, Any]) -> Dict[str, Any]:
        """
        Return a copy of settings with every `<name>_encrypted` value
        decrypted into `<name>`.

        Raises:
            RuntimeError: If an encrypted value is present and the manager
                is not initialized
            cryptography.fernet.InvalidToken: If a value cannot be decrypted
        """
        decrypted = {}
        for key, value in settings.items():
            if key.endswith(ENCRYPTED_SUFFIX) and isinstance(value, str):
                decrypted[key[:-len(ENCRYPTED_SUFFIX)]] = self.decrypt(value)
            else:
                decrypted[key] = value
        return decrypted

    @property
    def is_initialized(self) -> bool:
        """Check if the crypto manager has been initialized."""
        return self._fernet is not None


def crypto_manager_from_config(config) -> CryptoManager:
    """
    Build a CryptoManager from MASTER_PASSWORD / MASTER_SALT settings.

    The salt is stored urlsafe-base64 encoded. Without a master password the
    manager stays uninitialized and plaintext-only definitions still work.
    """
    manager = CryptoManager()
    if config.MASTER_PASSWORD:
        salt = base64.urlsafe_b64decode(config.MASTER_SALT) if config.MASTER_SALT else None
        manager.initialize(config.MASTER_PASSWORD, salt)
    return manager


__all__ = ['CryptoManager', 'InvalidToken', 'crypto_manager_from_config']
