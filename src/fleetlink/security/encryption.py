"""
Encryption services for fleetlink.

Device passwords are stored encrypted at rest with AES-256-GCM.
"""

import base64
import binascii
import hashlib
import logging
import secrets
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

# Encryption constants
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32  # 256 bits

# Stored password format: "<prefix><base64(nonce || ciphertext || tag)>"
ENCRYPTED_PREFIX = "gcm1:"


class EncryptionService:
    """
    AES-256-GCM encryption service.

    Provides authenticated encryption with associated data (AEAD).
    """

    def __init__(self, key: Optional[bytes] = None):
        """
        Initialize encryption service.

        Args:
            key: 256-bit encryption key (generated if not provided)
        """
        if key is None:
            key = secrets.token_bytes(KEY_SIZE)

        if len(key) != KEY_SIZE:
            raise ValueError(f"Key must be {KEY_SIZE} bytes")

        self._aesgcm = AESGCM(key)

    @classmethod
    def from_secret(cls, secret: str) -> "EncryptionService":
        """Derive the key from a configured secret string (SHA-256)."""
        if not secret:
            raise ValueError("Encryption secret must not be empty")
        return cls(hashlib.sha256(secret.encode("utf-8")).digest())

    def encrypt(
        self,
        plaintext: Union[str, bytes],
        associated_data: Optional[bytes] = None,
    ) -> bytes:
        """
        Encrypt data using AES-256-GCM.

        Returns:
            Encrypted data (nonce || ciphertext || tag)
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        nonce = secrets.token_bytes(NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, associated_data)

    def decrypt(
        self,
        ciphertext: bytes,
        associated_data: Optional[bytes] = None,
    ) -> bytes:
        """
        Decrypt data using AES-256-GCM.

        Raises:
            ValueError: If decryption fails (invalid key, corrupted data, etc.)
        """
        if len(ciphertext) < NONCE_SIZE + TAG_SIZE:
            raise ValueError("Ciphertext too short")

        nonce = ciphertext[:NONCE_SIZE]
        try:
            return self._aesgcm.decrypt(nonce, ciphertext[NONCE_SIZE:], associated_data)
        except InvalidTag:
            raise ValueError("Decryption failed: invalid tag or corrupted data")

    def encrypt_to_base64(self, plaintext: Union[str, bytes]) -> str:
        """Encrypt and return base64-encoded result."""
        return base64.b64encode(self.encrypt(plaintext)).decode("ascii")

    def decrypt_from_base64(self, ciphertext_b64: str) -> bytes:
        """Decrypt base64-encoded ciphertext."""
        try:
            ciphertext = base64.b64decode(ciphertext_b64, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("Ciphertext is not valid base64")
        return self.decrypt(ciphertext)


class PasswordCipher:
    """Encrypts device passwords for storage and recovers them for login."""

    def __init__(self, service: EncryptionService):
        self._service = service

    @classmethod
    def from_secret(cls, secret: str) -> "PasswordCipher":
        return cls(EncryptionService.from_secret(secret))

    @staticmethod
    def is_encrypted(value: Optional[str]) -> bool:
        return isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)

    def encrypt(self, password: str) -> str:
        """Encrypt a password; already-encrypted values pass through."""
        if not isinstance(password, str):
            raise TypeError("Password must be a string")
        if self.is_encrypted(password):
            return password
        return ENCRYPTED_PREFIX + self._service.encrypt_to_base64(password)

    def decrypt(self, value: str) -> str:
        """Decrypt a stored password. Raises ValueError on bad input."""
        if not self.is_encrypted(value):
            raise ValueError("Invalid encrypted data format")
        plaintext = self._service.decrypt_from_base64(value[len(ENCRYPTED_PREFIX):])
        return plaintext.decode("utf-8")

    def decrypt_safe(self, value: Optional[str]) -> str:
        """
        Decrypt a stored password, tolerating legacy plaintext values.

        Returns the input unchanged when it cannot be decrypted.
        """
        if not isinstance(value, str):
            return ""
        try:
            return self.decrypt(value)
        except ValueError:
            return value
