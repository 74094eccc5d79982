"""
Security module for fleetlink.

Provides:
- Device password encryption at rest (AES-256-GCM)
- Operator token authentication
"""

from fleetlink.security.encryption import EncryptionService, PasswordCipher
from fleetlink.security.operators import Operator, OperatorAuthenticator, OperatorRole

__all__ = [
    "EncryptionService",
    "PasswordCipher",
    "Operator",
    "OperatorAuthenticator",
    "OperatorRole",
]
