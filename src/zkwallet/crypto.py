"""Password-based encryption for secrets kept at rest.

Uses Fernet (AES-128-CBC with HMAC) keyed by PBKDF2-HMAC-SHA256 of the
user password. The salt travels with the ciphertext:

    <urlsafe-base64 salt>$<fernet token>
"""

import base64
import hashlib
import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100000
SALT_SIZE = 16
SEPARATOR = "$"


def derive_key_from_password(password: str, salt: Optional[bytes] = None) -> tuple[str, bytes]:
    """Derive a Fernet key from a password using PBKDF2.

    Args:
        password: User-provided password
        salt: Optional salt (generated if not provided)

    Returns:
        Tuple of (base64-encoded key, salt)
    """
    if salt is None:
        salt = os.urandom(SALT_SIZE)

    key = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode(),
        salt,
        PBKDF2_ITERATIONS,
        dklen=32,
    )

    # Fernet requires base64-encoded key
    fernet_key = base64.urlsafe_b64encode(key)
    return fernet_key.decode(), salt


class PasswordCipher:
    """Encrypts and decrypts short secrets under a password.

    Usage:
        token = PasswordCipher.encrypt("seed words ...", "password")
        plain = PasswordCipher.decrypt(token, "password")  # None on wrong password
    """

    @staticmethod
    def encrypt(plaintext: str, password: str) -> str:
        """Encrypt a secret with a fresh salt.

        Returns:
            Salt and Fernet token joined by ``$``
        """
        key, salt = derive_key_from_password(password)
        token = Fernet(key.encode()).encrypt(plaintext.encode()).decode()
        return f"{base64.urlsafe_b64encode(salt).decode()}{SEPARATOR}{token}"

    @staticmethod
    def decrypt(ciphertext: str, password: str) -> Optional[str]:
        """Decrypt a secret produced by ``encrypt``.

        A wrong password does not raise: the result is None and the caller
        decides whether the output is valid.
        """
        if SEPARATOR not in ciphertext:
            logger.debug("Ciphertext has no salt separator")
            return None

        salt_b64, token = ciphertext.split(SEPARATOR, 1)
        try:
            salt = base64.urlsafe_b64decode(salt_b64.encode())
        except (ValueError, TypeError):
            return None

        key, _ = derive_key_from_password(password, salt)
        try:
            return Fernet(key.encode()).decrypt(token.encode()).decode()
        except (InvalidToken, UnicodeDecodeError):
            return None
