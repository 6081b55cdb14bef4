"""Decryption of provider credentials stored on integration records.

Credentials are Fernet tokens produced with a key derived from the
``HEALTHWATCH_ENCRYPTION_KEY`` secret. The secret is passed in explicitly;
nothing is read from the environment here.
"""

from __future__ import annotations

import base64

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

DEFAULT_SALT = b"healthwatch-credentials-v1"
KDF_ITERATIONS = 480_000


class CredentialError(Exception):
    """Raised when credentials cannot be encrypted or decrypted."""


def derive_key(secret: str, salt: bytes = DEFAULT_SALT) -> bytes:
    """Derive a Fernet key from a variable-length secret."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


class CredentialDecryptor:
    """Encrypts and decrypts credential strings with Fernet.

    Args:
        secret: Raw secret the Fernet key is derived from.
        salt: KDF salt; only needs changing when rotating the derivation.

    Raises:
        CredentialError: If the secret is empty.
    """

    def __init__(self, secret: str, salt: bytes = DEFAULT_SALT) -> None:
        if not secret or not secret.strip():
            raise CredentialError("Encryption key is required. Set HEALTHWATCH_ENCRYPTION_KEY.")
        self._fernet = Fernet(derive_key(secret.strip(), salt))

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, value: str | None) -> str | None:
        """Decrypt a stored credential.

        Args:
            value: Fernet token, or None when the credential is not set.

        Returns:
            The plaintext credential, or None if ``value`` is None.

        Raises:
            CredentialError: If the token is corrupt or was encrypted with
                another key.
        """
        if value is None:
            return None
        try:
            return self._fernet.decrypt(value.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            raise CredentialError("Credential decryption failed: invalid token or wrong key") from e


__all__ = [
    "CredentialDecryptor",
    "CredentialError",
    "derive_key",
]
