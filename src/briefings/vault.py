"""Symmetric encryption of OAuth credentials at rest.

Tokens are sealed with Fernet (AES-128-CBC with HMAC-SHA256 and a random IV),
so encrypting the same plaintext twice yields different ciphertexts. The key
comes from ``BRIEFINGS_ENCRYPTION_KEY``: either a urlsafe-base64 Fernet key or
an arbitrary passphrase that is stretched with PBKDF2.
"""

from __future__ import annotations

import base64
import logging

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from briefings.errors import ConfigurationError, TokenDecryptionError

logger = logging.getLogger(__name__)

_KDF_SALT = b"briefings-token-vault-v1"
_KDF_ITERATIONS = 390_000
_FERNET_KEY_LENGTH = 44


def _derive_key(secret: str) -> bytes:
    """Return a Fernet key for *secret*, deriving one when it is a passphrase."""
    if len(secret) == _FERNET_KEY_LENGTH and secret.endswith("="):
        try:
            if len(base64.urlsafe_b64decode(secret.encode())) == 32:
                return secret.encode()
        except ValueError:
            pass
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_KDF_SALT,
        iterations=_KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode()))


class TokenVault:
    """Encrypts and decrypts credential strings with a process-wide key."""

    def __init__(self, secret: str) -> None:
        if not secret or not secret.strip():
            raise ConfigurationError("Token vault secret must not be empty")
        self._fernet = Fernet(_derive_key(secret.strip()))

    @classmethod
    def from_settings(cls, encryption_key: str | None, *, development: bool) -> TokenVault:
        """Build a vault, failing fast when no key is configured outside development."""
        if encryption_key:
            return cls(encryption_key)
        if not development:
            raise ConfigurationError("BRIEFINGS_ENCRYPTION_KEY must be set in production")
        logger.warning(
            "No BRIEFINGS_ENCRYPTION_KEY configured; generated a temporary key. "
            "Stored tokens will be unreadable after a restart."
        )
        return cls(generate_key())

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise TokenDecryptionError(
                "Stored credential could not be decrypted with the configured key"
            ) from exc

    def __repr__(self) -> str:
        return "TokenVault(<redacted>)"


def generate_key() -> str:
    """Generate a new Fernet key suitable for ``BRIEFINGS_ENCRYPTION_KEY``."""
    return Fernet.generate_key().decode("ascii")
