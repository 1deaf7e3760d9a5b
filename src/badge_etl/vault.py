"""badge_etl.vault

Credential vault: Fernet symmetric encryption of portal credentials.
Credentials are stored encrypted at rest; only the orchestrator decrypts them,
immediately before a login attempt.

The process-wide secret may be any passphrase: it is stretched to a 32-byte
Fernet key with SHA-256, so existing deployments can keep their
ENCRYPTION_KEY value.
"""

from __future__ import annotations

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

from badge_etl.errors import ConfigurationError, CredentialError

log = logging.getLogger(__name__)


def derive_key(secret: str) -> bytes:
    """Return a urlsafe-base64 Fernet key derived from a passphrase."""
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class CredentialVault:
    """Symmetric encrypt/decrypt pair keyed by a process-wide secret."""

    def __init__(self, secret: str | None):
        if not secret:
            raise ConfigurationError(
                "ENCRYPTION_KEY must be set to store or use portal credentials"
            )
        self._cipher = Fernet(derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a credential value.

        Raises:
            CredentialError: if plaintext is empty
        """
        if not plaintext:
            raise CredentialError("refusing to encrypt an empty credential")
        return self._cipher.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a stored credential value.

        Raises:
            CredentialError: if the token is empty, malformed, or was encrypted
                under a different key
        """
        if not ciphertext:
            raise CredentialError("stored credential is empty")
        try:
            return self._cipher.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            log.error("Credential decryption failed: %s", type(e).__name__)
            raise CredentialError("Decryption failed: invalid token or wrong key") from e
