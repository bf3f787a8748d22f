"""
Credential encryption and resolution.

User-supplied API keys are stored encrypted with AES-256-GCM. The key is
derived from the server secret with PBKDF2-HMAC-SHA256 and every ciphertext
carries its own random IV and authentication tag, so tampering makes
decryption fail instead of returning corrupted plaintext.

Stored format: ``iv_hex:tag_hex:ciphertext_hex``.
"""

import os
from typing import Optional

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ai_gateway.config.loader import ConfigurationError
from ai_gateway.storage.repository import AccountRepository

logger = structlog.get_logger(__name__)

KEY_SALT = b"ai-gateway.credentials.v1"
KDF_ITERATIONS = 200_000
IV_SIZE = 12
TAG_SIZE = 16


class CredentialDecryptionError(ValueError):
    """Stored credential is malformed, tampered with, or from another key."""


def mask_credential(credential: Optional[str], visible_chars: int = 4) -> str:
    """Mask a credential for logs and display, e.g. ``sk-a...wxyz``."""
    if not credential:
        return ""
    if len(credential) <= visible_chars * 2:
        return "*" * len(credential)
    return f"{credential[:visible_chars]}...{credential[-visible_chars:]}"


class CredentialVault:
    """Authenticated encryption for stored credentials."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("secret is required and cannot be empty")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=KEY_SALT,
            iterations=KDF_ITERATIONS,
        )
        self._aead = AESGCM(kdf.derive(secret.encode("utf-8")))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a credential for storage.

        Raises:
            ValueError: If plaintext is empty
        """
        if not plaintext:
            raise ValueError("plaintext is required and cannot be empty")
        iv = os.urandom(IV_SIZE)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, stored: str) -> str:
        """Decrypt a stored credential.

        Raises:
            CredentialDecryptionError: If the value is malformed or fails
                authentication
        """
        parts = (stored or "").split(":")
        if len(parts) != 3:
            raise CredentialDecryptionError("Stored credential is malformed")
        try:
            iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError:
            raise CredentialDecryptionError("Stored credential is not valid hex")
        if len(iv) != IV_SIZE or len(tag) != TAG_SIZE:
            raise CredentialDecryptionError("Stored credential has an invalid IV or tag")

        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            logger.error("credential_decryption_failed", reason="authentication failed")
            raise CredentialDecryptionError(
                "Decryption failed - credential was tampered with or the secret changed"
            )
        return plaintext.decode("utf-8")


class CredentialResolver:
    """Chooses the credential for a model call.

    Order: explicit override, the caller's stored credential, then the
    platform-wide default.
    """

    def __init__(
        self,
        accounts: AccountRepository,
        vault: CredentialVault,
        default_credential: Optional[str] = None,
    ):
        self.accounts = accounts
        self.vault = vault
        self.default_credential = default_credential

    def user_credential(self, user_id: str) -> Optional[str]:
        """Decrypt the caller's own credential, if they stored one."""
        account = self.accounts.get_account(user_id)
        if account is None or not account.has_own_credential:
            return None
        return self.vault.decrypt(account.encrypted_credential)

    def resolve(self, user_id: Optional[str] = None, override: Optional[str] = None) -> str:
        """Return the credential to use for a call.

        Raises:
            ConfigurationError: If no credential is available
        """
        if override:
            return override
        if user_id:
            credential = self.user_credential(user_id)
            if credential:
                return credential
        if self.default_credential:
            return self.default_credential
        raise ConfigurationError(
            "AI service not configured. An OpenAI API key is required; "
            "configure one in Settings or set OPENAI_API_KEY."
        )
