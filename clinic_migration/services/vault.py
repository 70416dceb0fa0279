"""Credential vault for source platform credentials.

Credentials are encrypted with AES-256-GCM before they are persisted on a
run. The stored token is ``base64(nonce[12] || ciphertext || tag[16])``;
decryption verifies the tag and fails closed.
"""

import base64
import binascii
import json
import logging
import os
import re
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import ConfigurationError, CredentialVaultError

logger = logging.getLogger(__name__)

NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32
KEY_ENV_VAR = "MIGRATION_ENCRYPTION_KEY"

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def parse_key(value: str) -> bytes:
    """Decode a 256-bit key given as 64 hex characters or base64.

    Raises:
        ConfigurationError: If the decoded key is not exactly 32 bytes
    """
    value = value.strip()
    if _HEX_KEY_RE.match(value):
        return bytes.fromhex(value)
    try:
        key = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError(f"{KEY_ENV_VAR} is neither hex nor base64") from e
    if len(key) != KEY_LENGTH:
        raise ConfigurationError(
            f"{KEY_ENV_VAR} must decode to {KEY_LENGTH} bytes (64 hex chars or 44 base64 chars), "
            f"got {len(key)}"
        )
    return key


def generate_key() -> str:
    """Generate a new random key, hex encoded."""
    return AESGCM.generate_key(bit_length=256).hex()


class CredentialVault:
    """Authenticated encryption for credentials at rest.

    Supports:
    - String encrypt/decrypt with a fresh random nonce per call
    - JSON helpers for credential dictionaries
    - Keys from the environment (hex or base64)
    """

    def __init__(self, key: bytes):
        """
        Initialize the vault.

        Args:
            key: Raw 32-byte key
        """
        if len(key) != KEY_LENGTH:
            raise ConfigurationError(f"Encryption key must be {KEY_LENGTH} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_env(cls, env_var: str = KEY_ENV_VAR) -> "CredentialVault":
        """Build a vault from the key in the environment."""
        value = os.environ.get(env_var)
        if not value:
            raise ConfigurationError(
                f"{env_var} environment variable is required for credential encryption"
            )
        return cls(parse_key(value))

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        # AESGCM appends the 16-byte tag to the ciphertext
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str) -> str:
        """
        Decrypt a token produced by encrypt().

        Raises:
            CredentialVaultError: If the token is malformed or fails authentication
        """
        try:
            combined = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CredentialVaultError("Ciphertext is not valid base64") from e

        if len(combined) < NONCE_LENGTH + TAG_LENGTH:
            raise CredentialVaultError("Ciphertext is too short")

        nonce, sealed = combined[:NONCE_LENGTH], combined[NONCE_LENGTH:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as e:
            logger.warning("Credential decryption failed authentication")
            raise CredentialVaultError("Ciphertext failed authentication") from e
        return plaintext.decode("utf-8")

    def encrypt_credentials(self, credentials: Dict[str, Any]) -> str:
        return self.encrypt(json.dumps(credentials, sort_keys=True))

    def decrypt_credentials(self, token: Optional[str]) -> Dict[str, Any]:
        if not token:
            return {}
        try:
            return json.loads(self.decrypt(token))
        except json.JSONDecodeError as e:
            raise CredentialVaultError("Decrypted credentials are not valid JSON") from e
