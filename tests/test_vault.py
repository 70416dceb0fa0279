"""Tests for the credential vault.

These tests verify that the vault:
- Round-trips credentials with AES-256-GCM
- Uses a fresh nonce per encryption
- Fails closed on tampering and malformed input
- Reads hex and base64 keys from the environment
"""

import base64

import pytest

from clinic_migration.errors import ConfigurationError, CredentialVaultError
from clinic_migration.services.vault import (
    KEY_ENV_VAR,
    NONCE_LENGTH,
    TAG_LENGTH,
    CredentialVault,
    generate_key,
    parse_key,
)


class TestCredentialVault:
    """Test suite for encryption at rest."""

    def test_credentials_round_trip(self, vault):
        """Test that decrypting an encrypted dictionary returns it unchanged."""
        credentials = {"email": "admin@clinic.test", "password": "s3cret"}
        token = vault.encrypt_credentials(credentials)

        assert "s3cret" not in token
        assert vault.decrypt_credentials(token) == credentials

    def test_token_layout(self, vault):
        """Test that a token is base64 of nonce, ciphertext and tag."""
        token = vault.encrypt("abc")
        raw = base64.b64decode(token)

        assert len(raw) == NONCE_LENGTH + len("abc") + TAG_LENGTH

    def test_nonce_is_fresh_per_call(self, vault):
        """Test that the same plaintext encrypts differently each time."""
        assert vault.encrypt("same") != vault.encrypt("same")

    def test_tampered_ciphertext_fails(self, vault):
        """Test that flipping one byte is detected."""
        raw = bytearray(base64.b64decode(vault.encrypt("payload")))
        raw[-1] ^= 0x01
        tampered = base64.b64encode(bytes(raw)).decode("ascii")

        with pytest.raises(CredentialVaultError):
            vault.decrypt(tampered)

    def test_wrong_key_fails(self, vault):
        """Test that another key cannot decrypt the token."""
        other = CredentialVault(bytes.fromhex(generate_key()))
        with pytest.raises(CredentialVaultError):
            other.decrypt(vault.encrypt("payload"))

    @pytest.mark.parametrize("token", ["not base64!!", base64.b64encode(b"short").decode("ascii")])
    def test_malformed_tokens_fail(self, vault, token):
        """Test that garbage and truncated tokens are rejected."""
        with pytest.raises(CredentialVaultError):
            vault.decrypt(token)

    def test_empty_token_decrypts_to_no_credentials(self, vault):
        assert vault.decrypt_credentials(None) == {}
        assert vault.decrypt_credentials("") == {}


class TestKeyParsing:
    """Test suite for key configuration."""

    def test_hex_and_base64_keys_are_equivalent(self):
        key = bytes.fromhex(generate_key())
        assert parse_key(key.hex()) == key
        assert parse_key(base64.b64encode(key).decode("ascii")) == key

    def test_wrong_length_key_rejected(self):
        """Test that a 16-byte key is a configuration error."""
        with pytest.raises(ConfigurationError):
            parse_key(base64.b64encode(b"0" * 16).decode("ascii"))

    def test_from_env(self, monkeypatch):
        key = generate_key()
        monkeypatch.setenv(KEY_ENV_VAR, key)

        vault = CredentialVault.from_env()
        assert vault.decrypt(vault.encrypt("x")) == "x"

    def test_from_env_requires_key(self, monkeypatch):
        monkeypatch.delenv(KEY_ENV_VAR, raising=False)
        with pytest.raises(ConfigurationError):
            CredentialVault.from_env()
