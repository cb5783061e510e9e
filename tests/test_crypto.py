"""
Tests for vault crypto helpers and configuration.

Tests cover:
- PBKDF2 key derivation
- Record sealing, decoding and validation
- Keyrings used while a master secret change is pending
- SecretPolicy rules
- VaultConfig validation and environment loading
"""
import logging

import orjson
import pytest
from cryptography.exceptions import InvalidTag

from byok_chat.exceptions import CorruptRecordError, WeakSecretError
from byok_chat.vault.config import (
    LEGACY_KDF_ITERATIONS,
    SecretPolicy,
    StorageMode,
    VaultConfig,
)
from byok_chat.vault.crypto import (
    KEY_LENGTH,
    NONCE_SIZE,
    b64decode,
    decode_record,
    derive_key,
    encode_record,
    generate_salt,
    open_credential,
    open_keyring,
    seal_credential,
    seal_keyring,
)


# --- Test Key Derivation ---

class TestDeriveKey:
    """Tests for derive_key."""

    def test_deterministic(self):
        """Test same secret, salt and iterations give the same key."""
        salt = b"s" * 16
        assert derive_key("secret", salt, 1000) == derive_key("secret", salt, 1000)

    def test_length(self):
        assert len(derive_key("secret", generate_salt(), 1000)) == KEY_LENGTH

    def test_salt_changes_key(self):
        assert derive_key("secret", b"a" * 16, 1000) != derive_key("secret", b"b" * 16, 1000)

    def test_iterations_change_key(self):
        salt = b"s" * 16
        assert derive_key("secret", salt, 1000) != derive_key("secret", salt, 1001)

    def test_unicode_secret(self):
        """Test non-ASCII secrets are encoded as UTF-8."""
        key = derive_key("contraseña-ñandú", b"s" * 16, 1000)
        assert len(key) == KEY_LENGTH


# --- Test Records ---

class TestRecords:
    """Tests for sealing and decoding records."""

    def test_seal_and_open(self):
        salt = generate_salt()
        key = derive_key("secret", salt, 1000)
        record = seal_credential("openai", "sk-test", key, salt, 1000)
        assert record.provider_id == "openai"
        assert record.kdf_iterations == 1000
        assert len(b64decode(record.nonce)) == NONCE_SIZE
        assert open_credential(record, key) == "sk-test"

    def test_open_with_wrong_key(self):
        salt = generate_salt()
        record = seal_credential("openai", "sk-test", derive_key("a", salt, 1000), salt, 1000)
        with pytest.raises(InvalidTag):
            open_credential(record, derive_key("b", salt, 1000))

    def test_encode_decode(self):
        salt = generate_salt()
        key = derive_key("secret", salt, 1000)
        record = seal_credential("gemini", "AIza-test", key, salt, 1000)
        decoded = decode_record("k", encode_record(record))
        assert decoded == record
        assert decoded.generation == record.generation

    def test_decode_invalid_json(self):
        with pytest.raises(CorruptRecordError) as exc:
            decode_record("vault:cred:openai", b"not json")
        assert exc.value.key == "vault:cred:openai"
        assert "JSON" in exc.value.reason

    def test_decode_missing_fields(self):
        payload = orjson.dumps({"providerId": "openai", "ciphertext": "AAAA"})
        with pytest.raises(CorruptRecordError) as exc:
            decode_record("k", payload)
        assert "nonce" in exc.value.reason

    def test_decode_bad_nonce_length(self):
        salt = generate_salt()
        record = seal_credential("openai", "sk", derive_key("s", salt, 1000), salt, 1000)
        data = record.model_dump(by_alias=True, mode="json")
        data["nonce"] = "AAAA"
        with pytest.raises(CorruptRecordError):
            decode_record("k", orjson.dumps(data))

    def test_decode_bad_base64(self):
        salt = generate_salt()
        record = seal_credential("openai", "sk", derive_key("s", salt, 1000), salt, 1000)
        data = record.model_dump(by_alias=True, mode="json")
        data["ciphertext"] = "***"
        with pytest.raises(CorruptRecordError):
            decode_record("k", orjson.dumps(data))

    def test_missing_iterations_defaults_to_legacy(self):
        salt = generate_salt()
        record = seal_credential("openai", "sk", derive_key("s", salt, 1000), salt, 1000)
        data = record.model_dump(by_alias=True, mode="json")
        del data["kdfIterations"]
        assert decode_record("k", orjson.dumps(data)).kdf_iterations == LEGACY_KDF_ITERATIONS

    def test_keyring(self):
        """Test a keyring carries keys for several generations."""
        old_salt, new_salt = generate_salt(), generate_salt()
        old_key = derive_key("old", old_salt, 1000)
        new_key = derive_key("new", new_salt, 2000)
        old_gen = seal_credential("x", "x", old_key, old_salt, 1000).generation
        record = seal_keyring("vault-rekey", {old_gen: old_key}, new_key, new_salt, 2000)
        assert record.generation[1] == 2000
        keys = open_keyring(decode_record("k", encode_record(record)), new_key)
        assert keys == {old_gen: bytearray(old_key)}
        with pytest.raises(InvalidTag):
            open_keyring(record, old_key)


# --- Test Secret Policy ---

class TestSecretPolicy:
    """Tests for SecretPolicy."""

    def test_default_length_only(self):
        policy = SecretPolicy()
        assert policy.violations("a" * 12) == []
        assert len(policy.violations("a" * 11)) == 1

    def test_char_classes(self):
        policy = SecretPolicy(min_length=1, min_char_classes=3)
        assert policy.violations("abcDEF123") == []
        assert len(policy.violations("abcdef123")) == 1

    def test_check_raises(self):
        policy = SecretPolicy(require_digit=True)
        with pytest.raises(WeakSecretError) as exc:
            policy.check("no-digits-here-at-all")
        assert exc.value.failures == ["must contain a digit"]


# --- Test VaultConfig ---

class TestVaultConfig:
    """Tests for VaultConfig."""

    def test_defaults(self):
        config = VaultConfig()
        assert config.kdf_iterations == 600_000
        assert config.auto_lock_seconds == 900.0
        assert config.storage_mode is StorageMode.PERSISTENT

    def test_zero_auto_lock_disables(self):
        assert VaultConfig(auto_lock_seconds=0).auto_lock_seconds is None

    def test_low_iterations_warn(self, caplog):
        with caplog.at_level(logging.WARNING, logger="byok.vault"):
            VaultConfig(kdf_iterations=10)
        assert "below the legacy minimum" in caplog.text

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("BYOK_VAULT_KDF_ITERATIONS", "200000")
        monkeypatch.setenv("BYOK_VAULT_AUTO_LOCK_SECONDS", "0")
        monkeypatch.setenv("BYOK_VAULT_STORAGE_MODE", "SESSION_ONLY")
        monkeypatch.setenv("BYOK_SECRET_MIN_LENGTH", "20")
        config = VaultConfig.from_env()
        assert config.kdf_iterations == 200_000
        assert config.auto_lock_seconds is None
        assert config.storage_mode is StorageMode.SESSION_ONLY
        assert config.secret_policy.min_length == 20

    def test_from_env_defaults(self, monkeypatch):
        for name in (
            "BYOK_VAULT_KDF_ITERATIONS",
            "BYOK_VAULT_AUTO_LOCK_SECONDS",
            "BYOK_VAULT_STORAGE_MODE",
            "BYOK_SECRET_MIN_LENGTH",
        ):
            monkeypatch.delenv(name, raising=False)
        assert VaultConfig.from_env() == VaultConfig()
