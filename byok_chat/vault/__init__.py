"""Credential Vault — Encrypted provider API keys on the local device.

Security Note (Threat Model):
    Derived keys and decrypted credentials live in process memory while the
    vault is unlocked. A memory dump of the client process could expose them.
    Protecting against that needs an OS keystore and is not attempted here.
    Locking (explicit or idle) discards that material; in-flight requests
    that already hold a decrypted credential are not affected.
"""

from .config import (
    DEFAULT_KDF_ITERATIONS,
    LEGACY_KDF_ITERATIONS,
    SecretPolicy,
    StorageMode,
    VaultConfig,
)
from .crypto import EncryptedCredential
from .storage import FileStorage, MemoryStorage, StorageBackend
from .autolock import AutoLockPolicy
from .credential_vault import CredentialVault, VaultState
from .key_rotation import rotate_records

__all__ = [
    "CredentialVault",
    "VaultState",
    "VaultConfig",
    "SecretPolicy",
    "StorageMode",
    "DEFAULT_KDF_ITERATIONS",
    "LEGACY_KDF_ITERATIONS",
    "EncryptedCredential",
    "StorageBackend",
    "MemoryStorage",
    "FileStorage",
    "AutoLockPolicy",
    "rotate_records",
]
