"""
Vault Configuration — Key-derivation settings, secret policy and auto-lock.

Reads overrides from environment variables:
    BYOK_VAULT_KDF_ITERATIONS = <int>
    BYOK_VAULT_AUTO_LOCK_SECONDS = <float, 0 disables auto-lock>
    BYOK_VAULT_STORAGE_MODE = persistent | session_only
    BYOK_SECRET_MIN_LENGTH = <int>

Security Note:
    Never log the master secret or any derived key. Only log policy
    outcomes, iteration counts and state transitions.
"""
import os
import string
import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..exceptions import WeakSecretError

logger = logging.getLogger("byok.vault")

# PBKDF2-HMAC-SHA256 work factor for new records.
DEFAULT_KDF_ITERATIONS = 600_000
# Work factor assumed for records written before kdfIterations was persisted.
LEGACY_KDF_ITERATIONS = 100_000
DEFAULT_AUTO_LOCK_SECONDS = 900.0


class StorageMode(str, Enum):
    """Where encrypted credentials live."""

    SESSION_ONLY = "session_only"
    PERSISTENT = "persistent"


class SecretPolicy(BaseModel):
    """Minimum-entropy policy for master secrets."""

    min_length: int = Field(default=12, ge=1)
    require_mixed_case: bool = False
    require_digit: bool = False
    require_symbol: bool = False
    min_char_classes: int = Field(default=0, ge=0, le=4)

    def violations(self, secret: str) -> list[str]:
        """Return the list of rules the secret fails (empty when accepted)."""
        failures: list[str] = []
        has_lower = any(c.islower() for c in secret)
        has_upper = any(c.isupper() for c in secret)
        has_digit = any(c.isdigit() for c in secret)
        has_symbol = any(
            c in string.punctuation or (not c.isalnum() and not c.isspace())
            for c in secret
        )
        if len(secret) < self.min_length:
            failures.append(f"must be at least {self.min_length} characters")
        if self.require_mixed_case and not (has_lower and has_upper):
            failures.append("must mix upper and lower case letters")
        if self.require_digit and not has_digit:
            failures.append("must contain a digit")
        if self.require_symbol and not has_symbol:
            failures.append("must contain a symbol")
        classes = sum((has_lower, has_upper, has_digit, has_symbol))
        if classes < self.min_char_classes:
            failures.append(
                f"must use at least {self.min_char_classes} character classes"
            )
        return failures

    def check(self, secret: str) -> None:
        """Raise WeakSecretError if the secret fails any rule."""
        failures = self.violations(secret)
        if failures:
            logger.debug("Master secret rejected: %d rule(s) failed", len(failures))
            raise WeakSecretError(failures)


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    kdf_iterations: int = Field(default=DEFAULT_KDF_ITERATIONS, ge=1)
    auto_lock_seconds: Optional[float] = Field(default=DEFAULT_AUTO_LOCK_SECONDS)
    storage_mode: StorageMode = StorageMode.PERSISTENT
    secret_policy: SecretPolicy = Field(default_factory=SecretPolicy)

    @field_validator("auto_lock_seconds")
    @classmethod
    def validate_auto_lock(cls, v: Optional[float]) -> Optional[float]:
        """Zero or negative disables auto-lock."""
        if v is not None and v <= 0:
            return None
        return v

    @field_validator("kdf_iterations")
    @classmethod
    def warn_weak_iterations(cls, v: int) -> int:
        if v < LEGACY_KDF_ITERATIONS:
            logger.warning(
                "KDF iteration count %d is below the legacy minimum %d",
                v, LEGACY_KDF_ITERATIONS,
            )
        return v

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading overrides from environment.

        Returns:
            Populated VaultConfig instance.
        """
        values: dict = {}
        iterations = os.environ.get("BYOK_VAULT_KDF_ITERATIONS")
        if iterations is not None:
            values["kdf_iterations"] = int(iterations)
        auto_lock = os.environ.get("BYOK_VAULT_AUTO_LOCK_SECONDS")
        if auto_lock is not None:
            values["auto_lock_seconds"] = float(auto_lock)
        mode = os.environ.get("BYOK_VAULT_STORAGE_MODE")
        if mode is not None:
            values["storage_mode"] = StorageMode(mode.lower())
        min_length = os.environ.get("BYOK_SECRET_MIN_LENGTH")
        if min_length is not None:
            values["secret_policy"] = SecretPolicy(min_length=int(min_length))
        return cls(**values)
