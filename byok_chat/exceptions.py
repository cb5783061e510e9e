"""BYOK Chat exceptions.

Vault errors always propagate to the caller: they gate access to credentials.
Provider failures live in ``byok_chat.providers.errors``.
"""


class VaultError(Exception):
    """Base exception for all Credential Vault errors."""


class WeakSecretError(VaultError):
    """Master secret does not satisfy the configured secret policy."""

    def __init__(self, failures: list[str]) -> None:
        self.failures = list(failures)
        super().__init__(
            "Master secret rejected by policy: " + "; ".join(self.failures)
        )


class InvalidSecretError(VaultError):
    """Master secret could not unlock the vault.

    Raised with the same message whether the secret was wrong or no vault
    exists, so callers cannot probe for stored accounts.
    """

    def __init__(self, message: str = "Unable to unlock vault") -> None:
        super().__init__(message)


class LockedError(VaultError):
    """Operation requires an unlocked vault."""

    def __init__(self, message: str = "Vault is locked") -> None:
        super().__init__(message)


class CorruptRecordError(VaultError):
    """A stored record is malformed or failed authentication after unlock."""

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(f"Corrupt vault record {key}: {reason}")


class VaultBusyError(VaultError):
    """Another unlock operation is already in flight."""

    def __init__(self, message: str = "Vault unlock already in progress") -> None:
        super().__init__(message)


class SecretChangePendingError(VaultError):
    """An interrupted master secret change could not be resolved.

    Some records failed to re-encrypt; both the old and the new secret keep
    unlocking the vault until they are repaired or deleted.
    """

    def __init__(
        self, message: str = "A previous master secret change is still pending"
    ) -> None:
        super().__init__(message)


class VaultAlreadyInitializedError(VaultError):
    """A persistent vault already exists in the storage backend."""


class PricingUnavailable(Exception):
    """No price is known for a provider/model pair.

    Non-fatal: returned on ``CostEstimate.unavailable`` instead of raised,
    since cost estimation must never block a chat send.
    """

    def __init__(self, provider_id: str, model_id: str) -> None:
        self.provider_id = provider_id
        self.model_id = model_id
        super().__init__(
            f"No pricing for provider={provider_id} model={model_id}"
        )
