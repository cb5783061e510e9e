"""
CredentialVault — Locally encrypted provider API keys behind a master secret.

Provides the public API for the Credential Vault:
- ``initialize(secret, mode)`` — create a vault and unlock it
- ``unlock(secret)`` / ``lock()`` — explicit state transitions
- ``store_credential`` / ``retrieve_credential`` / ``delete_credential``
- ``change_master_secret(current, new)`` — re-encrypt every record
- ``start_auto_lock()`` — background idle watchdog

State machine::

    LOCKED --initialize/unlock--> UNLOCKING --> UNLOCKED --lock/idle--> LOCKED

Security Note:
    Never log plaintext, ciphertext or key values. Only log provider ids,
    record counts and state transitions. Derived keys are kept in
    bytearrays and zeroed on lock (best effort inside a Python process).
"""
import time
import asyncio
import logging
from enum import Enum
from collections.abc import Callable
from typing import Optional

from cryptography.exceptions import InvalidTag

from ..exceptions import (
    CorruptRecordError,
    InvalidSecretError,
    LockedError,
    SecretChangePendingError,
    VaultAlreadyInitializedError,
    VaultBusyError,
)
from .autolock import AutoLockPolicy, watch_idle
from .config import StorageMode, VaultConfig
from .crypto import (
    EncryptedCredential,
    b64decode,
    b64encode,
    decode_record,
    derive_key,
    encode_record,
    generate_salt,
    open_credential,
    open_keyring,
    seal_credential,
    seal_keyring,
)
from .key_rotation import rotate_records
from .storage import MemoryStorage, StorageBackend

logger = logging.getLogger("byok.vault")

CANARY_KEY = "vault:canary"
NEXT_CANARY_KEY = "vault:canary:next"
REKEY_KEY = "vault:rekey"
CREDENTIAL_PREFIX = "vault:cred:"

_CANARY_PROVIDER = "vault-canary"
_CANARY_PLAINTEXT = "byok-vault-canary-v1"
_NEXT_CANARY_PROVIDER = "vault-canary-next"
_REKEY_PROVIDER = "vault-rekey"

Generation = tuple[str, int]


class VaultState(str, Enum):
    LOCKED = "locked"
    UNLOCKING = "unlocking"
    UNLOCKED = "unlocked"


class CredentialVault:
    """Encrypted credential store bound to a master secret.

    In ``PERSISTENT`` mode every credential is sealed into a self-describing
    record in the storage backend. The canary record (``vault:canary``) holds
    the current salt and iteration count and is what ``unlock`` verifies
    against. While a master secret change is in progress, a staged canary
    (``vault:canary:next``) carries the old keys sealed under the new secret,
    and ``vault:rekey`` carries the new key sealed under the old one, so
    either secret can finish or undo the change.

    In ``SESSION_ONLY`` mode nothing is ever written to storage: credentials
    live as plaintext in memory until the vault locks, and the canary is held
    in memory so the secret can still be verified on unlock.
    """

    def __init__(
        self,
        storage: Optional[StorageBackend] = None,
        config: Optional[VaultConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._storage = storage if storage is not None else MemoryStorage()
        self._config = config or VaultConfig()
        self._mode = self._config.storage_mode
        self._state = VaultState.LOCKED
        self._keys: dict[Generation, bytearray] = {}
        self._current: Optional[Generation] = None
        self._session_credentials: dict[str, str] = {}
        self._session_canary: Optional[EncryptedCredential] = None
        self._lock = asyncio.Lock()
        self._autolock = AutoLockPolicy(self._config.auto_lock_seconds, clock)
        self._watchdog: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> VaultState:
        self._expire_if_idle()
        return self._state

    @property
    def mode(self) -> StorageMode:
        return self._mode

    @property
    def is_unlocked(self) -> bool:
        return self.state is VaultState.UNLOCKED

    def _expire_if_idle(self) -> None:
        if self._state is VaultState.UNLOCKED and self._autolock.expired():
            logger.info(
                "Vault idle for %.0fs, auto-locking", self._autolock.idle_for(),
            )
            self._wipe()

    def _require_unlocked(self) -> None:
        self._expire_if_idle()
        if self._state is not VaultState.UNLOCKED:
            raise LockedError()
        self._autolock.touch()

    def _enter_unlocking(self) -> VaultState:
        """Claim the single unlock slot, returning the state to restore on failure."""
        self._expire_if_idle()
        if self._state is VaultState.UNLOCKING:
            raise VaultBusyError()
        prior = self._state
        self._state = VaultState.UNLOCKING
        return prior

    @staticmethod
    def _zero(keys: dict[Generation, bytearray]) -> None:
        for key in keys.values():
            key[:] = bytes(len(key))
        keys.clear()

    def _wipe(self) -> None:
        """Discard every derived key and decrypted credential."""
        self._zero(self._keys)
        self._current = None
        self._session_credentials.clear()
        self._state = VaultState.LOCKED

    @classmethod
    def _retain(cls, keys: dict[Generation, bytearray], generation: Generation) -> None:
        """Zero every key except the one for ``generation``."""
        kept = keys.pop(generation)
        cls._zero(keys)
        keys[generation] = kept

    def _install_keys(self, keys: dict[Generation, bytearray], current: Generation) -> None:
        self._zero(self._keys)
        self._keys = keys
        self._current = current
        self._state = VaultState.UNLOCKED
        self._autolock.touch()

    def _install_copy(self, keys: dict[Generation, bytearray], current: Generation) -> None:
        self._install_keys({gen: bytearray(key) for gen, key in keys.items()}, current)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_provider_id(provider_id: str) -> None:
        """Validate a provider id.

        Raises:
            ValueError: If provider_id is empty, too long, or contains ':'.
        """
        if not provider_id:
            raise ValueError("Provider id cannot be empty")
        if len(provider_id) > 255:
            raise ValueError("Provider id cannot exceed 255 characters")
        if ":" in provider_id:
            raise ValueError("Provider id cannot contain ':'")

    @staticmethod
    def _record_key(provider_id: str) -> str:
        return f"{CREDENTIAL_PREFIX}{provider_id}"

    @staticmethod
    async def _derive(secret: str, salt: bytes, iterations: int) -> bytearray:
        key = await asyncio.to_thread(derive_key, secret, salt, iterations)
        return bytearray(key)

    async def _load_record(self, storage_key: str) -> Optional[EncryptedCredential]:
        raw = await self._storage.get(storage_key)
        if raw is None:
            return None
        return decode_record(storage_key, raw)

    async def _load_canary(self) -> Optional[EncryptedCredential]:
        if self._mode is StorageMode.SESSION_ONLY:
            return self._session_canary
        return await self._load_record(CANARY_KEY)

    async def _has_pending_change(self) -> bool:
        if self._mode is StorageMode.SESSION_ONLY:
            return False
        return await self._storage.get(NEXT_CANARY_KEY) is not None

    async def _open_vault(self, secret: str) -> tuple[dict[Generation, bytearray], Generation]:
        """Derive the canary key and prove the secret opens it.

        A missing canary pays for one derivation too, and both failures raise
        the same InvalidSecretError. When an earlier secret change was
        interrupted, the secret that opens the live canary undoes it and the
        secret that opens the staged canary completes it.

        Returns:
            Keys by generation, and the generation new records are written in.
        """
        canary = await self._load_canary()
        staged = None
        if self._mode is StorageMode.PERSISTENT:
            staged = await self._load_record(NEXT_CANARY_KEY)
        if canary is None:
            await self._derive(secret, generate_salt(), self._config.kdf_iterations)
            raise InvalidSecretError()
        key = await self._derive(secret, canary.salt_bytes, canary.kdf_iterations)
        try:
            open_credential(canary, key)
        except InvalidTag as err:
            key[:] = bytes(len(key))
            if staged is None or staged.generation == canary.generation:
                raise InvalidSecretError() from err
            return await self._complete_change(secret, staged)
        keys = {canary.generation: key}
        if staged is not None:
            await self._undo_change(keys, canary, staged)
        return await self._derive_generations(secret, keys), canary.generation

    async def _complete_change(
        self, secret: str, staged: EncryptedCredential
    ) -> tuple[dict[Generation, bytearray], Generation]:
        """Carry an interrupted change forward with the new secret."""
        new_key = await self._derive(secret, staged.salt_bytes, staged.kdf_iterations)
        try:
            keys = open_keyring(staged, new_key)
        except InvalidTag as err:
            new_key[:] = bytes(len(new_key))
            raise InvalidSecretError() from err
        target = staged.generation
        keys[target] = new_key
        logger.warning("Completing an interrupted master secret change")
        stats = await rotate_records(
            self._storage,
            CREDENTIAL_PREFIX,
            keys,
            new_key,
            staged.salt_bytes,
            staged.kdf_iterations,
        )
        if stats["errors"]:
            logger.error(
                "Master secret change still pending: %d record(s) could not be re-encrypted",
                stats["errors"],
            )
        else:
            await self._commit_change(new_key, staged.salt_bytes, staged.kdf_iterations)
            self._retain(keys, target)
        return keys, target

    async def _undo_change(
        self,
        keys: dict[Generation, bytearray],
        canary: EncryptedCredential,
        staged: EncryptedCredential,
    ) -> None:
        """Roll an interrupted change back with the old secret.

        ``keys`` holds the live canary key and gains the staged key while any
        record still needs it.
        """
        if staged.generation != canary.generation:
            rekey = await self._load_record(REKEY_KEY)
            if rekey is not None:
                key = keys[canary.generation]
                try:
                    staged_keys = open_keyring(rekey, key)
                except InvalidTag as err:
                    raise CorruptRecordError(REKEY_KEY, "authentication failed") from err
                keys.update(staged_keys)
                logger.warning("Rolling back an interrupted master secret change")
                stats = await rotate_records(
                    self._storage,
                    CREDENTIAL_PREFIX,
                    keys,
                    key,
                    canary.salt_bytes,
                    canary.kdf_iterations,
                )
                if stats["errors"]:
                    logger.error(
                        "Master secret change still pending: %d record(s) could not be re-encrypted",
                        stats["errors"],
                    )
                    return
                for generation in staged_keys:
                    keys.pop(generation, None)
                self._zero(staged_keys)
        await self._clear_pending()

    async def _commit_change(self, key: bytes, salt: bytes, iterations: int) -> None:
        """Make the new generation live. Every record must already use it."""
        canary = seal_credential(_CANARY_PROVIDER, _CANARY_PLAINTEXT, key, salt, iterations)
        await self._storage.set(CANARY_KEY, encode_record(canary))
        await self._clear_pending()

    async def _clear_pending(self) -> None:
        # rekey first: a staged canary without it means nothing was rotated
        await self._storage.delete(REKEY_KEY)
        await self._storage.delete(NEXT_CANARY_KEY)

    async def _derive_generations(
        self, secret: str, keys: dict[Generation, bytearray]
    ) -> dict[Generation, bytearray]:
        """Derive keys for records written under older salts or work factors."""
        if self._mode is StorageMode.SESSION_ONLY:
            return keys
        for storage_key in await self._storage.list_keys(CREDENTIAL_PREFIX):
            raw = await self._storage.get(storage_key)
            if raw is None:
                continue
            try:
                record = decode_record(storage_key, raw)
            except CorruptRecordError as err:
                logger.warning("Skipping unreadable record: %s", err)
                continue
            if record.generation not in keys:
                logger.debug(
                    "Deriving key for older record generation (iterations=%d)",
                    record.kdf_iterations,
                )
                keys[record.generation] = await self._derive(
                    secret, record.salt_bytes, record.kdf_iterations,
                )
        return keys

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def is_initialized(self) -> bool:
        """Check whether a vault exists for the current storage mode."""
        if self._mode is StorageMode.SESSION_ONLY:
            return self._session_canary is not None
        return await self._storage.get(CANARY_KEY) is not None

    async def initialize(
        self, master_secret: str, mode: Optional[StorageMode] = None
    ) -> None:
        """Create a new vault generation and unlock it.

        Args:
            master_secret: User passphrase, checked against the secret policy.
            mode: Storage mode; defaults to ``VaultConfig.storage_mode``.

        Raises:
            WeakSecretError: If the secret fails the policy.
            VaultAlreadyInitializedError: If a persistent vault already exists.
            VaultBusyError: If an unlock is in flight.
        """
        mode = StorageMode(mode) if mode is not None else self._mode
        self._config.secret_policy.check(master_secret)
        prior = self._enter_unlocking()
        try:
            async with self._lock:
                if mode is StorageMode.PERSISTENT:
                    if await self._storage.get(CANARY_KEY) is not None:
                        raise VaultAlreadyInitializedError(
                            "A vault already exists in this storage backend"
                        )
                salt = generate_salt()
                iterations = self._config.kdf_iterations
                key = await self._derive(master_secret, salt, iterations)
                canary = seal_credential(
                    _CANARY_PROVIDER, _CANARY_PLAINTEXT, key, salt, iterations,
                )
                self._session_credentials.clear()
                self._mode = mode
                if mode is StorageMode.PERSISTENT:
                    await self._storage.set(CANARY_KEY, encode_record(canary))
                    self._session_canary = None
                else:
                    self._session_canary = canary
                self._install_keys({canary.generation: key}, canary.generation)
        except BaseException:
            if self._state is VaultState.UNLOCKING:
                self._state = prior
            raise
        logger.info(
            "Vault initialized (mode=%s, iterations=%d)", mode.value, iterations,
        )

    async def unlock(self, master_secret: str) -> None:
        """Re-derive the key from the master secret and verify it.

        Raises:
            VaultBusyError: If another unlock is in flight.
            InvalidSecretError: Wrong secret or no vault (indistinguishable).
            CorruptRecordError: If the canary record is malformed.
        """
        prior = self._enter_unlocking()
        try:
            async with self._lock:
                keys, current = await self._open_vault(master_secret)
                self._install_keys(keys, current)
        except BaseException:
            if self._state is VaultState.UNLOCKING:
                self._state = prior
            raise
        logger.info("Vault unlocked (%d key generation(s))", len(self._keys))
        if current[1] < self._config.kdf_iterations:
            logger.info(
                "Vault uses %d KDF iterations, below configured %d; "
                "change the master secret to upgrade",
                current[1], self._config.kdf_iterations,
            )

    async def lock(self) -> None:
        """Discard all key material. Idempotent."""
        async with self._lock:
            was_unlocked = self._state is VaultState.UNLOCKED
            self._wipe()
        if was_unlocked:
            logger.info("Vault locked")

    async def change_master_secret(self, current_secret: str, new_secret: str) -> dict:
        """Re-encrypt every credential under a key derived from ``new_secret``.

        The new canary is staged with the old keys sealed under it, and the
        new key is sealed under the old canary key, before any record is
        rewritten. The live canary is replaced last, and only when every
        record was re-encrypted. An interrupted change is rolled back by the
        next unlock with the old secret or completed by one with the new
        secret. Both keys stay loaded while records are rewritten, so reads
        never see a generation the vault cannot open.

        Returns:
            Stats dict with keys: total, rotated, errors, skipped. When errors
            is non-zero the change stays pending and both secrets unlock.

        Raises:
            WeakSecretError: If ``new_secret`` fails the policy.
            LockedError: If the vault is not unlocked.
            InvalidSecretError: If ``current_secret`` is wrong.
            SecretChangePendingError: If an earlier change could not be resolved.
        """
        self._config.secret_policy.check(new_secret)
        async with self._lock:
            self._require_unlocked()
            keys, current = await self._open_vault(current_secret)
            try:
                self._install_copy(keys, current)
                if await self._has_pending_change():
                    raise SecretChangePendingError()
                salt = generate_salt()
                iterations = self._config.kdf_iterations
                target = (b64encode(salt), iterations)
                new_key = await self._derive(new_secret, salt, iterations)
                keys[target] = new_key
                if self._mode is StorageMode.SESSION_ONLY:
                    self._session_canary = seal_credential(
                        _CANARY_PROVIDER, _CANARY_PLAINTEXT, new_key, salt, iterations,
                    )
                    count = len(self._session_credentials)
                    stats = {"total": count, "rotated": 0, "errors": 0, "skipped": count}
                else:
                    stats = await self._rotate_master_key(keys, current, target, salt)
                if not stats["errors"]:
                    self._retain(keys, target)
                self._install_copy(keys, target)
            finally:
                self._zero(keys)
        if stats["errors"]:
            logger.error(
                "Master secret change left pending: %d record(s) could not be re-encrypted",
                stats["errors"],
            )
        else:
            logger.info("Master secret changed: %s", stats)
        return stats

    async def _rotate_master_key(
        self,
        keys: dict[Generation, bytearray],
        current: Generation,
        target: Generation,
        salt: bytes,
    ) -> dict:
        new_key = keys[target]
        iterations = target[1]
        old_keys = {gen: key for gen, key in keys.items() if gen != target}
        staged = seal_keyring(_NEXT_CANARY_PROVIDER, old_keys, new_key, salt, iterations)
        rekey = seal_keyring(
            _REKEY_PROVIDER,
            {target: new_key},
            keys[current],
            b64decode(current[0]),
            current[1],
        )
        await self._storage.set(NEXT_CANARY_KEY, encode_record(staged))
        await self._storage.set(REKEY_KEY, encode_record(rekey))
        # both generations readable while records move
        self._install_copy(keys, target)
        stats = await rotate_records(
            self._storage, CREDENTIAL_PREFIX, keys, new_key, salt, iterations,
        )
        if not stats["errors"]:
            await self._commit_change(new_key, salt, iterations)
        return stats

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def store_credential(self, provider_id: str, plaintext_key: str) -> None:
        """Encrypt and persist a provider credential.

        Raises:
            LockedError: If the vault is not unlocked.
            ValueError: If provider_id is invalid.
        """
        self._validate_provider_id(provider_id)
        async with self._lock:
            self._require_unlocked()
            if self._mode is StorageMode.SESSION_ONLY:
                self._session_credentials[provider_id] = plaintext_key
            else:
                salt, iterations = self._current
                record = seal_credential(
                    provider_id,
                    plaintext_key,
                    self._keys[self._current],
                    b64decode(salt),
                    iterations,
                )
                await self._storage.set(
                    self._record_key(provider_id), encode_record(record),
                )
        logger.debug("Vault store: provider=%s", provider_id)

    async def retrieve_credential(self, provider_id: str) -> Optional[str]:
        """Decrypt and return a provider credential.

        Returns:
            Plaintext credential, or None if nothing is stored.

        Raises:
            LockedError: If the vault is not unlocked.
            CorruptRecordError: If the record is malformed or fails authentication.
        """
        self._validate_provider_id(provider_id)
        self._require_unlocked()
        if self._mode is StorageMode.SESSION_ONLY:
            return self._session_credentials.get(provider_id)
        storage_key = self._record_key(provider_id)
        raw = await self._storage.get(storage_key)
        # the vault may have locked while the read was in flight
        if self._state is not VaultState.UNLOCKED:
            raise LockedError()
        if raw is None:
            return None
        record = decode_record(storage_key, raw)
        if record.provider_id != provider_id:
            raise CorruptRecordError(storage_key, "provider id mismatch")
        key = self._keys.get(record.generation)
        if key is None:
            raise CorruptRecordError(storage_key, "unknown vault generation")
        try:
            return open_credential(record, key)
        except InvalidTag as err:
            raise CorruptRecordError(storage_key, "authentication failed") from err

    async def delete_credential(self, provider_id: str) -> bool:
        """Remove a stored credential. Irreversible.

        Returns:
            True if a credential existed.
        """
        self._validate_provider_id(provider_id)
        async with self._lock:
            self._require_unlocked()
            if self._mode is StorageMode.SESSION_ONLY:
                existed = self._session_credentials.pop(provider_id, None) is not None
            else:
                storage_key = self._record_key(provider_id)
                existed = await self._storage.get(storage_key) is not None
                await self._storage.delete(storage_key)
        logger.info("Vault delete: provider=%s existed=%s", provider_id, existed)
        return existed

    async def list_providers(self) -> list[str]:
        """List provider ids that have a stored credential."""
        self._require_unlocked()
        if self._mode is StorageMode.SESSION_ONLY:
            return sorted(self._session_credentials)
        keys = await self._storage.list_keys(CREDENTIAL_PREFIX)
        return [k[len(CREDENTIAL_PREFIX):] for k in keys]

    # ------------------------------------------------------------------
    # Auto-lock watchdog
    # ------------------------------------------------------------------

    def start_auto_lock(self, interval: Optional[float] = None) -> Optional[asyncio.Task]:
        """Start a background task that locks the vault once idle.

        Must be called from a running event loop. Returns None when auto-lock
        is disabled.
        """
        if not self._autolock.enabled:
            return None
        if self._watchdog is None or self._watchdog.done():
            self._watchdog = asyncio.get_running_loop().create_task(
                watch_idle(
                    self._autolock,
                    lambda: self._state is VaultState.UNLOCKED,
                    self.lock,
                    interval,
                )
            )
        return self._watchdog

    async def close(self) -> None:
        """Stop the watchdog and lock the vault."""
        if self._watchdog is not None:
            self._watchdog.cancel()
            try:
                await self._watchdog
            except asyncio.CancelledError:
                pass
            self._watchdog = None
        await self.lock()
