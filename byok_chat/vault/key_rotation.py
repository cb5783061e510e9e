"""
Vault Key Rotation — Re-encryption of credential records under a new key.

Used when the master secret changes. Records are rewritten one at a time;
each record is self-describing, so a run interrupted halfway leaves every
record readable by the generation it was written with. The operation is
idempotent: records already at the target generation are skipped.

Security Note:
    Plaintext exists in memory only during re-encryption of each record.
    Never log plaintext or ciphertext values.
"""
import logging

from cryptography.exceptions import InvalidTag

from ..exceptions import CorruptRecordError
from .crypto import (
    b64encode,
    decode_record,
    encode_record,
    open_credential,
    seal_credential,
)
from .storage import StorageBackend

logger = logging.getLogger("byok.vault")


async def rotate_records(
    storage: StorageBackend,
    prefix: str,
    old_keys: dict[tuple[str, int], bytearray],
    new_key: bytes,
    new_salt: bytes,
    new_iterations: int,
    batch_size: int = 50,
) -> dict:
    """Re-encrypt every record under ``prefix`` with ``new_key``.

    Args:
        storage: Backend holding the records.
        prefix: Key prefix of the credential records.
        old_keys: Derived keys by record generation ``(salt_b64, iterations)``.
        new_key: Key derived from the new master secret.
        new_salt: Salt ``new_key`` was derived with.
        new_iterations: Work factor ``new_key`` was derived with.
        batch_size: Number of records between progress log lines.

    Returns:
        Stats dict with keys: total, rotated, errors, skipped.
    """
    target = (b64encode(new_salt), new_iterations)
    stats = {"total": 0, "rotated": 0, "errors": 0, "skipped": 0}
    keys = await storage.list_keys(prefix)

    logger.info(
        "Starting credential re-encryption (%d record(s), iterations=%d)",
        len(keys), new_iterations,
    )

    for position, storage_key in enumerate(keys, start=1):
        raw = await storage.get(storage_key)
        if raw is None:
            continue
        stats["total"] += 1
        try:
            record = decode_record(storage_key, raw)
            if record.generation == target:
                stats["skipped"] += 1
                continue
            old_key = old_keys.get(record.generation)
            if old_key is None:
                raise CorruptRecordError(storage_key, "unknown vault generation")
            plaintext = open_credential(record, old_key)
            rotated = seal_credential(
                record.provider_id, plaintext, new_key, new_salt, new_iterations,
            )
            await storage.set(storage_key, encode_record(rotated))
            stats["rotated"] += 1
        except (CorruptRecordError, InvalidTag) as err:
            logger.error(
                "Error re-encrypting record key=%s: %s",
                storage_key, str(err) or "authentication failed",
            )
            stats["errors"] += 1

        if position % batch_size == 0:
            logger.info("Processed %d/%d record(s)", position, len(keys))

    logger.info("Credential re-encryption complete: %s", stats)
    return stats
