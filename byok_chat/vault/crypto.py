"""
Vault Crypto Core — Key derivation, record sealing and record serialization.

Every credential is sealed independently:
    PBKDF2-HMAC-SHA256(master_secret, salt, iterations) → DerivedKey
    AES-256-GCM(DerivedKey, nonce, plaintext, aad=provider_id) → ciphertext

Records are self-describing (salt, nonce and iteration count travel with the
ciphertext) so records written by different vault generations can coexist.

Security Note:
    Never log plaintext, ciphertext or key values.
    Nonces are random 96-bit; a fresh one is drawn for every seal.
"""
import os
import base64
import logging
from datetime import datetime, timezone

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import CorruptRecordError
from .config import LEGACY_KDF_ITERATIONS

logger = logging.getLogger("byok.vault")

NONCE_SIZE = 12  # 96-bit nonce
SALT_SIZE = 16
KEY_LENGTH = 32  # AES-256
TAG_SIZE = 16  # GCM tag


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def generate_salt() -> bytes:
    """Return a fresh random salt for a new vault generation."""
    return os.urandom(SALT_SIZE)


def derive_key(master_secret: str, salt: bytes, iterations: int) -> bytes:
    """Derive a 32-byte encryption key using PBKDF2-HMAC-SHA256.

    Args:
        master_secret: User passphrase.
        salt: Per-generation random salt.
        iterations: PBKDF2 work factor.

    Returns:
        32-byte derived key.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(master_secret.encode("utf-8"))


# ---------------------------------------------------------------------------
# Persisted record
# ---------------------------------------------------------------------------

class EncryptedCredential(BaseModel):
    """Persisted, self-describing encrypted credential record."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    provider_id: str = Field(alias="providerId", min_length=1)
    ciphertext: str
    nonce: str
    salt: str
    kdf_iterations: int = Field(
        default=LEGACY_KDF_ITERATIONS, alias="kdfIterations", ge=1
    )
    created_at: datetime = Field(alias="createdAt")

    @field_validator("ciphertext")
    @classmethod
    def validate_ciphertext(cls, v: str) -> str:
        if len(b64decode(v)) < TAG_SIZE:
            raise ValueError("ciphertext shorter than authentication tag")
        return v

    @field_validator("nonce")
    @classmethod
    def validate_nonce(cls, v: str) -> str:
        if len(b64decode(v)) != NONCE_SIZE:
            raise ValueError(f"nonce must be {NONCE_SIZE} bytes")
        return v

    @field_validator("salt")
    @classmethod
    def validate_salt(cls, v: str) -> str:
        if not b64decode(v):
            raise ValueError("salt cannot be empty")
        return v

    @property
    def generation(self) -> tuple[str, int]:
        """Identify the DerivedKey able to open this record."""
        return (self.salt, self.kdf_iterations)

    @property
    def salt_bytes(self) -> bytes:
        return b64decode(self.salt)


def encode_record(record: EncryptedCredential) -> bytes:
    """Serialize a record to its persisted JSON form."""
    return orjson.dumps(record.model_dump(by_alias=True, mode="json"))


def decode_record(key: str, raw: bytes) -> EncryptedCredential:
    """Parse a persisted record.

    Raises:
        CorruptRecordError: If the payload is not a complete, well-formed record.
    """
    try:
        return EncryptedCredential.model_validate(orjson.loads(raw))
    except orjson.JSONDecodeError as err:
        raise CorruptRecordError(key, "not valid JSON") from err
    except ValidationError as err:
        fields = ", ".join(
            ".".join(str(p) for p in e["loc"]) for e in err.errors()
        )
        raise CorruptRecordError(key, f"invalid fields: {fields}") from err


# ---------------------------------------------------------------------------
# Sealing
# ---------------------------------------------------------------------------

def seal_credential(
    provider_id: str,
    plaintext: str,
    key: bytes,
    salt: bytes,
    iterations: int,
) -> EncryptedCredential:
    """Encrypt a credential under ``key`` with a fresh nonce.

    The provider id is bound as associated data, so a record moved to another
    provider slot fails authentication.
    """
    nonce = os.urandom(NONCE_SIZE)
    cipher = AESGCM(bytes(key))
    ct = cipher.encrypt(nonce, plaintext.encode("utf-8"), provider_id.encode("utf-8"))
    return EncryptedCredential(
        provider_id=provider_id,
        ciphertext=b64encode(ct),
        nonce=b64encode(nonce),
        salt=b64encode(salt),
        kdf_iterations=iterations,
        created_at=datetime.now(timezone.utc),
    )


def open_credential(record: EncryptedCredential, key: bytes) -> str:
    """Decrypt a record.

    Raises:
        cryptography.exceptions.InvalidTag: If the key is wrong or the record
            was tampered with.
    """
    cipher = AESGCM(bytes(key))
    plaintext = cipher.decrypt(
        b64decode(record.nonce),
        b64decode(record.ciphertext),
        record.provider_id.encode("utf-8"),
    )
    return plaintext.decode("utf-8")


# ---------------------------------------------------------------------------
# Keyrings
# ---------------------------------------------------------------------------

def seal_keyring(
    provider_id: str,
    keys: dict[tuple[str, int], bytes],
    key: bytes,
    salt: bytes,
    iterations: int,
) -> EncryptedCredential:
    """Seal a set of derived keys (by generation) under ``key``.

    Used while a master-secret change is pending, so that either secret can
    recover the keys of the other generation.
    """
    entries = [
        {"salt": gen_salt, "kdfIterations": gen_iterations, "key": b64encode(bytes(k))}
        for (gen_salt, gen_iterations), k in keys.items()
    ]
    return seal_credential(
        provider_id, orjson.dumps(entries).decode("utf-8"), key, salt, iterations,
    )


def open_keyring(record: EncryptedCredential, key: bytes) -> dict[tuple[str, int], bytearray]:
    """Open a sealed keyring.

    Raises:
        cryptography.exceptions.InvalidTag: If ``key`` does not open the record.
    """
    entries = orjson.loads(open_credential(record, key))
    return {
        (entry["salt"], entry["kdfIterations"]): bytearray(b64decode(entry["key"]))
        for entry in entries
    }
