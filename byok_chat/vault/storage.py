"""
Vault Storage — Async key/value backends for encrypted records.

Backends only ever see ciphertext records; they need read-after-write
consistency within a session and nothing more.
"""
import os
import base64
import asyncio
import logging
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

logger = logging.getLogger("byok.vault")


@runtime_checkable
class StorageBackend(Protocol):
    """Persistent key/value store used by the Credential Vault."""

    async def get(self, key: str) -> Optional[bytes]:
        ...

    async def set(self, key: str, value: bytes) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def list_keys(self, prefix: str = "") -> list[str]:
        ...


class MemoryStorage:
    """In-process storage, mainly for tests and ephemeral clients."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self.writes = 0

    async def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)
        self.writes += 1

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class FileStorage:
    """One file per key under a directory.

    Key names are base64url-encoded into file names; writes go through a
    temporary file and ``os.replace`` so a crash never leaves a half-written
    record behind.
    """

    _suffix = ".rec"

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)
        logger.debug("Vault file storage at %s", self._dir)

    def _path(self, key: str) -> Path:
        name = base64.urlsafe_b64encode(key.encode("utf-8")).decode("ascii")
        return self._dir / f"{name}{self._suffix}"

    @staticmethod
    def _key_from(path: Path) -> str:
        return base64.urlsafe_b64decode(path.stem.encode("ascii")).decode("utf-8")

    def _read(self, key: str) -> Optional[bytes]:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError:
            return None

    def _write(self, key: str, value: bytes) -> None:
        target = self._path(key)
        tmp = target.with_suffix(".tmp")
        with open(tmp, "wb") as fp:
            fp.write(value)
            fp.flush()
            os.fsync(fp.fileno())
        os.replace(tmp, target)

    def _remove(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def _scan(self, prefix: str) -> list[str]:
        keys = [self._key_from(p) for p in self._dir.glob(f"*{self._suffix}")]
        return sorted(k for k in keys if k.startswith(prefix))

    async def get(self, key: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: bytes) -> None:
        await asyncio.to_thread(self._write, key, value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._remove, key)

    async def list_keys(self, prefix: str = "") -> list[str]:
        return await asyncio.to_thread(self._scan, prefix)
