"""Shared fixtures: in-memory vault setup and fake provider transports."""
from typing import Optional

import pytest

from byok_chat.vault import CredentialVault, MemoryStorage, VaultConfig

SECRET = "Correct-Horse-42!"
OTHER_SECRET = "Wrong-Battery-17?"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStream:
    """ProviderStream that replays pre-cut chunks."""

    def __init__(self, chunks: list[bytes], error: Optional[BaseException] = None):
        self._chunks = list(chunks)
        self._error = error
        self.reads = 0
        self.close_calls = 0

    async def read(self) -> bytes:
        self.reads += 1
        if self._chunks:
            return self._chunks.pop(0)
        if self._error is not None:
            raise self._error
        return b""

    async def aclose(self) -> None:
        self.close_calls += 1


def split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


@pytest.fixture
def config():
    """Fast key derivation, no auto-lock."""
    return VaultConfig(kdf_iterations=1000, auto_lock_seconds=None)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def vault(storage, config):
    return CredentialVault(storage, config)


@pytest.fixture
def clock():
    return FakeClock()
