"""
Vault Auto-Lock — Idle timer that locks the vault after inactivity.

The timer is reset by every vault operation. Expiry is observed lazily at the
start of each operation, and optionally by a watchdog task that locks the
vault proactively.
"""
import time
import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Optional

logger = logging.getLogger("byok.vault")


class AutoLockPolicy:
    """Idle-duration tracker.

    Args:
        idle_timeout: Seconds of inactivity before the vault locks.
            ``None`` disables auto-lock.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        idle_timeout: Optional[float],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._last_activity = clock()

    @property
    def enabled(self) -> bool:
        return self.idle_timeout is not None

    def touch(self) -> None:
        """Reset the idle timer."""
        self._last_activity = self._clock()

    def idle_for(self) -> float:
        return self._clock() - self._last_activity

    def expired(self) -> bool:
        if self.idle_timeout is None:
            return False
        return self.idle_for() > self.idle_timeout

    def remaining(self) -> Optional[float]:
        if self.idle_timeout is None:
            return None
        return max(0.0, self.idle_timeout - self.idle_for())


async def watch_idle(
    policy: AutoLockPolicy,
    is_unlocked: Callable[[], bool],
    on_expire: Callable[[], Awaitable[None]],
    interval: Optional[float] = None,
) -> None:
    """Poll the policy and call ``on_expire`` once the idle threshold passes.

    Runs until cancelled. Polling interval defaults to a tenth of the timeout,
    bounded to [0.05, 30] seconds.
    """
    if not policy.enabled:
        return
    step = interval or min(30.0, max(0.05, policy.idle_timeout / 10))
    while True:
        await asyncio.sleep(step)
        if is_unlocked() and policy.expired():
            logger.info(
                "Vault idle for %.0fs, auto-locking", policy.idle_for(),
            )
            await on_expire()
