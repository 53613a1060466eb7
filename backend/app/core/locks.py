"""
Per-variant locks for the reservation path.

Every mutation of a stock line (reserve, extend, release, commit, expiry,
adjustment) runs while holding the lock of its variant, so two carts never
race for the same units and the sweeper never expires a hold that is being
committed. Different variants never contend with each other.

asyncio.Lock hands the lock to waiters in arrival order, which gives the
FIFO tie-break between concurrent requests for the same variant. Waiting is
bounded; a request that cannot get the lock in time fails with
LockTimeoutError instead of blocking the handler indefinitely.

These locks serialize work inside one process. Across processes the row
lock taken with SELECT ... FOR UPDATE inside the same critical section does
the job.
"""
import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from backend.app.core.exceptions import LockTimeoutError
from backend.app.core.logging import get_logger
from backend.app.core.metrics import variant_lock_timeouts_total, variant_lock_wait_seconds

logger = get_logger(__name__)


class VariantLockRegistry:
    """Arena of locks keyed by variant id, created on first use and dropped when idle."""

    def __init__(self, timeout: float = 15.0):
        self.timeout = timeout
        self._locks: Dict[int, asyncio.Lock] = {}
        # holders plus waiters per variant; the lock goes away when this reaches 0
        self._users: Dict[int, int] = {}

    def tracked(self) -> int:
        """Number of variants that currently have a lock object."""
        return len(self._locks)

    def _checkout(self, variant_id: int) -> asyncio.Lock:
        lock = self._locks.get(variant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[variant_id] = lock
        self._users[variant_id] = self._users.get(variant_id, 0) + 1
        return lock

    def _checkin(self, variant_id: int) -> None:
        remaining = self._users[variant_id] - 1
        if remaining:
            self._users[variant_id] = remaining
        else:
            del self._users[variant_id]
            del self._locks[variant_id]

    def is_locked(self, variant_id: int) -> bool:
        lock = self._locks.get(variant_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, variant_id: int, timeout: Optional[float] = None) -> AsyncIterator[None]:
        """Hold the variant's lock for the duration of the block; always released on exit."""
        lock = self._checkout(variant_id)
        wait = self.timeout if timeout is None else timeout
        started = time.monotonic()
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=wait)
            except asyncio.TimeoutError:
                variant_lock_timeouts_total.inc()
                logger.warning("Variant lock timeout", variant_id=variant_id, timeout=wait)
                raise LockTimeoutError(variant_id, wait) from None
            variant_lock_wait_seconds.observe(time.monotonic() - started)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(variant_id)


_registry: Optional[VariantLockRegistry] = None


def get_variant_locks() -> VariantLockRegistry:
    """Process-wide lock registry (singleton)."""
    global _registry
    if _registry is None:
        from backend.app.core.settings import get_settings
        _registry = VariantLockRegistry(timeout=get_settings().LOCK_TIMEOUT_SECONDS)
    return _registry
