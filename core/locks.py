"""Redis distributed locks (Redlock) for webhook processing and renewal charges."""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog
from redlock import Redlock

from config import get_settings
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class LockError(Exception):
    """Raised when a lock is already held by another worker."""

    pass


class DistributedLock:
    """
    Thin async wrapper over redlock-py.

    Redlock calls block on network I/O, so they run in a worker thread.
    """

    def __init__(self, redlock: Optional[Redlock] = None, ttl_seconds: Optional[int] = None):
        self.settings = get_settings()
        self.redlock = redlock
        self.ttl_ms = (ttl_seconds or self.settings.redis_lock_timeout) * 1000

    def _get_redlock(self) -> Redlock:
        """Get or create Redlock instance."""
        if self.redlock is None:
            self.redlock = Redlock([self.settings.redis_url])
        return self.redlock

    @asynccontextmanager
    async def hold(self, resource: str) -> AsyncIterator[None]:
        """
        Hold the lock on ``resource`` for the duration of the block.

        Raises:
            LockError: If the lock could not be acquired
        """
        redlock = self._get_redlock()
        lock = await asyncio.to_thread(redlock.lock, resource, self.ttl_ms)
        if not lock:
            metrics.record_distributed_lock("failed")
            logger.warning("lock_acquisition_failed", resource=resource)
            raise LockError(f"Lock already held: {resource}")

        metrics.record_distributed_lock("acquired")
        logger.debug("lock_acquired", resource=resource)
        try:
            yield
        finally:
            await asyncio.to_thread(redlock.unlock, lock)
            logger.debug("lock_released", resource=resource)
