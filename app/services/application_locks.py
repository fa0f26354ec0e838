from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from redis.asyncio import Redis
from redis.exceptions import LockError

from app.core.errors import ApplicationBusyError
from app.core.settings import Settings, settings as app_settings
from app.utils.redis_client import get_redis_client

logger = logging.getLogger(__name__)


class ApplicationLocks:
    """One critical section per application number.

    Within a process an ``asyncio.Lock`` per key serializes handlers; with the
    ``redis`` backend a Redis lock is taken as well so several workers agree.
    Idle keys are dropped so the registry does not grow with traffic.
    """

    def __init__(
        self,
        *,
        cfg: Settings | None = None,
        redis_factory: Callable[[], Redis] = get_redis_client,
    ) -> None:
        cfg = cfg or app_settings
        self.backend = cfg.application_lock_backend
        self.timeout = cfg.application_lock_timeout_seconds
        self._redis_factory = redis_factory
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                if self.backend == "redis":
                    async with self._distributed(key):
                        yield
                else:
                    yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    @asynccontextmanager
    async def _distributed(self, key: str) -> AsyncIterator[None]:
        redis_lock = self._redis_factory().lock(
            f"ess-bridge:application:{key}",
            timeout=self.timeout,
            blocking_timeout=self.timeout,
        )
        if not await redis_lock.acquire():
            raise ApplicationBusyError(
                "Application is being processed elsewhere", details={"application_number": key}
            )
        try:
            yield
        finally:
            try:
                await redis_lock.release()
            except LockError:
                logger.warning("Redis lock for %s expired before release", key)


application_locks = ApplicationLocks()
