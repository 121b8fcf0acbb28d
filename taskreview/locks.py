"""Per-task serialisation for version-allocating writes.

An in-process ``asyncio.Lock`` per task id always applies. With
``TASKREVIEW_REDIS_LOCK_ENABLED`` a Redis lock is held as well so several
worker processes sharing one database serialise on the same task.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from weakref import WeakValueDictionary

from .config import settings
from .errors import TaskLockTimeoutError

logger = logging.getLogger(__name__)

_local_locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()


def _local_lock(task_id: str) -> asyncio.Lock:
    lock = _local_locks.get(task_id)
    if lock is None:
        lock = asyncio.Lock()
        _local_locks[task_id] = lock
    return lock


def redis_lock_key(task_id: str) -> str:
    return f"lock:task:{task_id}"


@asynccontextmanager
async def task_lock(task_id: str) -> AsyncGenerator[None]:
    """Hold the lock for ``task_id`` for the duration of the block."""
    async with _local_lock(task_id):
        if not settings.redis_lock_enabled:
            yield
            return

        from .redis_client import get_redis_client

        redis = get_redis_client()
        lock = redis.lock(
            redis_lock_key(task_id),
            timeout=settings.redis_lock_timeout_seconds,
            blocking_timeout=settings.redis_lock_timeout_seconds,
        )
        logger.debug("Acquiring redis lock %s", redis_lock_key(task_id))
        if not await lock.acquire():
            logger.warning("Timed out waiting for redis lock %s", redis_lock_key(task_id))
            raise TaskLockTimeoutError(task_id)
        try:
            yield
        finally:
            await lock.release()
