"""Per-workspace locks for reconcile and reset passes.

A Redis lock with a TTL is used when Redis is connected so that several
containers share one lock; otherwise a process-local asyncio lock. Locks
are never waited on: a held lock raises WorkspaceBusyError.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from redis.exceptions import LockError, RedisError

from roster.exceptions import WorkspaceBusyError
from roster.logging_config import get_logger

logger = get_logger(__name__)

RECONCILE = "reconcile"
RESET = "reset"


class WorkspaceLocks:
    def __init__(self, redis=None, ttl_seconds: int = 900) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._local: dict[tuple[str, int], asyncio.Lock] = {}

    @staticmethod
    def key(kind: str, workspace_id: int) -> str:
        return f"lock:{kind}:workspace:{workspace_id}"

    @asynccontextmanager
    async def hold(self, kind: str, workspace_id: int) -> AsyncIterator[None]:
        if self._redis is not None:
            async with self._hold_redis(kind, workspace_id):
                yield
        else:
            async with self._hold_local(kind, workspace_id):
                yield

    @asynccontextmanager
    async def _hold_local(self, kind: str, workspace_id: int) -> AsyncIterator[None]:
        lock = self._local.setdefault((kind, workspace_id), asyncio.Lock())
        if lock.locked():
            logger.warning("workspace_lock_busy", kind=kind, workspace_id=workspace_id)
            raise WorkspaceBusyError(kind, workspace_id)
        async with lock:
            yield

    @asynccontextmanager
    async def _hold_redis(self, kind: str, workspace_id: int) -> AsyncIterator[None]:
        lock = self._redis.lock(self.key(kind, workspace_id), timeout=self._ttl)
        acquired = await lock.acquire(blocking=False)
        if not acquired:
            logger.warning("workspace_lock_busy", kind=kind, workspace_id=workspace_id)
            raise WorkspaceBusyError(kind, workspace_id)
        try:
            yield
        finally:
            try:
                await lock.release()
            except (LockError, RedisError) as e:
                # Expired under us; the TTL already freed it.
                logger.warning(
                    "workspace_lock_release_failed",
                    kind=kind,
                    workspace_id=workspace_id,
                    error=str(e),
                )

