from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from typing import AsyncIterator, Dict, Optional

from tokengate.logging import get_logger
from tokengate.service.errors import ConflictError
from tokengate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

_POLL_INTERVAL = 0.02


class UserLocks:
    """Per-user mutual exclusion for approval.

    Uses a Redis token lock when a cache is configured so that every process
    sharing the backend is serialized; otherwise a process-local lock table.
    Acquisition polls until ``timeout_seconds`` and then raises ConflictError.
    """

    def __init__(
        self,
        cache: "RedisCache | SyncRedisCache | None" = None,
        *,
        ttl_seconds: int = 30,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._local: Dict[str, threading.Lock] = {}
        self._table_lock = threading.Lock()

    def _local_lock(self, user_id: str) -> threading.Lock:
        with self._table_lock:
            lock = self._local.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._local[user_id] = lock
            return lock

    @contextlib.asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        if self.cache is not None:
            async with self._hold_redis(user_id):
                yield
            return
        lock = self._local_lock(user_id)
        deadline = time.monotonic() + self.timeout_seconds
        # non-blocking acquire so the event loop keeps running while we wait
        while not lock.acquire(blocking=False):
            if time.monotonic() >= deadline:
                logger.warning("approval_lock_timeout", user_id=user_id, backend="local")
                raise ConflictError("approval already in progress for this user")
            await asyncio.sleep(_POLL_INTERVAL)
        try:
            yield
        finally:
            lock.release()

    @contextlib.asynccontextmanager
    async def _hold_redis(self, user_id: str) -> AsyncIterator[None]:
        key = f"approval:{user_id}"
        deadline = time.monotonic() + self.timeout_seconds
        token: Optional[str] = await self.cache.acquire_lock(key, self.ttl_seconds)
        while token is None:
            if time.monotonic() >= deadline:
                logger.warning("approval_lock_timeout", user_id=user_id, backend="redis")
                raise ConflictError("approval already in progress for this user")
            await asyncio.sleep(_POLL_INTERVAL)
            token = await self.cache.acquire_lock(key, self.ttl_seconds)
        try:
            yield
        finally:
            released = await self.cache.release_lock(key, token)
            if not released:
                # lock outlived its TTL and may now belong to someone else
                logger.warning("approval_lock_expired_before_release", user_id=user_id)
