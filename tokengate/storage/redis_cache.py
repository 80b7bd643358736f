from __future__ import annotations

import secrets
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for the cross-process approval locks."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Delete the key only while it still holds our token, so a lock that
    # expired and was re-acquired elsewhere is never released by us.
    _RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release = self.client.register_script(self._RELEASE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def acquire_lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        """Try once to take ``key``; returns the owner token or None if held."""
        token = secrets.token_hex(16)
        acquired = await self.client.set(f"lock:{key}", token, nx=True, ex=ttl_seconds)
        return token if acquired else None

    async def release_lock(self, key: str, token: str) -> bool:
        result = await self._release(keys=[f"lock:{key}"], args=[token])
        return bool(result)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Exposes the same awaitable surface as RedisCache but runs sync Redis
    calls, so pytest's per-test event loops never bind a shared client.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release = self._sync_client.register_script(RedisCache._RELEASE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def acquire_lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        token = secrets.token_hex(16)
        acquired = self._sync_client.set(f"lock:{key}", token, nx=True, ex=ttl_seconds)
        return token if acquired else None

    async def release_lock(self, key: str, token: str) -> bool:
        return bool(self._release(keys=[f"lock:{key}"], args=[token]))

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
