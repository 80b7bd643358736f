import asyncio

import pytest

from tokengate.service.errors import ConflictError
from tokengate.service.locks import UserLocks


class FakeLockCache:
    """In-process stand-in for the Redis token lock calls."""

    def __init__(self):
        self.keys = {}
        self.released = []

    async def acquire_lock(self, key, ttl_seconds):
        if key in self.keys:
            return None
        token = f"token-{len(self.released)}-{len(self.keys)}"
        self.keys[key] = token
        return token

    async def release_lock(self, key, token):
        if self.keys.get(key) != token:
            return False
        del self.keys[key]
        self.released.append(key)
        return True


async def test_local_lock_serializes_same_user():
    locks = UserLocks(timeout_seconds=1.0)
    order = []

    async def critical(tag):
        async with locks.hold("user-1"):
            order.append(f"{tag}-in")
            await asyncio.sleep(0.05)
            order.append(f"{tag}-out")

    await asyncio.gather(critical("a"), critical("b"))

    assert order in (
        ["a-in", "a-out", "b-in", "b-out"],
        ["b-in", "b-out", "a-in", "a-out"],
    )


async def test_local_lock_does_not_block_other_users():
    locks = UserLocks(timeout_seconds=0.1)

    async with locks.hold("user-1"):
        async with locks.hold("user-2"):
            pass


async def test_local_lock_times_out_with_conflict():
    locks = UserLocks(timeout_seconds=0.05)

    async with locks.hold("user-1"):
        with pytest.raises(ConflictError):
            async with locks.hold("user-1"):
                pass

    # released after the outer block exits
    async with locks.hold("user-1"):
        pass


async def test_lock_released_when_body_raises():
    locks = UserLocks(timeout_seconds=0.05)

    with pytest.raises(RuntimeError):
        async with locks.hold("user-1"):
            raise RuntimeError("boom")

    async with locks.hold("user-1"):
        pass


async def test_cache_lock_acquire_and_release():
    cache = FakeLockCache()
    locks = UserLocks(cache, ttl_seconds=5, timeout_seconds=0.05)

    async with locks.hold("user-1"):
        assert "approval:user-1" in cache.keys
        with pytest.raises(ConflictError):
            async with locks.hold("user-1"):
                pass

    assert cache.keys == {}
    assert cache.released == ["approval:user-1"]


async def test_cache_lock_waits_for_holder():
    cache = FakeLockCache()
    locks = UserLocks(cache, ttl_seconds=5, timeout_seconds=1.0)
    order = []

    async def critical(tag):
        async with locks.hold("user-1"):
            order.append(tag)
            await asyncio.sleep(0.05)

    await asyncio.gather(critical("a"), critical("b"))

    assert sorted(order) == ["a", "b"]
    assert cache.released == ["approval:user-1", "approval:user-1"]
