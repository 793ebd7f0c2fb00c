import asyncio

import pytest

from setter_api.config import Settings
from setter_api.errors import ConversationBusy
from setter_api.services.conversation_lock import (
    LocalConversationLocks,
    RedisConversationLocks,
    build_conversation_locks,
)


class FakeRedis:
    """Just enough of redis.asyncio for SET NX PX and the release script."""

    def __init__(self):
        self.values = {}

    async def set(self, key, value, nx=False, px=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    async def eval(self, script, numkeys, key, token):
        if self.values.get(key) == token:
            del self.values[key]
            return 1
        return 0


class TestLocalConversationLocks:
    def test_serializes_same_key(self):
        locks = LocalConversationLocks(wait_seconds=1)
        events = []

        async def worker(name):
            async with locks.hold("conversation:a"):
                events.append(f"{name}-start")
                await asyncio.sleep(0.01)
                events.append(f"{name}-end")

        async def main():
            await asyncio.gather(worker("one"), worker("two"))

        asyncio.run(main())

        assert events == ["one-start", "one-end", "two-start", "two-end"]

    def test_busy_after_wait_timeout(self):
        locks = LocalConversationLocks(wait_seconds=0.01)

        async def main():
            async with locks.hold("conversation:a"):
                async with locks.hold("conversation:a"):
                    pass

        with pytest.raises(ConversationBusy):
            asyncio.run(main())

    def test_different_keys_do_not_block(self):
        locks = LocalConversationLocks(wait_seconds=0.01)

        async def main():
            async with locks.hold("conversation:a"):
                async with locks.hold("conversation:b"):
                    return True

        assert asyncio.run(main()) is True

    def test_released_locks_are_forgotten(self):
        locks = LocalConversationLocks()

        async def main():
            async with locks.hold("conversation:a"):
                pass

        asyncio.run(main())

        assert locks._locks == {}
        assert locks._holders == {}


class TestRedisConversationLocks:
    def test_acquire_and_release(self):
        redis_client = FakeRedis()
        locks = RedisConversationLocks(redis_client, ttl_seconds=5, wait_seconds=0.05)

        async def main():
            async with locks.hold("conversation:a"):
                assert "setter:lock:conversation:a" in redis_client.values

        asyncio.run(main())

        assert redis_client.values == {}

    def test_busy_when_held_elsewhere(self):
        redis_client = FakeRedis()
        redis_client.values["setter:lock:conversation:a"] = "other-owner"
        locks = RedisConversationLocks(redis_client, wait_seconds=0.02, poll_interval_seconds=0.005)

        async def main():
            async with locks.hold("conversation:a"):
                pass

        with pytest.raises(ConversationBusy):
            asyncio.run(main())
        assert redis_client.values["setter:lock:conversation:a"] == "other-owner"

    def test_does_not_delete_lock_taken_over_after_expiry(self):
        redis_client = FakeRedis()
        locks = RedisConversationLocks(redis_client, wait_seconds=0.05)

        async def main():
            async with locks.hold("conversation:a"):
                redis_client.values["setter:lock:conversation:a"] = "new-owner"

        asyncio.run(main())

        assert redis_client.values["setter:lock:conversation:a"] == "new-owner"


class TestBuildConversationLocks:
    def test_local_without_redis_url(self):
        locks = build_conversation_locks(Settings(redis_url=None, conversation_lock_wait_seconds=3))
        assert isinstance(locks, LocalConversationLocks)
        assert locks.wait_seconds == 3

    def test_redis_with_url(self):
        locks = build_conversation_locks(Settings(redis_url="redis://localhost:6379/0"))
        assert isinstance(locks, RedisConversationLocks)
