"""Per-conversation mutual exclusion.

The worker holds the lock for the serialization key of the conversation
(agent config, platform, external user) for the whole read-generate-append
sequence. Waiting is bounded; a lock that cannot be acquired in time raises
ConversationBusy so the job runner can requeue the job.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from uuid import uuid4

import redis.asyncio as redis_async

from setter_api.config import Settings
from setter_api.errors import ConversationBusy
from setter_api.logging_config import get_logger

logger = get_logger("conversation_lock")

LOCK_KEY_PREFIX = "setter:lock:"

# Delete only if the caller still owns the lock.
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class ConversationLocks(ABC):
    @abstractmethod
    def hold(self, key: str):
        """Async context manager holding the lock for `key`."""
        pass


class LocalConversationLocks(ConversationLocks):
    """asyncio locks; serializes conversations within one process."""

    def __init__(self, wait_seconds: float = 5.0):
        self.wait_seconds = wait_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.wait_seconds)
            except asyncio.TimeoutError as e:
                raise ConversationBusy(f"Conversation {key} is busy") from e
            try:
                yield
            finally:
                lock.release()
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                self._holders.pop(key, None)
                self._locks.pop(key, None)


class RedisConversationLocks(ConversationLocks):
    """SET NX PX lock with an owner token; works across processes."""

    def __init__(
        self,
        redis_client,
        *,
        ttl_seconds: float = 120.0,
        wait_seconds: float = 5.0,
        poll_interval_seconds: float = 0.1,
        sleep_func=asyncio.sleep,
    ):
        self.redis = redis_client
        self.ttl_ms = int(ttl_seconds * 1000)
        self.wait_seconds = wait_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.sleep_func = sleep_func

    async def _acquire(self, redis_key: str, token: str) -> bool:
        deadline = time.monotonic() + self.wait_seconds
        while True:
            if await self.redis.set(redis_key, token, nx=True, px=self.ttl_ms):
                return True
            if time.monotonic() >= deadline:
                return False
            await self.sleep_func(self.poll_interval_seconds)

    @asynccontextmanager
    async def hold(self, key: str):
        redis_key = f"{LOCK_KEY_PREFIX}{key}"
        token = uuid4().hex
        if not await self._acquire(redis_key, token):
            raise ConversationBusy(f"Conversation {key} is busy")
        try:
            yield
        finally:
            released = await self.redis.eval(RELEASE_SCRIPT, 1, redis_key, token)
            if not released:
                logger.warning(
                    "Conversation lock expired before release",
                    extra={"context": {"key": key, "ttl_ms": self.ttl_ms}},
                )


def build_conversation_locks(settings: Settings) -> ConversationLocks:
    if settings.redis_url:
        client = redis_async.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=2.0,
            socket_timeout=2.0,
        )
        logger.info("Using Redis conversation locks")
        return RedisConversationLocks(
            client,
            ttl_seconds=settings.conversation_lock_ttl_seconds,
            wait_seconds=settings.conversation_lock_wait_seconds,
        )
    return LocalConversationLocks(wait_seconds=settings.conversation_lock_wait_seconds)
