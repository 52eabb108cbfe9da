"""Key-value backends for the context store.

:class:`RedisKeyValueStore` is the production backend built on
``redis.asyncio``. :class:`MemoryKeyValueStore` provides the same primitives
inside one process for tests and single-node deployments.
"""

from __future__ import annotations

import asyncio
import contextlib
import fnmatch
import inspect
import logging
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis

if TYPE_CHECKING:
    from redis.commands.core import AsyncScript

__all__ = ["MemoryKeyValueStore", "MessageHandler", "RedisKeyValueStore"]

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str], Awaitable[None] | None]

# Deletes the key only while it still holds the caller's token.
_COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Refreshes the expiry only while the key still holds the caller's token.
_COMPARE_AND_EXPIRE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
else
    return 0
end
"""


async def _deliver(handler: MessageHandler, channel: str, message: str) -> None:
    try:
        result = handler(message)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Subscriber failed on channel %s", channel)


class RedisKeyValueStore:
    """Key-value backend on a Redis server.

    Args:
        client: An async Redis client created with ``decode_responses=True``.

    Example:
        >>> store = RedisKeyValueStore.from_url("redis://localhost:6379/0")
        >>> await store.set("greeting", "hello", ttl=60)
        True
    """

    def __init__(self, client: Redis) -> None:
        self._client = client
        self._compare_and_delete: AsyncScript = client.register_script(_COMPARE_AND_DELETE)
        self._compare_and_expire: AsyncScript = client.register_script(_COMPARE_AND_EXPIRE)

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisKeyValueStore:
        return cls(Redis.from_url(url, decode_responses=True, **kwargs))

    @property
    def client(self) -> Redis:
        return self._client

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str, *, ttl: int | None = None, nx: bool = False) -> bool:
        return bool(await self._client.set(key, value, ex=ttl, nx=nx))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._client.delete(*keys))

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        return bool(await self._compare_and_delete(keys=[key], args=[expected]))

    async def compare_and_expire(self, key: str, expected: str, ttl: int) -> bool:
        return bool(await self._compare_and_expire(keys=[key], args=[expected, ttl]))

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._client.expire(key, ttl))

    async def ttl(self, key: str) -> int:
        return int(await self._client.ttl(key))

    async def scan_keys(self, pattern: str) -> list[str]:
        return [key async for key in self._client.scan_iter(match=pattern)]

    async def zadd(self, key: str, member: str, score: float) -> None:
        await self._client.zadd(key, {member: score})

    async def ztrim(self, key: str, keep: int) -> None:
        await self._client.zremrangebyrank(key, 0, -(keep + 1))

    async def zrevrange(self, key: str, start: int, stop: int) -> list[tuple[str, float]]:
        ranked = await self._client.zrevrange(key, start, stop, withscores=True)
        return [(member, float(score)) for member, score in ranked]

    async def publish(self, channel: str, message: str) -> int:
        return int(await self._client.publish(channel, message))

    async def subscribe(self, channel: str, handler: MessageHandler) -> Callable[[], Awaitable[None]]:
        pubsub = self._client.pubsub()
        await pubsub.subscribe(channel)

        async def reader() -> None:
            async for message in pubsub.listen():
                if message.get("type") == "message":
                    await _deliver(handler, channel, message["data"])

        task = asyncio.create_task(reader(), name=f"flows-subscriber:{channel}")

        async def unsubscribe() -> None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

        return unsubscribe

    async def close(self) -> None:
        await self._client.aclose()


class MemoryKeyValueStore:
    """In-process key-value backend with expiry.

    All operations are serialized with an :class:`asyncio.Lock`, which makes
    set-if-absent and compare-and-delete atomic within one event loop.

    Args:
        clock: Monotonic clock in seconds, injectable for tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: dict[str, tuple[str, float | None]] = {}
        self._sorted: dict[str, dict[str, float]] = {}
        self._subscribers: dict[str, list[MessageHandler]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> tuple[str, float | None] | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= self._clock():
            del self._values[key]
            return None
        return entry

    def _expiry(self, ttl: int | None) -> float | None:
        return None if ttl is None else self._clock() + ttl

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, *, ttl: int | None = None, nx: bool = False) -> bool:
        async with self._lock:
            if nx and self._live(key) is not None:
                return False
            self._values[key] = (value, self._expiry(ttl))
            return True

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            deleted = 0
            for key in keys:
                if self._live(key) is not None:
                    del self._values[key]
                    deleted += 1
                elif self._sorted.pop(key, None) is not None:
                    deleted += 1
            return deleted

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        async with self._lock:
            entry = self._live(key)
            if entry is None or entry[0] != expected:
                return False
            del self._values[key]
            return True

    async def compare_and_expire(self, key: str, expected: str, ttl: int) -> bool:
        async with self._lock:
            entry = self._live(key)
            if entry is None or entry[0] != expected:
                return False
            self._values[key] = (expected, self._expiry(ttl))
            return True

    async def expire(self, key: str, ttl: int) -> bool:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._values[key] = (entry[0], self._expiry(ttl))
            return True

    async def ttl(self, key: str) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry[1] is None:
                return -1
            return max(0, round(entry[1] - self._clock()))

    async def scan_keys(self, pattern: str) -> list[str]:
        async with self._lock:
            keys = [key for key in list(self._values) if self._live(key) is not None]
            return [key for key in keys if fnmatch.fnmatchcase(key, pattern)]

    async def zadd(self, key: str, member: str, score: float) -> None:
        async with self._lock:
            self._sorted.setdefault(key, {})[member] = score

    async def ztrim(self, key: str, keep: int) -> None:
        async with self._lock:
            members = self._sorted.get(key)
            if not members or len(members) <= keep:
                return
            ranked = sorted(members.items(), key=lambda item: (item[1], item[0]))
            self._sorted[key] = dict(ranked[len(ranked) - keep :]) if keep > 0 else {}

    async def zrevrange(self, key: str, start: int, stop: int) -> list[tuple[str, float]]:
        async with self._lock:
            ranked = sorted(self._sorted.get(key, {}).items(), key=lambda item: (item[1], item[0]), reverse=True)
            return ranked[start:] if stop == -1 else ranked[start : stop + 1]

    async def publish(self, channel: str, message: str) -> int:
        handlers = list(self._subscribers.get(channel, ()))
        for handler in handlers:
            await _deliver(handler, channel, message)
        return len(handlers)

    async def subscribe(self, channel: str, handler: MessageHandler) -> Callable[[], Awaitable[None]]:
        self._subscribers[channel].append(handler)

        async def unsubscribe() -> None:
            if handler in self._subscribers[channel]:
                self._subscribers[channel].remove(handler)

        return unsubscribe

    async def close(self) -> None:
        async with self._lock:
            self._values.clear()
            self._sorted.clear()
            self._subscribers.clear()
