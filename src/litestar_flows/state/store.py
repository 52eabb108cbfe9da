"""Per-instance execution state on a durable key-value store.

The :class:`ContextStore` persists the execution context of each instance with
an expiry, keeps node checkpoints for rollback, guards instances with holder
token locks, tracks recent instances per definition and relays state change
notifications. Keys share one prefix (``workflow:state:`` by default)::

    workflow:state:<instance>                       execution context
    workflow:state:checkpoint:<instance>:<node>     checkpoint
    workflow:state:lock:<instance>                  lock token
    workflow:state:meta:<instance>                  free-form metadata
    workflow:state:tracking:<definition>            recency index
    workflow:events:<instance>                      notification channel
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from redis.exceptions import RedisError

from litestar_flows.core.context import ExecutionContext
from litestar_flows.exceptions import ContextNotFoundError, LockContentionError, LockLostError
from litestar_flows.state import codec

if TYPE_CHECKING:
    from uuid import UUID

    from litestar_flows.core.protocols import KeyValueStore

__all__ = ["Checkpoint", "ContextStore", "InstanceLock", "TrackedInstance"]

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_TTL = 86400
DEFAULT_CHECKPOINT_TTL = 3600
DEFAULT_LOCK_TTL = 30
DEFAULT_TRACKING_LIMIT = 1000


@dataclass(frozen=True)
class Checkpoint:
    """Snapshot of a context taken when entering a node."""

    node_id: str
    context: ExecutionContext
    timestamp: float


@dataclass(frozen=True)
class TrackedInstance:
    """Entry of the per-definition recency index."""

    instance_id: str
    status: str
    timestamp: float


class InstanceLock:
    """An acquired instance lock, renewed while its holder works.

    A heartbeat started by :meth:`ContextStore.lock` renews the expiry in the
    background. Holders also call :meth:`renew` at their own checkpoints so a
    lock that lapsed during a long pause is noticed before the next write.

    Attributes:
        instance_id: The locked instance.
        token: Holder token.
        ttl: Expiry applied on every renewal, in seconds.
        lost: Whether another caller took the lock over.
    """

    def __init__(self, store: ContextStore, instance_id: str | UUID, token: str, ttl: int) -> None:
        self.store = store
        self.instance_id = instance_id
        self.token = token
        self.ttl = ttl
        self.lost = False

    async def renew(self) -> None:
        """Extend the lock.

        Raises:
            LockLostError: If another caller holds the lock.
        """
        if self.lost or not await self.store.refresh_lock(self.instance_id, self.token, self.ttl):
            self.lost = True
            raise LockLostError(self.instance_id)

    async def keep_alive(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.renew()
            except LockLostError:
                logger.warning("Lock for instance %s was taken over by another holder", self.instance_id)
                return
            except (RedisError, OSError) as exc:
                logger.warning("Could not renew lock for instance %s: %s", self.instance_id, exc)


class ContextStore:
    """Persists, locks and tracks per-instance execution context.

    Args:
        backend: The key-value backend.
        key_prefix: Prefix of every key written.
        context_ttl: Expiry of the primary context in seconds.
        checkpoint_ttl: Expiry of checkpoints in seconds.
        lock_ttl: Default lock expiry in seconds.
        tracking_limit: Entries kept in each recency index.
        events_prefix: Prefix of the notification channels.

    Example:
        >>> store = ContextStore(MemoryKeyValueStore())
        >>> await store.save(instance_id, ExecutionContext(form_data={"age": 20}))
        >>> async with store.lock(instance_id):
        ...     context = await store.get(instance_id)
    """

    def __init__(
        self,
        backend: KeyValueStore,
        *,
        key_prefix: str = "workflow:state:",
        context_ttl: int = DEFAULT_CONTEXT_TTL,
        checkpoint_ttl: int = DEFAULT_CHECKPOINT_TTL,
        lock_ttl: int = DEFAULT_LOCK_TTL,
        tracking_limit: int = DEFAULT_TRACKING_LIMIT,
        events_prefix: str = "workflow:events:",
    ) -> None:
        self.backend = backend
        self.key_prefix = key_prefix
        self.context_ttl = context_ttl
        self.checkpoint_ttl = checkpoint_ttl
        self.lock_ttl = lock_ttl
        self.tracking_limit = tracking_limit
        self.events_prefix = events_prefix

    def _key(self, instance_id: str | UUID) -> str:
        return f"{self.key_prefix}{instance_id}"

    def _checkpoint_key(self, instance_id: str | UUID, node_id: str) -> str:
        return f"{self.key_prefix}checkpoint:{instance_id}:{node_id}"

    def _lock_key(self, instance_id: str | UUID) -> str:
        return f"{self.key_prefix}lock:{instance_id}"

    def _tracking_key(self, definition_id: str) -> str:
        return f"{self.key_prefix}tracking:{definition_id}"

    def _channel(self, instance_id: str | UUID) -> str:
        return f"{self.events_prefix}{instance_id}"

    async def save(self, instance_id: str | UUID, context: ExecutionContext, ttl: int | None = None) -> None:
        """Overwrite the stored context and refresh its expiry."""
        await self.backend.set(self._key(instance_id), codec.dumps(context.to_dict()), ttl=ttl or self.context_ttl)
        logger.debug("Context saved for instance %s", instance_id)

    async def get(self, instance_id: str | UUID) -> ExecutionContext | None:
        """Load the stored context.

        Returns:
            The context, or None if nothing is stored or it expired.

        Raises:
            ContextSerializationError: If the stored document cannot be decoded.
        """
        raw = await self.backend.get(self._key(instance_id))
        if raw is None:
            return None
        return ExecutionContext.from_dict(codec.loads(raw))

    async def exists(self, instance_id: str | UUID) -> bool:
        return await self.backend.get(self._key(instance_id)) is not None

    async def update(self, instance_id: str | UUID, **changes: Any) -> ExecutionContext:
        """Merge ``changes`` into the stored context.

        Top-level fields are overwritten; ``form_data`` and ``variables`` are
        merged key by key.

        Args:
            instance_id: The instance.
            **changes: ExecutionContext fields to change.

        Returns:
            The merged context, as saved.

        Raises:
            ContextNotFoundError: If no context is stored for the instance.
        """
        current = await self.get(instance_id)
        if current is None:
            raise ContextNotFoundError(instance_id)
        merged = current.to_dict()
        for key, value in changes.items():
            if key in {"form_data", "variables"}:
                merged[key] = {**merged[key], **(value or {})}
            else:
                merged[key] = value
        context = ExecutionContext.from_dict(merged)
        await self.save(instance_id, context)
        return context

    async def clear(self, instance_id: str | UUID) -> None:
        await self.backend.delete(self._key(instance_id), f"{self.key_prefix}meta:{instance_id}")
        logger.debug("Context cleared for instance %s", instance_id)

    async def extend_ttl(self, instance_id: str | UUID, seconds: int | None = None) -> bool:
        return await self.backend.expire(self._key(instance_id), seconds or self.context_ttl)

    async def get_ttl(self, instance_id: str | UUID) -> int:
        return await self.backend.ttl(self._key(instance_id))

    async def set_metadata(self, instance_id: str | UUID, metadata: dict[str, Any]) -> None:
        key = f"{self.key_prefix}meta:{instance_id}"
        current = await self.get_metadata(instance_id)
        await self.backend.set(key, codec.dumps({**current, **metadata}), ttl=self.context_ttl)

    async def get_metadata(self, instance_id: str | UUID) -> dict[str, Any]:
        raw = await self.backend.get(f"{self.key_prefix}meta:{instance_id}")
        return codec.loads(raw) if raw else {}

    async def checkpoint(self, instance_id: str | UUID, node_id: str, context: ExecutionContext) -> None:
        """Store a node checkpoint independent of the primary context."""
        document = {"node_id": node_id, "context": context.to_dict(), "timestamp": time.time()}
        await self.backend.set(
            self._checkpoint_key(instance_id, node_id), codec.dumps(document), ttl=self.checkpoint_ttl
        )
        logger.debug("Checkpoint saved for instance %s at node %s", instance_id, node_id)

    async def load_checkpoint(self, instance_id: str | UUID, node_id: str) -> Checkpoint | None:
        raw = await self.backend.get(self._checkpoint_key(instance_id, node_id))
        if raw is None:
            return None
        document = codec.loads(raw)
        return Checkpoint(
            node_id=document["node_id"],
            context=ExecutionContext.from_dict(document["context"]),
            timestamp=document["timestamp"],
        )

    async def list_checkpoints(self, instance_id: str | UUID) -> list[str]:
        """Return the node ids that have a checkpoint for the instance."""
        prefix = self._checkpoint_key(instance_id, "")
        keys = await self.backend.scan_keys(f"{prefix}*")
        return sorted(key[len(prefix) :] for key in keys)

    async def clear_checkpoints(self, instance_id: str | UUID) -> int:
        keys = await self.backend.scan_keys(f"{self._checkpoint_key(instance_id, '')}*")
        return await self.backend.delete(*keys) if keys else 0

    async def acquire_lock(self, instance_id: str | UUID, token: str, ttl: int | None = None) -> bool:
        """Take the instance lock if nobody holds it.

        Args:
            instance_id: The instance.
            token: Holder token; only this token can release the lock.
            ttl: Lock expiry in seconds.

        Returns:
            True if the lock was acquired.
        """
        return await self.backend.set(self._lock_key(instance_id), token, ttl=ttl or self.lock_ttl, nx=True)

    async def release_lock(self, instance_id: str | UUID, token: str) -> bool:
        """Release the instance lock if ``token`` still holds it."""
        return await self.backend.compare_and_delete(self._lock_key(instance_id), token)

    async def refresh_lock(self, instance_id: str | UUID, token: str, ttl: int | None = None) -> bool:
        """Extend the lock held by ``token``.

        A lock that expired without anybody claiming it is taken again.

        Returns:
            False if another token holds the lock.
        """
        ttl = ttl or self.lock_ttl
        key = self._lock_key(instance_id)
        if await self.backend.compare_and_expire(key, token, ttl):
            return True
        return await self.backend.set(key, token, ttl=ttl, nx=True)

    async def is_locked(self, instance_id: str | UUID) -> bool:
        return await self.backend.get(self._lock_key(instance_id)) is not None

    @asynccontextmanager
    async def lock(
        self,
        instance_id: str | UUID,
        *,
        ttl: int | None = None,
        wait_timeout: float = 0.0,
        poll_interval: float = 0.05,
    ) -> AsyncIterator[InstanceLock]:
        """Hold the instance lock for the duration of the block.

        The lock is renewed every third of its expiry until the block exits.

        Args:
            instance_id: The instance.
            ttl: Lock expiry in seconds.
            wait_timeout: Seconds to keep retrying while the lock is held
                elsewhere; 0 fails immediately.
            poll_interval: Seconds between acquisition attempts.

        Yields:
            The held lock.

        Raises:
            LockContentionError: If the lock could not be acquired in time.
        """
        ttl = ttl or self.lock_ttl
        token = uuid.uuid4().hex
        deadline = time.monotonic() + wait_timeout
        while not await self.acquire_lock(instance_id, token, ttl):
            if time.monotonic() >= deadline:
                raise LockContentionError(instance_id)
            await asyncio.sleep(poll_interval)
        held = InstanceLock(self, instance_id, token, ttl)
        heartbeat = asyncio.create_task(held.keep_alive(ttl / 3), name=f"flows-lock:{instance_id}")
        try:
            yield held
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
            if not await self.release_lock(instance_id, token):
                logger.warning("Lock for instance %s expired before release", instance_id)

    async def track_instance(self, instance_id: str | UUID, definition_id: str, status: str) -> None:
        """Record the instance in the bounded recency index of its definition."""
        key = self._tracking_key(definition_id)
        await self.backend.zadd(key, f"{instance_id}:{status}", time.time() * 1000)
        await self.backend.ztrim(key, self.tracking_limit)

    async def get_tracked_instances(self, definition_id: str, limit: int = 100) -> list[TrackedInstance]:
        ranked = await self.backend.zrevrange(self._tracking_key(definition_id), 0, limit - 1)
        tracked = []
        for member, score in ranked:
            instance_id, _, status = member.rpartition(":")
            tracked.append(TrackedInstance(instance_id=instance_id, status=status, timestamp=score))
        return tracked

    async def publish(self, instance_id: str | UUID, event: str, data: Any = None) -> None:
        """Notify subscribers of a state change.

        Delivery is best effort: a backend failure is logged and swallowed.
        """
        message = json.dumps(
            {"event": event, "instance_id": str(instance_id), "timestamp": time.time() * 1000, "data": data},
            default=str,
        )
        try:
            await self.backend.publish(self._channel(instance_id), message)
        except (RedisError, OSError) as exc:
            logger.warning("Could not publish %s for instance %s: %s", event, instance_id, exc)

    async def subscribe(
        self, instance_id: str | UUID, handler: Callable[[dict[str, Any]], Awaitable[None] | None]
    ) -> Callable[[], Awaitable[None]]:
        """Receive the state change notifications of an instance.

        Returns:
            An async callable that ends the subscription.
        """

        async def on_message(message: str) -> None:
            try:
                event = json.loads(message)
            except ValueError:
                logger.warning("Dropping malformed event on %s", self._channel(instance_id))
                return
            result = handler(event)
            if inspect.isawaitable(result):
                await result

        return await self.backend.subscribe(self._channel(instance_id), on_message)
