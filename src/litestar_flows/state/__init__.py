"""Execution state persistence: the context store and its backends."""

from __future__ import annotations

from litestar_flows.state.backends import MemoryKeyValueStore, RedisKeyValueStore
from litestar_flows.state.store import Checkpoint, ContextStore, InstanceLock, TrackedInstance

__all__ = [
    "Checkpoint",
    "ContextStore",
    "InstanceLock",
    "MemoryKeyValueStore",
    "RedisKeyValueStore",
    "TrackedInstance",
]
