"""Domain events for the workflow lifecycle.

Events are emitted by name through an event bus implementing
``async emit(event_type, **payload)``. :class:`InMemoryEventBus` is the
in-process implementation; any object with the same ``emit`` signature can be
passed to the engine instead.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

__all__ = ["EventHandler", "InMemoryEventBus", "WorkflowEvent", "WorkflowEventType"]

logger = logging.getLogger(__name__)


class WorkflowEventType(StrEnum):
    """Names of the events emitted by the engine, dispatcher and processor."""

    WORKFLOW_STARTED = "workflow:started"
    WORKFLOW_COMPLETED = "workflow:completed"
    WORKFLOW_FAILED = "workflow:failed"
    WORKFLOW_WAITING = "workflow:waiting"
    WORKFLOW_PAUSED = "workflow:paused"
    WORKFLOW_RESUMED = "workflow:resumed"
    WORKFLOW_CANCELLED = "workflow:cancelled"
    NODE_ENTERED = "node:entered"
    NODE_COMPLETED = "node:completed"
    NODE_FAILED = "node:failed"
    ACTION_SUCCESS = "action:success"
    ACTION_FAILED = "action:failed"
    APPROVAL_REQUIRED = "approval:required"
    APPROVAL_RECEIVED = "approval:received"
    APPROVAL_ESCALATED = "approval:escalated"
    APPROVAL_REMINDER = "approval:reminder"


@dataclass
class WorkflowEvent:
    """An event delivered to subscribers.

    Attributes:
        event_type: Name of the event, e.g. ``workflow:completed``.
        payload: Event fields, e.g. ``instance_id`` and ``result``.
        timestamp: When the event was emitted.
    """

    event_type: str
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def instance_id(self) -> Any:
        return self.payload.get("instance_id")


EventHandler = Callable[[WorkflowEvent], Awaitable[None] | None]


class InMemoryEventBus:
    """In-process publish/subscribe bus.

    Handlers subscribe to an event name or to ``"*"`` for every event. A
    failing handler is logged and never affects the emitter.

    Example:
        >>> bus = InMemoryEventBus()
        >>> bus.subscribe("workflow:completed", on_completed)
        >>> await bus.emit("workflow:completed", instance_id=instance.id, result={})
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` for ``event_type``.

        Args:
            event_type: Event name or ``"*"``.
            handler: Sync or async callable receiving the :class:`WorkflowEvent`.

        Returns:
            A callable removing the subscription.
        """
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return unsubscribe

    async def emit(self, event_type: str, **payload: Any) -> None:
        event = WorkflowEvent(event_type=str(event_type), payload=payload)
        for handler in [*self._handlers.get(event.event_type, ()), *self._handlers.get("*", ())]:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler failed for %s", event.event_type)
