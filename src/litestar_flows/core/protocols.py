"""Core protocols for litestar-flows.

This module defines the Protocol-based interfaces of the engine's external
collaborators: where definitions come from, how actions are performed, where
events go, the durable keyed store behind the context store, and the
relational store holding instances, history, scheduled tasks and approvals.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence
    from datetime import datetime
    from uuid import UUID

    from litestar_flows.core.context import ExecutionContext
    from litestar_flows.core.definition import WorkflowDefinition
    from litestar_flows.core.models import (
        ApprovalData,
        HistoryEntry,
        ScheduledTaskData,
        WorkflowInstanceData,
    )
    from litestar_flows.core.types import HistoryAction, InstanceStatus, NodeType, TaskType, TriggerType


__all__ = ["ActionHandler", "DefinitionSource", "EventBus", "KeyValueStore", "WorkflowStore"]


@runtime_checkable
class DefinitionSource(Protocol):
    """Read-only source of workflow definitions.

    The engine fetches the definition by id before every node step, so a
    source must always return the current version.
    """

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        """Fetch a definition by id.

        Args:
            definition_id: The definition identifier.

        Returns:
            The definition, or None if it does not exist.
        """
        ...


@runtime_checkable
class ActionHandler(Protocol):
    """Performs one kind of side effect for action nodes.

    Handlers receive configuration whose strings were already template
    resolved. They may raise :class:`~litestar_flows.exceptions.ActionError`
    with a status code to influence retries.

    Example:
        >>> class EmailHandler:
        ...     async def handle(self, action_type, config, context):
        ...         await smtp.send(config["to"], config["subject"], config["body"])
        ...         return {"sent": True}
    """

    async def handle(self, action_type: str, config: dict[str, Any], context: ExecutionContext) -> Any:
        """Perform the action.

        Args:
            action_type: The action type being performed.
            config: Resolved action configuration.
            context: The instance's execution context.

        Returns:
            A result merged into the instance variables.
        """
        ...


@runtime_checkable
class EventBus(Protocol):
    """Receives lifecycle events."""

    async def emit(self, event_type: str, **payload: Any) -> None: ...


@runtime_checkable
class KeyValueStore(Protocol):
    """Durable keyed store with expiry, atomic primitives and pub/sub.

    Values are strings; serialization is the caller's concern.
    """

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, *, ttl: int | None = None, nx: bool = False) -> bool:
        """Store ``value`` under ``key``.

        Args:
            key: The key.
            value: The value.
            ttl: Expiry in seconds.
            nx: Only set the key if it does not exist.

        Returns:
            True if the value was written.
        """
        ...

    async def delete(self, *keys: str) -> int: ...

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Atomically delete ``key`` if it currently holds ``expected``."""
        ...

    async def compare_and_expire(self, key: str, expected: str, ttl: int) -> bool:
        """Atomically reset the expiry of ``key`` if it currently holds ``expected``."""
        ...

    async def expire(self, key: str, ttl: int) -> bool: ...

    async def ttl(self, key: str) -> int:
        """Return the remaining seconds, -1 without expiry, -2 if missing."""
        ...

    async def scan_keys(self, pattern: str) -> list[str]: ...

    async def zadd(self, key: str, member: str, score: float) -> None: ...

    async def ztrim(self, key: str, keep: int) -> None:
        """Keep only the ``keep`` highest-scored members of a sorted set."""
        ...

    async def zrevrange(self, key: str, start: int, stop: int) -> list[tuple[str, float]]:
        """Return members with their scores, highest score first."""
        ...

    async def publish(self, channel: str, message: str) -> int: ...

    async def subscribe(
        self, channel: str, handler: Callable[[str], Awaitable[None] | None]
    ) -> Callable[[], Awaitable[None]]:
        """Deliver messages published on ``channel`` to ``handler``.

        Returns:
            An async callable that cancels the subscription.
        """
        ...

    async def close(self) -> None: ...


class WorkflowStore(Protocol):
    """Relational store for instances, history, scheduled tasks and approvals."""

    async def create_instance(
        self,
        *,
        definition_id: str,
        context: ExecutionContext,
        current_node_id: str | None,
        triggered_by: TriggerType,
        trigger_data: dict[str, Any],
        user_id: str | None,
        started_at: datetime,
    ) -> WorkflowInstanceData: ...

    async def get_instance(self, instance_id: UUID) -> WorkflowInstanceData | None: ...

    async def transition(
        self,
        instance_id: UUID,
        to_status: InstanceStatus,
        **values: Any,
    ) -> WorkflowInstanceData:
        """Move an instance to ``to_status`` if the state machine allows it.

        Raises:
            InvalidTransitionError: If the current status does not allow it.
            WorkflowInstanceNotFoundError: If the instance does not exist.
        """
        ...

    async def update_instance(self, instance_id: UUID, **values: Any) -> None: ...

    async def find_instances(
        self, *, status: InstanceStatus | None = None, definition_id: str | None = None, limit: int = 100
    ) -> Sequence[WorkflowInstanceData]: ...

    async def add_history(
        self,
        instance_id: UUID,
        action: HistoryAction,
        *,
        node_id: str | None = None,
        node_type: NodeType | None = None,
        input_data: dict[str, Any] | None = None,
        output_data: dict[str, Any] | None = None,
        error_data: dict[str, Any] | None = None,
        duration_ms: int | None = None,
    ) -> HistoryEntry | None:
        """Append a history entry unless the instance is already terminal."""
        ...

    async def list_history(self, instance_id: UUID) -> Sequence[HistoryEntry]: ...

    async def create_task(
        self,
        instance_id: UUID,
        node_id: str,
        task_type: TaskType,
        scheduled_for: datetime,
        *,
        payload: dict[str, Any] | None = None,
        max_retries: int = 3,
    ) -> ScheduledTaskData: ...

    async def list_tasks(self, instance_id: UUID, *, pending_only: bool = False) -> Sequence[ScheduledTaskData]: ...

    async def get_due_tasks(self, now: datetime, limit: int) -> Sequence[ScheduledTaskData]: ...

    async def mark_task_executed(self, task_id: UUID, executed_at: datetime) -> None: ...

    async def record_task_failure(self, task_id: UUID, error_message: str, executed_at: datetime) -> ScheduledTaskData: ...

    async def discard_tasks(self, instance_id: UUID, *, node_id: str | None = None, task_types: Sequence[TaskType] | None = None) -> int: ...

    async def create_approval(
        self,
        instance_id: UUID,
        node_id: str,
        *,
        approver_type: str,
        approvers: list[str],
        options: list[str],
        escalate_to: str | None,
        due_at: datetime | None,
    ) -> ApprovalData: ...

    async def get_pending_approval(self, instance_id: UUID, node_id: str) -> ApprovalData | None: ...

    async def decide_approval(
        self, approval_id: UUID, *, decision: str, decided_by: str, comments: str | None, decided_at: datetime
    ) -> ApprovalData: ...

    async def cancel_approvals(self, instance_id: UUID) -> int: ...
