"""Scheduled resumption processor.

Polls the relational store for due scheduled tasks and dispatches them by
task type: timers and condition polls resume their instance, timeouts fail
it, escalations and reminders emit approval events. Failed tasks are retried
on later polls until their ``max_retries`` is reached. A task whose instance is
locked by another worker stays pending without counting as a failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from litestar_flows.core.events import WorkflowEventType
from litestar_flows.core.types import InstanceStatus, TaskType
from litestar_flows.exceptions import LockContentionError

if TYPE_CHECKING:
    from uuid import UUID

    from litestar_flows.core.models import ScheduledTaskData
    from litestar_flows.engine.executor import ExecutionEngine

__all__ = ["ScheduledResumptionProcessor", "TaskHandler"]

logger = logging.getLogger(__name__)

TaskHandler = Callable[["ScheduledTaskData"], Awaitable[None]]


class ScheduledResumptionProcessor:
    """Executes due scheduled tasks against an engine.

    Args:
        engine: The execution engine; its store and event bus are reused.
        batch_size: Maximum number of tasks handled per poll.

    Example:
        >>> processor = ScheduledResumptionProcessor(engine)
        >>> await processor.process_due_tasks()
        2
        >>> stop = asyncio.Event()
        >>> asyncio.create_task(processor.run(poll_interval=5.0, stop_event=stop))
    """

    def __init__(self, engine: ExecutionEngine, *, batch_size: int = 10) -> None:
        self.engine = engine
        self.store = engine.store
        self.batch_size = batch_size
        self._handlers: dict[str, TaskHandler] = {
            TaskType.WAIT: self._resume,
            TaskType.CONDITION_CHECK: self._resume,
            TaskType.TIMEOUT: self._time_out,
            TaskType.ESCALATION: self._escalate,
            TaskType.REMINDER: self._remind,
        }

    def register(self, task_type: str, handler: TaskHandler) -> None:
        """Replace the handler of a task type."""
        self._handlers[str(task_type)] = handler

    async def process_due_tasks(self, now: datetime | None = None) -> int:
        """Handle the tasks due at ``now``.

        Args:
            now: Reference time; the engine clock by default.

        Returns:
            Number of tasks handled successfully.
        """
        now = now or self.engine.now()
        tasks = await self.store.get_due_tasks(now, self.batch_size)
        processed = 0
        for task in tasks:
            try:
                await self._dispatch(task)
            except LockContentionError:
                logger.info("Task %s (%s) deferred: instance %s is locked", task.id, task.task_type, task.instance_id)
                continue
            except Exception as exc:
                updated = await self.store.record_task_failure(task.id, str(exc), now)
                if updated.failed:
                    logger.error("Task %s (%s) failed permanently: %s", task.id, task.task_type, exc)
                else:
                    logger.warning(
                        "Task %s (%s) failed, attempt %d/%d: %s",
                        task.id,
                        task.task_type,
                        updated.retry_count,
                        updated.max_retries,
                        exc,
                    )
                continue
            await self.store.mark_task_executed(task.id, now)
            processed += 1
        if tasks:
            logger.debug("Processed %d of %d due tasks", processed, len(tasks))
        return processed

    async def run(self, poll_interval: float = 5.0, stop_event: asyncio.Event | None = None) -> None:
        """Poll until ``stop_event`` is set.

        Errors of a single poll are logged and the loop continues.
        """
        stop_event = stop_event or asyncio.Event()
        logger.info("Scheduled task processor started (every %.1fs)", poll_interval)
        while not stop_event.is_set():
            try:
                await self.process_due_tasks()
                await self.check_execution_deadlines()
            except Exception:
                logger.exception("Scheduled task poll failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
            except TimeoutError:
                pass
        logger.info("Scheduled task processor stopped")

    async def check_execution_deadlines(self, now: datetime | None = None) -> list[UUID]:
        """Flag instances running longer than their ``max_execution_time``.

        Waiting instances past the deadline are failed with a timeout; running
        ones are only logged, since their traversal cannot be interrupted.

        Returns:
            Ids of the instances past their deadline.
        """
        now = now or self.engine.now()
        overdue: list[UUID] = []
        for status in (InstanceStatus.RUNNING, InstanceStatus.WAITING):
            for instance in await self.store.find_instances(status=status):
                definition = await self.engine.definitions.get_definition(instance.definition_id)
                limit = definition.config.max_execution_time if definition else None
                if not limit or now - instance.started_at <= timedelta(milliseconds=limit):
                    continue
                overdue.append(instance.id)
                if status != InstanceStatus.WAITING:
                    logger.warning("Instance %s exceeded its maximum execution time of %d ms", instance.id, limit)
                    continue
                try:
                    await self.engine.time_out(instance.id)
                except LockContentionError:
                    logger.info("Deadline of instance %s deferred: instance is locked", instance.id)
        return overdue

    async def _dispatch(self, task: ScheduledTaskData) -> None:
        handler = self._handlers.get(str(task.task_type))
        if handler is None:
            msg = f"No handler for task type '{task.task_type}'"
            raise LookupError(msg)
        await handler(task)

    async def _resume(self, task: ScheduledTaskData) -> None:
        instance = await self.engine.get_instance(task.instance_id)
        if instance.status != InstanceStatus.WAITING or instance.current_node_id != task.node_id:
            logger.debug("Skipping %s task %s: instance is %s", task.task_type, task.id, instance.status)
            return
        await self.engine.resume(task.instance_id)

    async def _time_out(self, task: ScheduledTaskData) -> None:
        await self.engine.time_out(task.instance_id, task.node_id)

    async def _escalate(self, task: ScheduledTaskData) -> None:
        approval = await self.store.get_pending_approval(task.instance_id, task.node_id)
        if approval is None:
            return
        await self.engine.emit(
            WorkflowEventType.APPROVAL_ESCALATED,
            instance_id=task.instance_id,
            node_id=task.node_id,
            approval_id=approval.id,
            escalate_to=task.payload.get("escalate_to") or approval.escalate_to,
        )

    async def _remind(self, task: ScheduledTaskData) -> None:
        approval = await self.store.get_pending_approval(task.instance_id, task.node_id)
        if approval is None:
            return
        await self.engine.emit(
            WorkflowEventType.APPROVAL_REMINDER,
            instance_id=task.instance_id,
            node_id=task.node_id,
            approval_id=approval.id,
            approvers=approval.approvers,
        )
