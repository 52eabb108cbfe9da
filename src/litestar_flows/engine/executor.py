"""Workflow execution engine.

The engine drives instances through their definition one node at a time:

* every ``start``/``resume``/``submit_approval``/``signal``/``time_out`` runs
  while holding the instance lock of the :class:`~litestar_flows.state.ContextStore`;
* the definition is fetched again from the :class:`DefinitionSource` before
  each node, so edits apply to running instances at the next step;
* node entry checks the instance status, which is how ``pause`` and
  ``cancel`` take effect on a running instance;
* suspension (wait, approval) persists the context and returns; the
  :class:`~litestar_flows.engine.scheduler.ScheduledResumptionProcessor` or a
  caller resumes the instance later, possibly in another process.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from litestar_flows.core.context import ExecutionContext
from litestar_flows.core.events import WorkflowEventType
from litestar_flows.core.types import (
    ErrorHandling,
    HistoryAction,
    InstanceStatus,
    TaskType,
    TriggerType,
)
from litestar_flows.engine.graph import WorkflowGraph
from litestar_flows.engine.nodes import (
    NodeHandlerRegistry,
    NodeOutcome,
    NodeStep,
    OutcomeKind,
    SuspensionKind,
    approval_variable,
)
from litestar_flows.evaluation.conditions import ConditionEvaluator
from litestar_flows.exceptions import (
    ActionCancelledError,
    ApprovalError,
    ExecutionError,
    InvalidTransitionError,
    LockLostError,
    WorkflowAlreadyCompletedError,
    WorkflowInstanceNotFoundError,
    WorkflowNotFoundError,
    WorkflowTimeoutError,
    WorkflowValidationError,
)

if TYPE_CHECKING:
    from uuid import UUID

    from litestar_flows.actions.dispatcher import ActionDispatcher
    from litestar_flows.core.definition import Node, WorkflowDefinition
    from litestar_flows.core.models import HistoryEntry, ScheduledTaskData, WorkflowInstanceData
    from litestar_flows.core.protocols import DefinitionSource, EventBus, WorkflowStore
    from litestar_flows.state.store import ContextStore, InstanceLock

__all__ = ["ExecutionEngine", "utc_now"]

logger = logging.getLogger(__name__)

_SUSPENDED = frozenset({InstanceStatus.PAUSED, InstanceStatus.WAITING})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionEngine:
    """Runs workflow instances over a definition source and durable stores.

    Args:
        definitions: Where definitions are fetched from, by id, on every step.
        store: Relational store for instances, history, tasks and approvals.
        context_store: Keyed store for execution context and instance locks.
        dispatcher: Performs action nodes.
        event_bus: Optional receiver of lifecycle events.
        evaluator: Predicate evaluator shared by condition nodes and edges.
        node_handlers: Node type registry; the built-in handlers by default.
        condition_poll_interval: Milliseconds between condition-wait checks.
        lock_wait_timeout: Seconds to wait for a held instance lock.
        clock: Returns the current aware datetime.

    Example:
        >>> engine = ExecutionEngine(registry, store, context_store, dispatcher, event_bus=bus)
        >>> instance = await engine.start("signup", {"age": 20}, user_id="u-1")
        >>> instance.status
        <InstanceStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        definitions: DefinitionSource,
        store: WorkflowStore,
        context_store: ContextStore,
        dispatcher: ActionDispatcher,
        *,
        event_bus: EventBus | None = None,
        evaluator: ConditionEvaluator | None = None,
        node_handlers: NodeHandlerRegistry | None = None,
        condition_poll_interval: int = 60000,
        lock_wait_timeout: float = 0.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.definitions = definitions
        self.store = store
        self.context_store = context_store
        self.dispatcher = dispatcher
        self.event_bus = event_bus
        self.evaluator = evaluator or ConditionEvaluator()
        self.node_handlers = node_handlers or NodeHandlerRegistry.default()
        self.condition_poll_interval = condition_poll_interval
        self.lock_wait_timeout = lock_wait_timeout
        self._clock = clock
        self._held_locks: dict[UUID, InstanceLock] = {}

    def now(self) -> datetime:
        return self._clock()

    async def emit(self, event_type: str, **payload: Any) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(str(event_type), **payload)

    async def start(
        self,
        definition_id: str,
        initial_data: dict[str, Any] | None = None,
        *,
        user_id: str | None = None,
        triggered_by: TriggerType = TriggerType.MANUAL,
        trigger_data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> WorkflowInstanceData:
        """Create an instance and run it until it suspends or terminates.

        Args:
            definition_id: Id of the definition to run.
            initial_data: Seeds the instance's form data.
            user_id: User starting the instance.
            triggered_by: How the instance was started.
            trigger_data: Payload supplied by the trigger.
            metadata: Extra execution metadata.

        Returns:
            The instance as of the point traversal stopped. Failures during
            traversal are reflected in the returned instance, not raised.

        Raises:
            WorkflowNotFoundError: If the definition does not exist.
            WorkflowValidationError: If the definition is invalid. No instance
                is created.
        """
        definition = await self._load_definition(definition_id)
        errors = definition.validate()
        start_node = definition.start_node
        if errors or start_node is None:
            raise WorkflowValidationError(errors or ["Workflow must have a start node"])

        started_at = self.now()
        context = ExecutionContext(
            form_data=dict(initial_data or {}),
            variables=definition.default_variables(),
            metadata={
                **(metadata or {}),
                "start_time": int(started_at.timestamp() * 1000),
                "definition_id": definition.id,
                "definition_version": definition.version,
                "user_id": user_id,
            },
        )
        instance = await self.store.create_instance(
            definition_id=definition.id,
            context=context,
            current_node_id=start_node.id,
            triggered_by=triggered_by,
            trigger_data=dict(trigger_data or {}),
            user_id=user_id,
            started_at=started_at,
        )
        context.metadata["instance_id"] = str(instance.id)
        await self.context_store.save(instance.id, context)
        await self.context_store.track_instance(instance.id, definition.id, instance.status)
        logger.info("Starting workflow %s as instance %s", definition.id, instance.id)

        async with self._lock(instance.id):
            await self._transition(instance.id, InstanceStatus.RUNNING)
            await self.emit(
                WorkflowEventType.WORKFLOW_STARTED,
                instance_id=instance.id,
                definition_id=definition.id,
                user_id=user_id,
            )
            return await self._drive(instance.id, context, start_node.id)

    async def resume(self, instance_id: UUID) -> WorkflowInstanceData:
        """Continue a paused or waiting instance.

        Raises:
            WorkflowInstanceNotFoundError: If the instance does not exist.
            WorkflowAlreadyCompletedError: If the instance is terminal.
            InvalidTransitionError: If the instance is not suspended.
            LockContentionError: If another worker holds the instance lock.
        """
        async with self._lock(instance_id):
            instance = await self._require_instance(instance_id)
            context = await self._load_context(instance)
            return await self._resume_locked(instance, context)

    async def pause(self, instance_id: UUID) -> WorkflowInstanceData:
        """Pause a running instance at its next node boundary.

        Raises:
            WorkflowAlreadyCompletedError: If the instance is terminal.
            InvalidTransitionError: If the instance is not running.
        """
        instance = await self._require_instance(instance_id)
        if instance.is_terminal:
            raise WorkflowAlreadyCompletedError(instance_id, instance.status)
        instance = await self._transition(instance_id, InstanceStatus.PAUSED, paused_at=self.now())
        await self.emit(WorkflowEventType.WORKFLOW_PAUSED, instance_id=instance_id, node_id=instance.current_node_id)
        logger.info("Instance %s paused", instance_id)
        return instance

    async def cancel(self, instance_id: UUID, reason: str | None = None) -> WorkflowInstanceData:
        """Cancel an instance.

        Pending scheduled tasks and approvals are discarded. A traversal in
        progress stops at the next node boundary or retry attempt.

        Raises:
            WorkflowAlreadyCompletedError: If the instance is terminal.
        """
        instance = await self._require_instance(instance_id)
        if instance.is_terminal:
            raise WorkflowAlreadyCompletedError(instance_id, instance.status)
        await self.store.add_history(
            instance_id, HistoryAction.CANCELLED, node_id=instance.current_node_id, output_data={"reason": reason}
        )
        instance = await self._transition(
            instance_id, InstanceStatus.CANCELLED, cancelled_at=self.now(), error_message=reason
        )
        discarded = await self.store.discard_tasks(instance_id)
        await self.store.cancel_approvals(instance_id)
        logger.debug("Discarded %d scheduled tasks of cancelled instance %s", discarded, instance_id)
        await self.emit(WorkflowEventType.WORKFLOW_CANCELLED, instance_id=instance_id, reason=reason)
        logger.info("Instance %s cancelled", instance_id)
        return instance

    async def submit_approval(
        self,
        instance_id: UUID,
        node_id: str,
        decision: str,
        decided_by: str,
        comments: str | None = None,
    ) -> WorkflowInstanceData:
        """Record a decision for a pending approval and resume the instance.

        The decision is exposed to later nodes as
        ``variables["approval_<node>_decision"]``, with ``_approver`` and
        ``_comments`` alongside.

        Raises:
            WorkflowAlreadyCompletedError: If the instance is terminal.
            ApprovalError: If the instance is not waiting on this approval,
                the decision is not an allowed option, or the user is not an
                approver.
        """
        async with self._lock(instance_id):
            instance = await self._require_instance(instance_id)
            if instance.is_terminal:
                raise WorkflowAlreadyCompletedError(instance_id, instance.status)
            if instance.status != InstanceStatus.WAITING or instance.current_node_id != node_id:
                raise ApprovalError(instance_id, node_id, "instance is not waiting on this approval")
            approval = await self.store.get_pending_approval(instance_id, node_id)
            if approval is None:
                raise ApprovalError(instance_id, node_id, "no pending approval")
            if approval.options and decision not in approval.options:
                raise ApprovalError(
                    instance_id, node_id, f"decision '{decision}' is not one of {', '.join(approval.options)}"
                )
            allowed = {*approval.approvers, *([approval.escalate_to] if approval.escalate_to else [])}
            if approval.approver_type == "user" and approval.approvers and decided_by not in allowed:
                raise ApprovalError(instance_id, node_id, f"'{decided_by}' is not an approver")

            await self.store.decide_approval(
                approval.id, decision=decision, decided_by=decided_by, comments=comments, decided_at=self.now()
            )
            context = await self._load_context(instance)
            context.set_variable(approval_variable(node_id, "decision"), decision)
            context.set_variable(approval_variable(node_id, "approver"), decided_by)
            context.set_variable(approval_variable(node_id, "comments"), comments)
            await self.store.add_history(
                instance_id,
                HistoryAction.APPROVAL_RECEIVED,
                node_id=node_id,
                output_data={"decision": decision, "decided_by": decided_by, "comments": comments},
            )
            await self.emit(
                WorkflowEventType.APPROVAL_RECEIVED,
                instance_id=instance_id,
                node_id=node_id,
                decision=decision,
                decided_by=decided_by,
            )
            return await self._resume_locked(instance, context)

    async def signal(
        self, instance_id: UUID, event_type: str | None = None, data: dict[str, Any] | None = None
    ) -> WorkflowInstanceData:
        """Deliver an external event to an instance waiting on an event wait.

        ``data`` is stored in ``variables["event_<node>_data"]``.

        Raises:
            WorkflowAlreadyCompletedError: If the instance is terminal.
            InvalidTransitionError: If the instance is not waiting for an event.
            ExecutionError: If ``event_type`` differs from the awaited event.
        """
        async with self._lock(instance_id):
            instance = await self._require_instance(instance_id)
            if instance.is_terminal:
                raise WorkflowAlreadyCompletedError(instance_id, instance.status)
            context = await self._load_context(instance)
            suspension = context.metadata.get("suspension") or {}
            if instance.status != InstanceStatus.WAITING or suspension.get("kind") != SuspensionKind.EVENT:
                raise InvalidTransitionError(
                    instance.status, InstanceStatus.RUNNING, "instance is not waiting for an event"
                )
            expected = suspension.get("event_type")
            if expected and event_type and event_type != expected:
                msg = f"Instance is waiting for event '{expected}', got '{event_type}'"
                raise ExecutionError(msg, node_id=instance.current_node_id)

            node_id = suspension.get("node_id") or instance.current_node_id
            if data:
                context.set_variable(f"event_{node_id}_data", data)
            await self.store.add_history(
                instance_id,
                HistoryAction.SIGNAL_RECEIVED,
                node_id=node_id,
                input_data={"event_type": event_type, "data": data},
            )
            return await self._resume_locked(instance, context)

    async def time_out(self, instance_id: UUID, node_id: str | None = None) -> WorkflowInstanceData:
        """Fail a waiting instance whose wait or execution deadline passed.

        A no-op when the instance is no longer waiting, or waits on another
        node than ``node_id``.
        """
        async with self._lock(instance_id):
            instance = await self._require_instance(instance_id)
            if instance.status != InstanceStatus.WAITING:
                return instance
            if node_id is not None and instance.current_node_id != node_id:
                return instance
            context = await self._load_context(instance)
            error = WorkflowTimeoutError(instance_id, node_id)
            logger.warning("Instance %s timed out at node %s", instance_id, instance.current_node_id)
            await self.store.discard_tasks(instance_id)
            return await self._fail(instance_id, error, context)

    async def retry(self, instance_id: UUID) -> WorkflowInstanceData:
        """Start a new instance with the form data of a failed or cancelled one.

        The new instance records ``retried_from`` in its metadata.

        Raises:
            InvalidTransitionError: If the instance did not fail or was not cancelled.
        """
        instance = await self._require_instance(instance_id)
        if instance.status not in {InstanceStatus.FAILED, InstanceStatus.CANCELLED}:
            raise InvalidTransitionError(
                instance.status, InstanceStatus.PENDING, "only failed or cancelled instances can be retried"
            )
        return await self.start(
            instance.definition_id,
            dict(instance.context.form_data),
            user_id=instance.user_id,
            triggered_by=instance.triggered_by,
            trigger_data=instance.trigger_data,
            metadata={"retried_from": str(instance.id)},
        )

    async def get_instance(self, instance_id: UUID) -> WorkflowInstanceData:
        """Return an instance.

        Raises:
            WorkflowInstanceNotFoundError: If the instance does not exist.
        """
        return await self._require_instance(instance_id)

    async def get_history(self, instance_id: UUID) -> Sequence[HistoryEntry]:
        """Return the instance's history, ordered by sequence."""
        return await self.store.list_history(instance_id)

    async def is_cancelled(self, instance_id: UUID) -> bool:
        instance = await self.store.get_instance(instance_id)
        return instance is None or instance.status == InstanceStatus.CANCELLED

    async def schedule_task(
        self,
        instance_id: UUID,
        node_id: str,
        task_type: TaskType,
        delay_ms: float,
        payload: dict[str, Any] | None = None,
    ) -> ScheduledTaskData:
        """Create a scheduled task due ``delay_ms`` milliseconds from now."""
        scheduled_for = self.now() + timedelta(milliseconds=delay_ms)
        task = await self.store.create_task(instance_id, node_id, task_type, scheduled_for, payload=payload)
        logger.debug("Scheduled %s task for instance %s at %s", task_type, instance_id, scheduled_for.isoformat())
        return task

    async def renew_lock(self, instance_id: UUID) -> None:
        """Renew the lock this engine holds on the instance, if any.

        Raises:
            LockLostError: If another caller took the lock over.
        """
        held = self._held_locks.get(instance_id)
        if held is not None:
            await held.renew()

    @asynccontextmanager
    async def _lock(self, instance_id: UUID) -> AsyncIterator[InstanceLock]:
        async with self.context_store.lock(instance_id, wait_timeout=self.lock_wait_timeout) as held:
            self._held_locks[instance_id] = held
            try:
                yield held
            finally:
                self._held_locks.pop(instance_id, None)

    async def _load_definition(self, definition_id: str) -> WorkflowDefinition:
        definition = await self.definitions.get_definition(definition_id)
        if definition is None:
            raise WorkflowNotFoundError(definition_id)
        return definition

    async def _require_instance(self, instance_id: UUID) -> WorkflowInstanceData:
        instance = await self.store.get_instance(instance_id)
        if instance is None:
            raise WorkflowInstanceNotFoundError(instance_id)
        return instance

    async def _load_context(self, instance: WorkflowInstanceData) -> ExecutionContext:
        context = await self.context_store.get(instance.id)
        if context is None:
            logger.info("Context of instance %s expired, using the stored snapshot", instance.id)
            context = ExecutionContext.from_dict(instance.context.to_dict())
        return context

    async def _transition(
        self, instance_id: UUID, status: InstanceStatus, **values: Any
    ) -> WorkflowInstanceData:
        instance = await self.store.transition(instance_id, status, **values)
        await self.context_store.track_instance(instance_id, instance.definition_id, status)
        await self.context_store.publish(instance_id, f"status:{status}", {"node_id": instance.current_node_id})
        return instance

    async def _resume_locked(self, instance: WorkflowInstanceData, context: ExecutionContext) -> WorkflowInstanceData:
        if instance.is_terminal:
            raise WorkflowAlreadyCompletedError(instance.id, instance.status)
        if instance.status not in _SUSPENDED:
            raise InvalidTransitionError(instance.status, InstanceStatus.RUNNING, "instance is not suspended")

        previous = instance.status
        instance = await self._transition(instance.id, InstanceStatus.RUNNING, resumed_at=self.now())
        await self.emit(
            WorkflowEventType.WORKFLOW_RESUMED, instance_id=instance.id, node_id=instance.current_node_id
        )
        suspension = context.metadata.pop("suspension", None) or {}
        node_id = instance.current_node_id or context.current_node
        if previous == InstanceStatus.PAUSED and context.pending_nodes:
            node_id = context.pending_nodes.pop(0)
        if node_id is None:
            return await self._fail(instance.id, ExecutionError("Instance has no current node"), context)

        finish_wait = previous == InstanceStatus.WAITING and suspension.get("kind") in {
            SuspensionKind.TIME,
            SuspensionKind.EVENT,
        }
        logger.info("Resuming instance %s at node %s", instance.id, node_id)
        return await self._drive(instance.id, context, node_id, finish_wait=finish_wait)

    async def _drive(
        self, instance_id: UUID, context: ExecutionContext, node_id: str, *, finish_wait: bool = False
    ) -> WorkflowInstanceData:
        """Run the traversal, turning errors into a failed instance."""
        try:
            if finish_wait:
                node_id = await self._finish_wait(instance_id, context, node_id)
            return await self._run(instance_id, context, node_id)
        except LockLostError:
            logger.warning("Instance %s lost its lock, stopping without further writes", instance_id)
            raise
        except ActionCancelledError as exc:
            logger.info("Instance %s cancelled during action: %s", instance_id, exc)
            return await self._require_instance(instance_id)
        except InvalidTransitionError:
            instance = await self._require_instance(instance_id)
            if instance.status != InstanceStatus.RUNNING:
                logger.info("Instance %s changed to %s during traversal", instance_id, instance.status)
                return instance
            raise
        except Exception as exc:
            logger.exception("Workflow instance %s failed", instance_id)
            return await self._fail(instance_id, exc, context)

    async def _run(self, instance_id: UUID, context: ExecutionContext, node_id: str | None) -> WorkflowInstanceData:
        while node_id is not None:
            await self.renew_lock(instance_id)
            instance = await self._require_instance(instance_id)
            if instance.status != InstanceStatus.RUNNING:
                return await self._halt(instance, context, node_id)
            definition = await self._load_definition(instance.definition_id)
            node = definition.get_node(node_id)
            if node is None:
                msg = f"Node '{node_id}' not found in workflow '{definition.id}'"
                raise ExecutionError(msg, node_id=node_id)
            node_id = await self._execute_node(instance, definition, node, context)
        return await self._require_instance(instance_id)

    async def _halt(
        self, instance: WorkflowInstanceData, context: ExecutionContext, node_id: str
    ) -> WorkflowInstanceData:
        """Stop at a node boundary because the instance was paused or cancelled."""
        if instance.status == InstanceStatus.PAUSED:
            context.pending_nodes = [node_id]
            await self.context_store.save(instance.id, context)
            await self.store.update_instance(instance.id, current_node_id=node_id, context=context)
            logger.info("Instance %s paused before node %s", instance.id, node_id)
        else:
            logger.info("Instance %s is %s, stopping before node %s", instance.id, instance.status, node_id)
        return instance

    async def _execute_node(
        self,
        instance: WorkflowInstanceData,
        definition: WorkflowDefinition,
        node: Node,
        context: ExecutionContext,
    ) -> str | None:
        if definition.config.error_handling == ErrorHandling.ROLLBACK:
            await self.context_store.checkpoint(instance.id, node.id, context)
        context.enter(node.id)
        await self.store.update_instance(instance.id, current_node_id=node.id)
        await self.store.add_history(
            instance.id, HistoryAction.ENTERED, node_id=node.id, node_type=node.type, input_data=context.to_dict()
        )
        await self.emit(WorkflowEventType.NODE_ENTERED, instance_id=instance.id, node_id=node.id, node_type=node.type)
        logger.debug("Executing node %s (%s) of instance %s", node.id, node.type, instance.id)

        started = time.monotonic()
        step = NodeStep(
            engine=self,
            instance=instance,
            definition=definition,
            graph=WorkflowGraph(definition, self.evaluator),
            node=node,
            context=context,
        )
        try:
            outcome = await self.node_handlers.get(node.type)(step)
        except (ActionCancelledError, LockLostError):
            raise
        except Exception as exc:
            await self.store.add_history(
                instance.id,
                HistoryAction.FAILED,
                node_id=node.id,
                node_type=node.type,
                error_data={"message": str(exc), "type": type(exc).__name__},
                duration_ms=_elapsed(started),
            )
            await self.emit(WorkflowEventType.NODE_FAILED, instance_id=instance.id, node_id=node.id, error=str(exc))
            if definition.config.error_handling == ErrorHandling.ROLLBACK:
                await self._rollback(instance.id, node.id, context)
            raise
        await self.renew_lock(instance.id)
        return await self._apply_outcome(instance, node, context, outcome, _elapsed(started))

    async def _apply_outcome(
        self,
        instance: WorkflowInstanceData,
        node: Node,
        context: ExecutionContext,
        outcome: NodeOutcome,
        duration_ms: int,
    ) -> str | None:
        if outcome.kind == OutcomeKind.SUSPEND:
            context.metadata["suspension"] = outcome.suspension or {}
            await self.context_store.save(instance.id, context)
            await self._transition(instance.id, InstanceStatus.WAITING, current_node_id=node.id, context=context)
            await self.emit(
                WorkflowEventType.WORKFLOW_WAITING,
                instance_id=instance.id,
                node_id=node.id,
                reason=(outcome.suspension or {}).get("kind"),
            )
            logger.info("Instance %s waiting at node %s", instance.id, node.id)
            return None

        action = HistoryAction.FAILED if outcome.error else HistoryAction.COMPLETED
        await self.store.add_history(
            instance.id,
            action,
            node_id=node.id,
            node_type=node.type,
            output_data=outcome.output,
            error_data=outcome.error,
            duration_ms=duration_ms,
        )
        await self.emit(WorkflowEventType.NODE_COMPLETED, instance_id=instance.id, node_id=node.id)

        if outcome.kind == OutcomeKind.COMPLETE:
            await self._complete(instance, node, context)
            return None

        await self.context_store.save(instance.id, context)
        return outcome.next_node_id

    async def _finish_wait(self, instance_id: UUID, context: ExecutionContext, node_id: str) -> str:
        """Complete a timed or event wait node and return its successor."""
        instance = await self._require_instance(instance_id)
        definition = await self._load_definition(instance.definition_id)
        node = definition.get_node(node_id)
        if node is None:
            msg = f"Node '{node_id}' not found in workflow '{definition.id}'"
            raise ExecutionError(msg, node_id=node_id)
        await self.store.discard_tasks(instance_id, node_id=node_id)
        step = NodeStep(
            engine=self,
            instance=instance,
            definition=definition,
            graph=WorkflowGraph(definition, self.evaluator),
            node=node,
            context=context,
        )
        next_node_id = step.require_next()
        await self._apply_outcome(
            instance, node, context, NodeOutcome.advance(next_node_id, output={"resumed": True}), 0
        )
        return next_node_id

    async def _complete(self, instance: WorkflowInstanceData, node: Node, context: ExecutionContext) -> None:
        completed_at = self.now()
        execution_time_ms = int((completed_at - instance.started_at).total_seconds() * 1000)
        await self._transition(
            instance.id,
            InstanceStatus.COMPLETED,
            completed_at=completed_at,
            execution_time_ms=execution_time_ms,
            current_node_id=node.id,
            context=context,
        )
        await self.context_store.clear(instance.id)
        await self.emit(
            WorkflowEventType.WORKFLOW_COMPLETED,
            instance_id=instance.id,
            result={"form_data": context.form_data, "variables": context.variables},
        )
        logger.info("Instance %s completed in %d ms", instance.id, execution_time_ms)

    async def _rollback(self, instance_id: UUID, node_id: str, context: ExecutionContext) -> None:
        checkpoint = await self.context_store.load_checkpoint(instance_id, node_id)
        if checkpoint is None:
            logger.warning("No checkpoint to roll back to for instance %s at node %s", instance_id, node_id)
            return
        context.restore(checkpoint.context)
        await self.context_store.save(instance_id, context)
        logger.info("Instance %s rolled back to the checkpoint of node %s", instance_id, node_id)

    async def _fail(
        self, instance_id: UUID, error: BaseException, context: ExecutionContext
    ) -> WorkflowInstanceData:
        instance = await self._require_instance(instance_id)
        if instance.is_terminal:
            return instance
        node_id = getattr(error, "node_id", None) or instance.current_node_id or context.current_node
        try:
            instance = await self._transition(
                instance_id,
                InstanceStatus.FAILED,
                failed_at=self.now(),
                error_message=str(error),
                error_detail={"type": type(error).__name__, "node_id": node_id},
                context=context,
            )
        except InvalidTransitionError as exc:
            logger.warning("Could not mark instance %s failed: %s", instance_id, exc)
            return await self._require_instance(instance_id)
        await self.emit(WorkflowEventType.WORKFLOW_FAILED, instance_id=instance_id, error=str(error), node_id=node_id)
        return instance


def _elapsed(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
