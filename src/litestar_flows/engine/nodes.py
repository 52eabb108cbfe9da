"""Node type handlers.

Each node type maps to an async handler receiving a :class:`NodeStep` and
returning a :class:`NodeOutcome`: advance to a successor, suspend the
instance, or complete it. The engine owns persistence, history and status
changes; handlers only decide what the node does.

Custom node behaviour is plugged in through :class:`NodeHandlerRegistry`::

    registry = NodeHandlerRegistry.default()
    registry.register(NodeType.FORM, my_form_handler)
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from litestar_flows.core.definition import EscalationRule, RetryPolicy
from litestar_flows.core.events import WorkflowEventType
from litestar_flows.core.types import (
    ActionType,
    ApproverType,
    ErrorHandling,
    LogicalOperator,
    NodeType,
    TaskType,
    WaitType,
)
from litestar_flows.evaluation.paths import MISSING, resolve_field
from litestar_flows.exceptions import (
    ActionCancelledError,
    ActionError,
    ActionHandlerNotFoundError,
    ExecutionError,
)

if TYPE_CHECKING:
    from litestar_flows.core.context import ExecutionContext
    from litestar_flows.core.definition import Node, WorkflowDefinition
    from litestar_flows.core.models import ScheduledTaskData, WorkflowInstanceData
    from litestar_flows.engine.executor import ExecutionEngine
    from litestar_flows.engine.graph import WorkflowGraph

__all__ = [
    "NodeHandler",
    "NodeHandlerRegistry",
    "NodeOutcome",
    "NodeStep",
    "OutcomeKind",
    "SuspensionKind",
    "approval_variable",
]

logger = logging.getLogger(__name__)

DEFAULT_APPROVAL_OPTIONS = ("approve", "reject")


class OutcomeKind(StrEnum):
    """What the engine does after a node handler returns."""

    ADVANCE = "advance"
    SUSPEND = "suspend"
    COMPLETE = "complete"


class SuspensionKind(StrEnum):
    """Why an instance is waiting.

    Timed and event waits continue past their node when resumed; condition
    polls and approvals re-enter their node.
    """

    TIME = "time"
    EVENT = "event"
    CONDITION = "condition"
    APPROVAL = "approval"


@dataclass(frozen=True)
class NodeOutcome:
    """Result of running one node.

    Attributes:
        kind: Advance, suspend or complete.
        next_node_id: Successor for ``ADVANCE``.
        output: Snapshot recorded in the node's history entry.
        error: Failure summary when advancing past a failed action.
        suspension: Suspension details stored in the context metadata.
    """

    kind: OutcomeKind
    next_node_id: str | None = None
    output: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    suspension: dict[str, Any] | None = None

    @classmethod
    def advance(
        cls, next_node_id: str, output: dict[str, Any] | None = None, error: dict[str, Any] | None = None
    ) -> NodeOutcome:
        return cls(OutcomeKind.ADVANCE, next_node_id=next_node_id, output=output, error=error)

    @classmethod
    def suspend(cls, suspension: dict[str, Any], output: dict[str, Any] | None = None) -> NodeOutcome:
        return cls(OutcomeKind.SUSPEND, output=output, suspension=suspension)

    @classmethod
    def complete(cls, output: dict[str, Any] | None = None) -> NodeOutcome:
        return cls(OutcomeKind.COMPLETE, output=output)


@dataclass
class NodeStep:
    """Everything a node handler may use while running one node."""

    engine: ExecutionEngine
    instance: WorkflowInstanceData
    definition: WorkflowDefinition
    graph: WorkflowGraph
    node: Node
    context: ExecutionContext

    @property
    def data(self) -> dict[str, Any]:
        return self.node.data

    def require_next(self) -> str:
        """Return the successor picked by the generic edge rule.

        Raises:
            ExecutionError: If no outgoing edge is usable.
        """
        target = self.graph.next_node(self.node.id, self.context)
        if target is None:
            msg = f"No outgoing connection from node '{self.node.id}'"
            raise ExecutionError(msg, node_id=self.node.id)
        return target

    async def schedule(
        self, task_type: TaskType, delay_ms: float, payload: dict[str, Any] | None = None
    ) -> ScheduledTaskData:
        return await self.engine.schedule_task(self.instance.id, self.node.id, task_type, delay_ms, payload)

    async def discard_tasks(self) -> int:
        return await self.engine.store.discard_tasks(self.instance.id, node_id=self.node.id)

    async def is_cancelled(self) -> bool:
        return await self.engine.is_cancelled(self.instance.id)

    async def should_stop(self) -> bool:
        """Renew the instance lock, then report whether the instance was cancelled.

        Raises:
            LockLostError: If another caller took the instance lock over.
        """
        await self.engine.renew_lock(self.instance.id)
        return await self.is_cancelled()


NodeHandler = Callable[[NodeStep], Awaitable[NodeOutcome]]


def approval_variable(node_id: str, field: str) -> str:
    """Name of an approval variable, e.g. ``approval_review_decision``."""
    return f"approval_{node_id}_{field}"


async def handle_start(step: NodeStep) -> NodeOutcome:
    return NodeOutcome.advance(step.require_next())


async def handle_end(step: NodeStep) -> NodeOutcome:
    return NodeOutcome.complete(
        output={"form_data": dict(step.context.form_data), "variables": dict(step.context.variables)}
    )


async def handle_form(step: NodeStep) -> NodeOutcome:
    """Record the form step and seed declared field defaults into form data."""
    form_data = step.context.form_data
    for field in step.data.get("fields") or ():
        name = field.get("name")
        if name and name not in form_data and field.get("default_value") is not None:
            form_data[name] = field["default_value"]
    submission = {"submitted": True, "timestamp": step.engine.now().isoformat()}
    step.context.merge_form_data({f"form_{step.node.id}": submission})
    return NodeOutcome.advance(step.require_next(), output={"form": step.data.get("form_id"), **submission})


async def handle_condition(step: NodeStep) -> NodeOutcome:
    """Evaluate the node's predicates and pick the branch.

    The combined result of the node-level predicates is stored in
    ``variables["condition_<node>_result"]``. The branch is the first guarded
    edge whose predicate holds, else ``default_path`` when a connection leads
    to it.
    """
    data = step.data
    result = step.engine.evaluator.evaluate(
        data.get("conditions"), data.get("operator") or LogicalOperator.AND, step.context
    )
    step.context.set_variable(f"condition_{step.node.id}_result", result)

    target = step.graph.branch_target(step.node.id, step.context)
    default_path = data.get("default_path")
    if target is None and default_path and step.graph.connects(step.node.id, default_path):
        target = default_path
    if not target:
        msg = f"No matching branch for condition node '{step.node.id}'"
        raise ExecutionError(msg, node_id=step.node.id)
    logger.debug("Condition %s evaluated to %s, branching to %s", step.node.id, result, target)
    return NodeOutcome.advance(target, output={"result": result, "next_node_id": target})


async def handle_action(step: NodeStep) -> NodeOutcome:
    """Run the node's action through the dispatcher.

    With ``error_handling == continue`` a failed action is recorded and the
    instance advances; otherwise the failure propagates.
    """
    data = step.data
    action_type = ActionType(data["action_type"])
    policy = RetryPolicy.from_dict(data.get("retry_policy"))
    if policy is None and step.definition.config.max_retries:
        policy = RetryPolicy(max_retries=step.definition.config.max_retries)

    try:
        result = await step.engine.dispatcher.execute(
            action_type,
            data.get("config") or {},
            step.context,
            policy,
            node_id=step.node.id,
            instance_id=step.instance.id,
            cancel_check=step.should_stop,
        )
    except ActionCancelledError:
        raise
    except (ActionError, ActionHandlerNotFoundError) as exc:
        if step.definition.config.error_handling != ErrorHandling.CONTINUE:
            raise
        logger.warning("Action node %s failed, continuing: %s", step.node.id, exc)
        return NodeOutcome.advance(
            step.require_next(),
            error={"message": str(exc), "type": type(exc).__name__, "attempts": getattr(exc, "attempts", None)},
        )
    return NodeOutcome.advance(step.require_next(), output={"action_type": str(action_type), "result": result})


async def handle_wait(step: NodeStep) -> NodeOutcome:
    """Suspend on a timer, an external event, or a polled condition."""
    data = step.data
    wait_type = data.get("wait_type")
    node_id = step.node.id

    if wait_type == WaitType.TIME:
        duration = data.get("duration")
        if not isinstance(duration, int | float) or isinstance(duration, bool):
            msg = "Duration required for time wait"
            raise ExecutionError(msg, node_id=node_id)
        task = await step.schedule(TaskType.WAIT, duration)
        await _schedule_timeout(step)
        return NodeOutcome.suspend(
            {"kind": SuspensionKind.TIME, "node_id": node_id, "resume_at": task.scheduled_for.isoformat()}
        )

    if wait_type == WaitType.EVENT:
        await _schedule_timeout(step)
        return NodeOutcome.suspend({"kind": SuspensionKind.EVENT, "node_id": node_id, "event_type": data.get("event_type")})

    if wait_type == WaitType.CONDITION:
        if step.engine.evaluator.evaluate_single(data["condition"], step.context):
            await step.discard_tasks()
            return NodeOutcome.advance(step.require_next(), output={"condition": True})
        interval = data.get("poll_interval") or step.engine.condition_poll_interval
        await step.schedule(TaskType.CONDITION_CHECK, interval)
        await _schedule_timeout(step)
        return NodeOutcome.suspend({"kind": SuspensionKind.CONDITION, "node_id": node_id})

    msg = f"Unknown wait type '{wait_type}'"
    raise ExecutionError(msg, node_id=node_id)


async def _schedule_timeout(step: NodeStep) -> None:
    timeout = step.data.get("timeout")
    if not timeout:
        return
    pending = await step.engine.store.list_tasks(step.instance.id, pending_only=True)
    if any(task.task_type == TaskType.TIMEOUT and task.node_id == step.node.id for task in pending):
        return
    await step.schedule(TaskType.TIMEOUT, timeout)


def _approvers(data: dict[str, Any], context: ExecutionContext) -> list[str]:
    if data.get("approver_type") == ApproverType.DYNAMIC:
        value = resolve_field(str(data.get("approver_field") or ""), context)
        if value is MISSING or value is None:
            return []
        return [str(item) for item in value] if isinstance(value, list) else [str(value)]
    approver_ids = data.get("approver_ids") or []
    if approver_ids:
        return [str(approver) for approver in approver_ids]
    role = data.get("approver_role")
    return [str(role)] if role else []


async def handle_approval(step: NodeStep) -> NodeOutcome:
    """Advance once a decision is recorded, otherwise open an approval and wait.

    Opening an approval creates the approval record, an escalation task and
    reminder tasks when the node configures escalation, and emits
    ``approval:required``.
    """
    data = step.data
    node_id = step.node.id
    context = step.context

    decision_key = approval_variable(node_id, "decision")
    if decision_key in context.variables:
        await step.discard_tasks()
        return NodeOutcome.advance(
            step.require_next(),
            output={
                "decision": context.variables[decision_key],
                "approver": context.variables.get(approval_variable(node_id, "approver")),
            },
        )

    engine = step.engine
    approval = await engine.store.get_pending_approval(step.instance.id, node_id)
    if approval is None:
        rule = EscalationRule.from_dict(data.get("escalation"))
        approvers = _approvers(data, context)
        approval = await engine.store.create_approval(
            step.instance.id,
            node_id,
            approver_type=str(data.get("approver_type") or ApproverType.USER),
            approvers=approvers,
            options=[str(option) for option in data.get("options") or DEFAULT_APPROVAL_OPTIONS],
            escalate_to=rule.escalate_to if rule else None,
            due_at=engine.now() + timedelta(milliseconds=rule.timeout) if rule else None,
        )
        if rule is not None:
            await step.schedule(
                TaskType.ESCALATION, rule.timeout, {"escalate_to": rule.escalate_to, "approval_id": str(approval.id)}
            )
            if rule.reminder_interval:
                for delay in _reminder_delays(rule):
                    await step.schedule(TaskType.REMINDER, delay, {"approval_id": str(approval.id)})
        await engine.emit(
            WorkflowEventType.APPROVAL_REQUIRED,
            instance_id=step.instance.id,
            node_id=node_id,
            approvers=approvers,
            approval_id=approval.id,
        )

    return NodeOutcome.suspend(
        {"kind": SuspensionKind.APPROVAL, "node_id": node_id, "approval_id": str(approval.id)}
    )


def _reminder_delays(rule: EscalationRule) -> list[int]:
    interval = int(rule.reminder_interval or 0)
    delays: list[int] = []
    delay = interval
    while delay < rule.timeout and (rule.max_reminders is None or len(delays) < rule.max_reminders):
        delays.append(delay)
        delay += interval
    return delays


class NodeHandlerRegistry:
    """Maps node types to their handlers."""

    def __init__(self, handlers: dict[str, NodeHandler] | None = None) -> None:
        self._handlers: dict[str, NodeHandler] = dict(handlers or {})

    @classmethod
    def default(cls) -> NodeHandlerRegistry:
        """Create a registry with a handler for every built-in node type."""
        return cls(
            {
                NodeType.START: handle_start,
                NodeType.END: handle_end,
                NodeType.FORM: handle_form,
                NodeType.CONDITION: handle_condition,
                NodeType.ACTION: handle_action,
                NodeType.WAIT: handle_wait,
                NodeType.APPROVAL: handle_approval,
            }
        )

    def register(self, node_type: str, handler: NodeHandler) -> None:
        self._handlers[str(node_type)] = handler

    def get(self, node_type: str) -> NodeHandler:
        """Return the handler for ``node_type``.

        Raises:
            ExecutionError: If no handler is registered.
        """
        try:
            return self._handlers[str(node_type)]
        except KeyError:
            msg = f"Unknown node type: {node_type}"
            raise ExecutionError(msg) from None

    def __contains__(self, node_type: object) -> bool:
        return str(node_type) in self._handlers
