"""Core type definitions for litestar-flows.

This module defines the fundamental enums, status transition table and type
aliases used throughout the workflow system.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, TypeAlias

__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "ActionType",
    "ApprovalStatus",
    "ApproverType",
    "ContextMapping",
    "DataType",
    "ErrorHandling",
    "HistoryAction",
    "InstanceStatus",
    "LogicalOperator",
    "NodeType",
    "Operator",
    "TaskType",
    "TriggerType",
    "WaitType",
]


class NodeType(StrEnum):
    """Classification of nodes within a workflow graph.

    Attributes:
        START: Entry point; exactly one per definition.
        END: Terminal node; completes the instance.
        FORM: Merges submitted data into form data and advances.
        CONDITION: Branches on predicates attached to outgoing edges.
        ACTION: Invokes a side-effecting action handler.
        WAIT: Suspends on a timer, an external event or a polled condition.
        APPROVAL: Suspends until a human decision is submitted.
    """

    START = "start"
    END = "end"
    FORM = "form"
    CONDITION = "condition"
    ACTION = "action"
    WAIT = "wait"
    APPROVAL = "approval"


class InstanceStatus(StrEnum):
    """Overall status of a workflow instance.

    Attributes:
        PENDING: Created but traversal has not begun.
        RUNNING: Actively traversing nodes.
        PAUSED: Suspended by an operator.
        WAITING: Suspended on a wait or approval node.
        COMPLETED: Reached an end node.
        FAILED: Terminated due to an error.
        CANCELLED: Cancelled by an operator.
    """

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[InstanceStatus] = frozenset(
    {InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED}
)
"""Statuses after which an instance is immutable."""

ALLOWED_TRANSITIONS: dict[InstanceStatus, frozenset[InstanceStatus]] = {
    InstanceStatus.PENDING: frozenset({InstanceStatus.RUNNING, InstanceStatus.FAILED, InstanceStatus.CANCELLED}),
    InstanceStatus.RUNNING: frozenset(
        {
            InstanceStatus.WAITING,
            InstanceStatus.PAUSED,
            InstanceStatus.COMPLETED,
            InstanceStatus.FAILED,
            InstanceStatus.CANCELLED,
        }
    ),
    InstanceStatus.PAUSED: frozenset({InstanceStatus.RUNNING, InstanceStatus.CANCELLED}),
    InstanceStatus.WAITING: frozenset({InstanceStatus.RUNNING, InstanceStatus.CANCELLED, InstanceStatus.FAILED}),
    InstanceStatus.COMPLETED: frozenset(),
    InstanceStatus.FAILED: frozenset(),
    InstanceStatus.CANCELLED: frozenset(),
}
"""Status state machine: current status to the set of statuses it may move to."""


class ActionType(StrEnum):
    """Side effects an action node can request.

    Each type maps to one handler in the action handler registry.
    """

    SEND_WHATSAPP = "send_whatsapp"
    SEND_EMAIL = "send_email"
    GENERATE_PDF = "generate_pdf"
    CALL_WEBHOOK = "call_webhook"
    UPDATE_DATABASE = "update_database"
    CREATE_TASK = "create_task"
    NOTIFY_USER = "notify_user"


class TriggerType(StrEnum):
    """How an instance was started."""

    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    API = "api"


class HistoryAction(StrEnum):
    """Kind of event recorded in an instance's history."""

    ENTERED = "entered"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    APPROVAL_RECEIVED = "approval_received"
    SIGNAL_RECEIVED = "signal_received"


class TaskType(StrEnum):
    """Kind of deferred work stored as a scheduled task.

    Attributes:
        WAIT: Resume the instance after a fixed delay.
        CONDITION_CHECK: Re-enter a condition-poll wait node.
        REMINDER: Remind approvers of a pending decision.
        TIMEOUT: Fail the instance if it is still suspended.
        ESCALATION: Escalate a pending approval.
    """

    WAIT = "wait"
    CONDITION_CHECK = "condition_check"
    REMINDER = "reminder"
    TIMEOUT = "timeout"
    ESCALATION = "escalation"


class WaitType(StrEnum):
    """Sub-modes of a wait node."""

    TIME = "time"
    EVENT = "event"
    CONDITION = "condition"


class ErrorHandling(StrEnum):
    """Workflow-level policy applied when an action node fails.

    Attributes:
        STOP: Fail the instance.
        CONTINUE: Record the failure and advance to the next node.
        ROLLBACK: Restore the node checkpoint, then fail the instance.
    """

    STOP = "stop"
    CONTINUE = "continue"
    ROLLBACK = "rollback"


class ApproverType(StrEnum):
    """How approvers of an approval node are designated."""

    USER = "user"
    ROLE = "role"
    DYNAMIC = "dynamic"


class ApprovalStatus(StrEnum):
    """Lifecycle of an approval record."""

    PENDING = "pending"
    DECIDED = "decided"
    CANCELLED = "cancelled"


class Operator(StrEnum):
    """Comparison operators supported by predicates."""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    CONTAINS = "contains"
    EXISTS = "exists"
    IN = "in"
    NOT_IN = "not_in"


class LogicalOperator(StrEnum):
    """How a list of predicates is combined."""

    AND = "AND"
    OR = "OR"


class DataType(StrEnum):
    """Declared operand type used to cast values before comparison."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    ARRAY = "array"


ContextMapping: TypeAlias = dict[str, Any]
"""Type alias for the camelCase mapping predicates and templates resolve against."""
