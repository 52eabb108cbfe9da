"""Concrete data models for litestar-flows.

This module provides the dataclasses handed to callers: instance snapshots,
history entries, scheduled tasks and approval records. They are detached from
any database session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from litestar_flows.core.types import TERMINAL_STATUSES

if TYPE_CHECKING:
    from litestar_flows.core.context import ExecutionContext
    from litestar_flows.core.types import ApprovalStatus, HistoryAction, InstanceStatus, NodeType, TaskType, TriggerType


__all__ = ["ApprovalData", "HistoryEntry", "ScheduledTaskData", "WorkflowInstanceData"]


@dataclass
class WorkflowInstanceData:
    """Snapshot of a workflow instance.

    Attributes:
        id: Unique identifier for this workflow instance.
        definition_id: Identifier of the workflow definition.
        status: Current execution status.
        context: Execution context at the time of the snapshot.
        current_node_id: Node being executed or suspended on.
        triggered_by: How the instance was started.
        trigger_data: Payload supplied by the trigger.
        user_id: User who started the instance.
        started_at: Timestamp when the instance was created.
        paused_at: Last time the instance was paused.
        resumed_at: Last time the instance was resumed.
        completed_at: Timestamp when the instance completed.
        failed_at: Timestamp when the instance failed.
        cancelled_at: Timestamp when the instance was cancelled.
        execution_time_ms: Total wall time from start to completion.
        error_message: Error message if the instance failed.
        error_detail: Minimal structured error detail (no stack traces).
    """

    id: UUID
    definition_id: str
    status: InstanceStatus
    context: ExecutionContext
    current_node_id: str | None
    triggered_by: TriggerType
    started_at: datetime
    trigger_data: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    paused_at: datetime | None = None
    resumed_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    cancelled_at: datetime | None = None
    execution_time_ms: int | None = None
    error_message: str | None = None
    error_detail: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class HistoryEntry:
    """Append-only audit record of one node event.

    Attributes:
        id: Unique identifier of the entry.
        instance_id: Owning instance.
        sequence: Per-instance, strictly increasing position.
        action: What happened.
        node_id: Node concerned, if any.
        node_type: Type of that node.
        input_data: Snapshot of relevant input.
        output_data: Snapshot of produced output.
        error_data: Error summary for failures.
        duration_ms: Time spent in the node.
        created_at: When the entry was written.
    """

    id: UUID
    instance_id: UUID
    sequence: int
    action: HistoryAction
    created_at: datetime
    node_id: str | None = None
    node_type: NodeType | None = None
    input_data: dict[str, Any] | None = None
    output_data: dict[str, Any] | None = None
    error_data: dict[str, Any] | None = None
    duration_ms: int | None = None


@dataclass
class ScheduledTaskData:
    """Durable record of deferred work for an instance."""

    id: UUID
    instance_id: UUID
    node_id: str
    task_type: TaskType
    scheduled_for: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    is_executed: bool = False
    failed: bool = False
    executed_at: datetime | None = None
    retry_count: int = 0
    max_retries: int = 3
    error_message: str | None = None


@dataclass
class ApprovalData:
    """Pending or decided human approval for an approval node."""

    id: UUID
    instance_id: UUID
    node_id: str
    status: ApprovalStatus
    approver_type: str
    approvers: list[str] = field(default_factory=list)
    options: list[str] = field(default_factory=list)
    escalate_to: str | None = None
    due_at: datetime | None = None
    decision: str | None = None
    decided_by: str | None = None
    comments: str | None = None
    decided_at: datetime | None = None
