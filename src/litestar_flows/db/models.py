"""SQLAlchemy models for workflow persistence.

This module defines the database models of the relational store:
- WorkflowDefinitionModel: Persisted workflow definitions, one row per version
- WorkflowInstanceModel: Instances with their status and context snapshot
- HistoryEntryModel: Append-only, per-instance ordered node history
- ScheduledTaskModel: Deferred work (timers, polls, timeouts, escalations)
- ApprovalModel: Pending and decided human approvals
- HumanTaskModel: Tasks assigned to people by workflow actions
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from advanced_alchemy.base import UUIDAuditBase
from advanced_alchemy.types import DateTimeUTC
from sqlalchemy import JSON, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from litestar_flows.core.types import ApprovalStatus, HistoryAction, InstanceStatus, TaskType, TriggerType

__all__ = [
    "ApprovalModel",
    "HistoryEntryModel",
    "HumanTaskModel",
    "ScheduledTaskModel",
    "WorkflowDefinitionModel",
    "WorkflowInstanceModel",
]


# Cross-database JSON type: uses JSONB for PostgreSQL, JSON for others (SQLite, MySQL, etc.)
JSONType = JSON().with_variant(JSONB, "postgresql")


class WorkflowDefinitionModel(UUIDAuditBase):
    """Persisted workflow definition version.

    Attributes:
        definition_key: The definition id instances refer to.
        version: Definition version; the highest active one is current.
        name: Human-readable name.
        description: Optional description.
        definition_json: Serialized WorkflowDefinition.
        is_active: Whether this version may be served.
    """

    __tablename__ = "flow_definitions"
    __table_args__ = (
        Index("ix_flow_definitions_key_version", "definition_key", "version", unique=True),
        Index("ix_flow_definitions_key_active", "definition_key", "is_active"),
    )

    definition_key: Mapped[str] = mapped_column(String(255))
    version: Mapped[int] = mapped_column(Integer, default=1)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    definition_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    is_active: Mapped[bool] = mapped_column(default=True)


class WorkflowInstanceModel(UUIDAuditBase):
    """Persisted workflow instance.

    Terminal rows are never updated again; the store enforces this with
    conditional updates on ``status``.

    Attributes:
        definition_id: Id of the definition the instance runs.
        status: Current status.
        current_node_id: Node being executed or suspended on.
        context_data: Encoded snapshot of the execution context.
        user_id: User who started the instance.
        triggered_by: How the instance was started.
        trigger_data: Payload supplied by the trigger.
        started_at: Creation time.
        paused_at: Last pause.
        resumed_at: Last resume.
        completed_at: Completion time.
        failed_at: Failure time.
        cancelled_at: Cancellation time.
        execution_time_ms: Wall time from start to completion.
        error_message: Failure message.
        error_detail: Minimal failure detail, never a traceback.
    """

    __tablename__ = "flow_instances"
    __table_args__ = (
        Index("ix_flow_instances_status", "status"),
        Index("ix_flow_instances_definition_id", "definition_id"),
        Index("ix_flow_instances_user_id", "user_id"),
    )

    definition_id: Mapped[str] = mapped_column(String(255))
    status: Mapped[InstanceStatus] = mapped_column(
        Enum(InstanceStatus, native_enum=False, length=50),
        default=InstanceStatus.PENDING,
    )
    current_node_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    context_data: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    triggered_by: Mapped[TriggerType] = mapped_column(
        Enum(TriggerType, native_enum=False, length=50),
        default=TriggerType.MANUAL,
    )
    trigger_data: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    started_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True))
    paused_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    resumed_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_detail: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    # Relationships
    history: Mapped[list[HistoryEntryModel]] = relationship(
        back_populates="instance",
        lazy="noload",
        order_by="HistoryEntryModel.sequence",
    )
    scheduled_tasks: Mapped[list[ScheduledTaskModel]] = relationship(
        back_populates="instance",
        lazy="noload",
    )
    approvals: Mapped[list[ApprovalModel]] = relationship(
        back_populates="instance",
        lazy="noload",
    )


class HistoryEntryModel(UUIDAuditBase):
    """Append-only record of a node event.

    Attributes:
        instance_id: Foreign key to the workflow instance.
        sequence: Per-instance position, unique and strictly increasing.
        action: What happened.
        node_id: Node concerned.
        node_type: Type of that node.
        input_data: Encoded input snapshot.
        output_data: Encoded output snapshot.
        error_data: Encoded error summary.
        duration_ms: Time spent in the node.
    """

    __tablename__ = "flow_history"
    __table_args__ = (Index("ix_flow_history_instance_sequence", "instance_id", "sequence", unique=True),)

    instance_id: Mapped[UUID] = mapped_column(
        ForeignKey("flow_instances.id", ondelete="CASCADE"),
    )
    sequence: Mapped[int] = mapped_column(Integer)
    action: Mapped[HistoryAction] = mapped_column(Enum(HistoryAction, native_enum=False, length=50))
    node_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    node_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    input_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    output_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Relationships
    instance: Mapped[WorkflowInstanceModel] = relationship(back_populates="history")


class ScheduledTaskModel(UUIDAuditBase):
    """Deferred work for an instance, polled by the resumption processor.

    Attributes:
        instance_id: Foreign key to the workflow instance.
        node_id: Node that scheduled the task.
        task_type: Kind of work.
        scheduled_for: When the task becomes due.
        payload: Task specific data.
        is_executed: Whether the task was handled or discarded.
        failed: Whether the task exhausted its retries.
        executed_at: When the task was handled.
        retry_count: Failed attempts so far.
        max_retries: Attempts before the task is marked failed.
        error_message: Last failure message.
    """

    __tablename__ = "flow_scheduled_tasks"
    __table_args__ = (
        Index("ix_flow_scheduled_tasks_due", "is_executed", "failed", "scheduled_for"),
        Index("ix_flow_scheduled_tasks_instance_id", "instance_id"),
    )

    instance_id: Mapped[UUID] = mapped_column(
        ForeignKey("flow_instances.id", ondelete="CASCADE"),
    )
    node_id: Mapped[str] = mapped_column(String(255))
    task_type: Mapped[TaskType] = mapped_column(Enum(TaskType, native_enum=False, length=50))
    scheduled_for: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True))
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    is_executed: Mapped[bool] = mapped_column(default=False)
    failed: Mapped[bool] = mapped_column(default=False)
    executed_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    instance: Mapped[WorkflowInstanceModel] = relationship(back_populates="scheduled_tasks")


class ApprovalModel(UUIDAuditBase):
    """Human approval requested by an approval node.

    Attributes:
        instance_id: Foreign key to the workflow instance.
        node_id: The approval node.
        status: Pending, decided or cancelled.
        approver_type: ``user``, ``role`` or ``dynamic``.
        approvers: User ids or role names allowed to decide.
        options: Allowed decisions.
        escalate_to: Escalation target, if configured.
        due_at: Escalation deadline.
        decision: The chosen option.
        decided_by: Who decided.
        comments: Free-text comments.
        decided_at: When the decision was recorded.
    """

    __tablename__ = "flow_approvals"
    __table_args__ = (
        Index("ix_flow_approvals_instance_node", "instance_id", "node_id"),
        Index("ix_flow_approvals_status", "status"),
    )

    instance_id: Mapped[UUID] = mapped_column(
        ForeignKey("flow_instances.id", ondelete="CASCADE"),
    )
    node_id: Mapped[str] = mapped_column(String(255))
    status: Mapped[ApprovalStatus] = mapped_column(
        Enum(ApprovalStatus, native_enum=False, length=50),
        default=ApprovalStatus.PENDING,
    )
    approver_type: Mapped[str] = mapped_column(String(50), default="user")
    approvers: Mapped[list[str]] = mapped_column(JSONType, default=list)
    options: Mapped[list[str]] = mapped_column(JSONType, default=list)
    escalate_to: Mapped[str | None] = mapped_column(String(255), nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    decision: Mapped[str | None] = mapped_column(String(255), nullable=True)
    decided_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)

    # Relationships
    instance: Mapped[WorkflowInstanceModel] = relationship(back_populates="approvals")


class HumanTaskModel(UUIDAuditBase):
    """Task assigned to a person by a ``create_task`` action.

    Attributes:
        instance_id: Instance whose action created the task, if any.
        node_id: The creating action node.
        title: Display title.
        description: Detailed description.
        assignee_id: User the task is assigned to.
        due_at: Deadline.
        priority: ``low``, ``medium`` or ``high``.
        status: ``pending`` until someone completes the task.
        completed_at: When the task was completed.
        completed_by: Who completed it.
    """

    __tablename__ = "flow_human_tasks"
    __table_args__ = (
        Index("ix_flow_human_tasks_assignee_id", "assignee_id"),
        Index("ix_flow_human_tasks_status", "status"),
    )

    instance_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("flow_instances.id", ondelete="CASCADE"),
        nullable=True,
    )
    node_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    title: Mapped[str] = mapped_column(String(500))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    assignee_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    priority: Mapped[str] = mapped_column(String(20), default="medium")
    status: Mapped[str] = mapped_column(String(50), default="pending")
    completed_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    completed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
