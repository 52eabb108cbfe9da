"""Core domain module for litestar-flows.

This module exports the fundamental building blocks: types, protocols,
context, definitions, runtime models and events.
"""

from __future__ import annotations

from litestar_flows.core.context import ExecutionContext
from litestar_flows.core.definition import (
    UNSET,
    Edge,
    EscalationRule,
    Node,
    Predicate,
    RetryPolicy,
    Variable,
    WorkflowConfig,
    WorkflowDefinition,
)
from litestar_flows.core.events import InMemoryEventBus, WorkflowEvent, WorkflowEventType
from litestar_flows.core.models import ApprovalData, HistoryEntry, ScheduledTaskData, WorkflowInstanceData
from litestar_flows.core.protocols import ActionHandler, DefinitionSource, EventBus, KeyValueStore, WorkflowStore
from litestar_flows.core.types import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    ActionType,
    ApprovalStatus,
    ApproverType,
    ContextMapping,
    DataType,
    ErrorHandling,
    HistoryAction,
    InstanceStatus,
    LogicalOperator,
    NodeType,
    Operator,
    TaskType,
    TriggerType,
    WaitType,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "UNSET",
    "ActionHandler",
    "ActionType",
    "ApprovalData",
    "ApprovalStatus",
    "ApproverType",
    "ContextMapping",
    "DataType",
    "DefinitionSource",
    "Edge",
    "ErrorHandling",
    "EscalationRule",
    "EventBus",
    "ExecutionContext",
    "HistoryAction",
    "HistoryEntry",
    "InMemoryEventBus",
    "InstanceStatus",
    "KeyValueStore",
    "LogicalOperator",
    "Node",
    "NodeType",
    "Operator",
    "Predicate",
    "RetryPolicy",
    "ScheduledTaskData",
    "TaskType",
    "TriggerType",
    "Variable",
    "WaitType",
    "WorkflowConfig",
    "WorkflowDefinition",
    "WorkflowEvent",
    "WorkflowEventType",
    "WorkflowInstanceData",
    "WorkflowStore",
]
