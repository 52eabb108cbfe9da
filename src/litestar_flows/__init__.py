"""Litestar Flows - resumable graph workflows for Litestar.

This package executes versioned workflow graphs made of form, condition,
action, wait and approval nodes. Instances survive process restarts: their
context lives in a Redis-backed store, their status, history and deferred
work in a relational database.

Key Features:
    - Data-driven definitions with validation
    - Predicate branching and template resolution over instance data
    - Action handlers with retry and exponential backoff
    - Timers, external events, polled conditions and human approvals
    - Per-instance locking and node checkpoints for rollback
    - Litestar plugin with dependency injection

Example:
    >>> from litestar_flows import EngineSettings, WorkflowRuntime
    >>>
    >>> runtime = WorkflowRuntime.from_settings(EngineSettings())
    >>> await runtime.startup()
    >>> runtime.registry.register(onboarding_definition)
    >>> instance = await runtime.engine.start("onboarding", {"email": "ana@example.com"})
"""

from __future__ import annotations

from litestar_flows.__metadata__ import __project__, __version__
from litestar_flows.config import EngineSettings
from litestar_flows.core import (
    ExecutionContext,
    InMemoryEventBus,
    InstanceStatus,
    NodeType,
    WorkflowDefinition,
    WorkflowEventType,
    WorkflowInstanceData,
)
from litestar_flows.engine import ExecutionEngine, ScheduledResumptionProcessor, WorkflowRegistry
from litestar_flows.exceptions import (
    ActionCancelledError,
    ActionError,
    ActionExecutionError,
    ActionHandlerNotFoundError,
    ApprovalError,
    ContextNotFoundError,
    ContextSerializationError,
    ExecutionError,
    InvalidTransitionError,
    LockContentionError,
    WorkflowAlreadyCompletedError,
    WorkflowInstanceNotFoundError,
    WorkflowNotFoundError,
    WorkflowsError,
    WorkflowTimeoutError,
    WorkflowValidationError,
)
from litestar_flows.plugin import WorkflowPlugin, WorkflowPluginConfig
from litestar_flows.runtime import WorkflowRuntime

__all__ = (
    "ActionCancelledError",
    "ActionError",
    "ActionExecutionError",
    "ActionHandlerNotFoundError",
    "ApprovalError",
    "ContextNotFoundError",
    "ContextSerializationError",
    "EngineSettings",
    "ExecutionContext",
    "ExecutionEngine",
    "ExecutionError",
    "InMemoryEventBus",
    "InstanceStatus",
    "InvalidTransitionError",
    "LockContentionError",
    "NodeType",
    "ScheduledResumptionProcessor",
    "WorkflowAlreadyCompletedError",
    "WorkflowDefinition",
    "WorkflowEventType",
    "WorkflowInstanceData",
    "WorkflowInstanceNotFoundError",
    "WorkflowNotFoundError",
    "WorkflowPlugin",
    "WorkflowPluginConfig",
    "WorkflowRegistry",
    "WorkflowRuntime",
    "WorkflowTimeoutError",
    "WorkflowValidationError",
    "WorkflowsError",
    "__project__",
    "__version__",
)
