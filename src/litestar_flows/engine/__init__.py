"""Workflow execution: engine, node handlers, graph navigation and scheduling."""

from __future__ import annotations

from litestar_flows.engine.executor import ExecutionEngine
from litestar_flows.engine.graph import WorkflowGraph
from litestar_flows.engine.nodes import NodeHandlerRegistry, NodeOutcome, NodeStep, OutcomeKind, SuspensionKind
from litestar_flows.engine.registry import WorkflowRegistry
from litestar_flows.engine.scheduler import ScheduledResumptionProcessor

__all__ = [
    "ExecutionEngine",
    "NodeHandlerRegistry",
    "NodeOutcome",
    "NodeStep",
    "OutcomeKind",
    "ScheduledResumptionProcessor",
    "SuspensionKind",
    "WorkflowGraph",
    "WorkflowRegistry",
]
