"""Workflow graph navigation.

This module provides successor selection for workflow definitions: the
generic "first usable edge" rule and predicate-only branch selection for
condition nodes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from litestar_flows.evaluation.conditions import ConditionEvaluator

if TYPE_CHECKING:
    from litestar_flows.core.context import ExecutionContext
    from litestar_flows.core.definition import Edge, WorkflowDefinition

__all__ = ["WorkflowGraph"]


class WorkflowGraph:
    """Graph representation of a workflow for navigation.

    Attributes:
        definition: The workflow definition this graph represents.
        evaluator: Evaluator used for edge predicates.
        _adjacency: Node id to outgoing edges, in declaration order.
    """

    def __init__(self, definition: WorkflowDefinition, evaluator: ConditionEvaluator | None = None) -> None:
        self.definition = definition
        self.evaluator = evaluator or ConditionEvaluator()
        self._adjacency: dict[str, list[Edge]] = {node.id: [] for node in definition.nodes}
        for edge in definition.edges:
            self._adjacency.setdefault(edge.source, []).append(edge)

    def next_node(self, node_id: str, context: ExecutionContext) -> str | None:
        """Select the successor of ``node_id``.

        Edges are tried in declaration order; the first one without a
        predicate, or whose predicate holds, wins.

        Args:
            node_id: The node being left.
            context: Context the edge predicates are evaluated against.

        Returns:
            The target node id, or None if no edge is usable.
        """
        for edge in self._adjacency.get(node_id, ()):
            if edge.condition is None or self.evaluator.evaluate_single(edge.condition, context):
                return edge.target
        return None

    def branch_target(self, node_id: str, context: ExecutionContext) -> str | None:
        """Return the target of the first guarded edge whose predicate holds.

        Unguarded edges are ignored; condition nodes fall back to their
        default path instead.
        """
        for edge in self._adjacency.get(node_id, ()):
            if edge.condition is not None and self.evaluator.evaluate_single(edge.condition, context):
                return edge.target
        return None

    def connects(self, source: str, target: str) -> bool:
        """Whether an edge leads from ``source`` to ``target``."""
        return any(edge.target == target for edge in self._adjacency.get(source, ()))
