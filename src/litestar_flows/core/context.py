"""Workflow execution context.

This module provides the ExecutionContext dataclass which carries the mutable
state of one instance between nodes and across suspension boundaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

__all__ = ["ExecutionContext"]


@dataclass
class ExecutionContext:
    """Mutable execution state of a single workflow instance.

    The context is owned by its instance and saved as one unit on every
    transition. Predicates and templates resolve dotted paths against the
    camelCase view returned by :meth:`as_mapping`.

    Attributes:
        current_node: Id of the node being executed or suspended on.
        previous_node_id: Id of the node executed before the current one.
        visited_nodes: Ids of every node entered, in order.
        pending_nodes: Ids of nodes queued for execution.
        form_data: Submitted values keyed by logical field.
        variables: Workflow-scoped mutable values.
        metadata: Free-form execution metadata (start time, suspension info).

    Example:
        >>> context = ExecutionContext(form_data={"age": 20})
        >>> context.set_variable("approved", True)
        >>> context.as_mapping()["variables"]
        {'approved': True}
    """

    current_node: str | None = None
    previous_node_id: str | None = None
    visited_nodes: list[str] = field(default_factory=list)
    pending_nodes: list[str] = field(default_factory=list)
    form_data: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def enter(self, node_id: str) -> None:
        """Move the cursor to ``node_id`` and record the visit.

        Args:
            node_id: The node being entered.
        """
        if self.current_node is not None and self.current_node != node_id:
            self.previous_node_id = self.current_node
        self.current_node = node_id
        self.visited_nodes.append(node_id)

    def set_variable(self, key: str, value: Any) -> None:
        self.variables[key] = value

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self.variables.get(key, default)

    def merge_form_data(self, data: dict[str, Any]) -> None:
        self.form_data.update(data)

    def restore(self, snapshot: ExecutionContext) -> None:
        """Replace every field with a copy of ``snapshot``'s values."""
        restored = ExecutionContext.from_dict(snapshot.to_dict())
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(restored, name))

    def as_mapping(self) -> dict[str, Any]:
        """Return the camelCase view used for field resolution.

        The mapping shares the underlying dictionaries with the context.
        """
        return {
            "currentNode": self.current_node,
            "previousNodeId": self.previous_node_id,
            "visitedNodes": self.visited_nodes,
            "pendingNodes": self.pending_nodes,
            "formData": self.form_data,
            "variables": self.variables,
            "metadata": self.metadata,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_node": self.current_node,
            "previous_node_id": self.previous_node_id,
            "visited_nodes": list(self.visited_nodes),
            "pending_nodes": list(self.pending_nodes),
            "form_data": dict(self.form_data),
            "variables": dict(self.variables),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionContext:
        return cls(
            current_node=data.get("current_node"),
            previous_node_id=data.get("previous_node_id"),
            visited_nodes=list(data.get("visited_nodes") or []),
            pending_nodes=list(data.get("pending_nodes") or []),
            form_data=dict(data.get("form_data") or {}),
            variables=dict(data.get("variables") or {}),
            metadata=dict(data.get("metadata") or {}),
        )
