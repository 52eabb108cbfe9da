"""Workflow definition, node and edge structures.

This module provides the immutable data structures describing a workflow graph:
typed nodes, optionally guarded edges, workflow variables and workflow-level
configuration. Definitions are usually loaded from their persisted camelCase
form with :meth:`WorkflowDefinition.from_dict`.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from litestar_flows.core.types import (
    ActionType,
    DataType,
    ErrorHandling,
    LogicalOperator,
    NodeType,
    Operator,
    WaitType,
)

__all__ = [
    "UNSET",
    "Edge",
    "EscalationRule",
    "Node",
    "Predicate",
    "RetryPolicy",
    "Variable",
    "WorkflowConfig",
    "WorkflowDefinition",
    "to_snake_keys",
]

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

# Keys whose values are user payloads and keep their original spelling.
_OPAQUE_KEYS = frozenset({"config", "value", "default_value", "default", "headers", "body"})


class _Unset:
    """Marker for a predicate value that was never provided."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()
"""Sentinel distinguishing "no comparison value" from an explicit ``None``."""


def _snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def to_snake_keys(value: Any) -> Any:
    """Recursively convert mapping keys from camelCase to snake_case.

    Values stored under payload keys (``config``, ``value``, ``headers``, ...)
    are left untouched.

    Args:
        value: A mapping, list or scalar.

    Returns:
        The converted structure.

    Example:
        >>> to_snake_keys({"waitType": "time", "config": {"apiKey": "x"}})
        {'wait_type': 'time', 'config': {'apiKey': 'x'}}
    """
    if isinstance(value, Mapping):
        converted: dict[str, Any] = {}
        for key, item in value.items():
            new_key = _snake(key) if isinstance(key, str) else key
            converted[new_key] = item if new_key in _OPAQUE_KEYS else to_snake_keys(item)
        return converted
    if isinstance(value, list):
        return [to_snake_keys(item) for item in value]
    return value


@dataclass(frozen=True)
class Predicate:
    """A single typed comparison against a context field.

    Attributes:
        field: Dotted path resolved against the execution context.
        operator: One of the :class:`~litestar_flows.core.types.Operator` values.
        value: Comparison operand; :data:`UNSET` when omitted.
        data_type: Optional type both operands are cast to before comparing.

    Example:
        >>> Predicate(field="age", operator="gte", value=18, data_type="number")
        Predicate(field='age', operator='gte', value=18, data_type='number')
    """

    field: str
    operator: str
    value: Any = UNSET
    data_type: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | Predicate) -> Predicate:
        """Build a predicate from its persisted form.

        Args:
            data: A mapping using either camelCase or snake_case keys, or an
                existing predicate which is returned unchanged.

        Returns:
            The predicate.
        """
        if isinstance(data, Predicate):
            return data
        return cls(
            field=data.get("field", ""),
            operator=data.get("operator", ""),
            value=data.get("value", UNSET),
            data_type=data.get("data_type", data.get("dataType")),
        )

    def validate(self) -> list[str]:
        """Check the predicate is well formed.

        Returns:
            List of problems. Empty list if valid.
        """
        errors: list[str] = []
        if not self.field:
            errors.append("predicate is missing a field")
        if self.operator not in Operator.__members__.values():
            errors.append(f"unknown operator '{self.operator}'")
        elif self.operator != Operator.EXISTS and self.value is UNSET:
            errors.append(f"operator '{self.operator}' on field '{self.field}' requires a value")
        if self.data_type is not None and self.data_type not in DataType.__members__.values():
            errors.append(f"unknown data type '{self.data_type}'")
        return errors


@dataclass(frozen=True)
class Node:
    """A typed step in a workflow graph.

    Attributes:
        id: Identifier, unique within the definition.
        type: The node type.
        data: Type-specific configuration with snake_case keys.
        position: Editor coordinates; carried through but never interpreted.
    """

    id: str
    type: NodeType
    data: dict[str, Any] = field(default_factory=dict)
    position: dict[str, float] | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Node:
        return cls(
            id=str(data["id"]),
            type=NodeType(data["type"]),
            data=to_snake_keys(dict(data.get("data") or {})),
            position=data.get("position"),
        )

    @property
    def label(self) -> str:
        return str(self.data.get("label") or self.id)


@dataclass(frozen=True)
class Edge:
    """A directed connection between two nodes.

    Attributes:
        source: Id of the node the edge leaves.
        target: Id of the node the edge enters.
        condition: Optional predicate guarding the edge.
        id: Optional edge identifier.
        label: Optional display label.

    Example:
        >>> Edge(source="check_age", target="adult", condition=Predicate("age", "gte", 18))
    """

    source: str
    target: str
    condition: Predicate | None = None
    id: str | None = None
    label: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Edge:
        condition = data.get("condition")
        return cls(
            source=str(data.get("source", data.get("from", ""))),
            target=str(data.get("target", data.get("to", ""))),
            condition=Predicate.from_dict(condition) if condition else None,
            id=data.get("id"),
            label=data.get("label"),
        )


@dataclass(frozen=True)
class Variable:
    """A workflow-scoped variable seeded into every new instance."""

    name: str
    type: str = "string"
    default: Any = None
    required: bool = False
    description: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Variable:
        return cls(
            name=data["name"],
            type=data.get("type", "string"),
            default=data.get("default", data.get("defaultValue", data.get("default_value"))),
            required=bool(data.get("required", False)),
            description=data.get("description"),
        )


@dataclass(frozen=True)
class RetryPolicy:
    """Retry and backoff settings for an action.

    Attributes:
        max_retries: Retries after the first attempt; attempts are ``max_retries + 1``.
        retry_delay: Delay in milliseconds before the first retry.
        backoff_multiplier: Factor applied to the delay after each failed attempt.
        retry_on_status_codes: If set, failures carrying a status code outside
            this set are not retried.
    """

    max_retries: int = 0
    retry_delay: int = 1000
    backoff_multiplier: float = 1.0
    retry_on_status_codes: frozenset[int] | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> RetryPolicy | None:
        if not data:
            return None
        retry_on = data.get("retry_on_status_codes", data.get("retry_on", data.get("retryOn")))
        return cls(
            max_retries=int(data.get("max_retries", data.get("maxRetries", 0))),
            retry_delay=int(data.get("retry_delay", data.get("retryDelay", 1000))),
            backoff_multiplier=float(data.get("backoff_multiplier", data.get("backoffMultiplier", 1.0)) or 1.0),
            retry_on_status_codes=frozenset(int(code) for code in retry_on) if retry_on else None,
        )

    def delay_before_retry(self, failed_attempts: int) -> float:
        """Return the delay in milliseconds after ``failed_attempts`` failures.

        Args:
            failed_attempts: Number of attempts that have failed so far (>= 1).

        Returns:
            ``retry_delay * backoff_multiplier ** (failed_attempts - 1)``.
        """
        return self.retry_delay * self.backoff_multiplier ** (failed_attempts - 1)

    def should_retry(self, status_code: int | None) -> bool:
        if self.retry_on_status_codes is None or status_code is None:
            return True
        return status_code in self.retry_on_status_codes


@dataclass(frozen=True)
class EscalationRule:
    """Escalation settings of an approval node. Durations are milliseconds."""

    timeout: int
    escalate_to: str
    reminder_interval: int | None = None
    max_reminders: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> EscalationRule | None:
        if not data or not data.get("timeout"):
            return None
        return cls(
            timeout=int(data["timeout"]),
            escalate_to=str(data.get("escalate_to", data.get("escalateTo", ""))),
            reminder_interval=data.get("reminder_interval", data.get("reminderInterval")),
            max_reminders=data.get("max_reminders", data.get("maxReminders")),
        )


@dataclass(frozen=True)
class WorkflowConfig:
    """Workflow-level execution settings.

    Attributes:
        max_execution_time: Advisory limit in milliseconds checked by the watchdog.
        max_retries: Default retries for actions without their own retry policy.
        error_handling: Policy applied when an action node fails.
        notifications: Opaque notification preferences.
    """

    max_execution_time: int | None = None
    max_retries: int | None = None
    error_handling: ErrorHandling = ErrorHandling.STOP
    notifications: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> WorkflowConfig:
        data = to_snake_keys(dict(data or {}))
        return cls(
            max_execution_time=data.get("max_execution_time"),
            max_retries=data.get("max_retries"),
            error_handling=ErrorHandling(data.get("error_handling") or ErrorHandling.STOP),
            notifications=dict(data.get("notifications") or {}),
        )


@dataclass(frozen=True)
class WorkflowDefinition:
    """Declarative, immutable workflow graph.

    Attributes:
        id: Identifier used to re-fetch the definition on every step.
        name: Human readable name.
        nodes: Typed nodes; ids are unique.
        edges: Connections in declaration order.
        variables: Variables seeded into new instances.
        config: Workflow-level settings.
        version: Definition version.
        description: Optional description.

    Example:
        >>> definition = WorkflowDefinition.from_dict(
        ...     {
        ...         "id": "wf-1",
        ...         "name": "signup",
        ...         "nodes": [{"id": "s", "type": "start"}, {"id": "e", "type": "end"}],
        ...         "connections": [{"from": "s", "to": "e"}],
        ...     }
        ... )
        >>> definition.validate()
        []
    """

    id: str
    name: str
    nodes: tuple[Node, ...]
    edges: tuple[Edge, ...]
    variables: tuple[Variable, ...] = ()
    config: WorkflowConfig = field(default_factory=WorkflowConfig)
    version: int = 1
    description: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WorkflowDefinition:
        """Build a definition from its persisted representation.

        Accepts either a flat mapping or one whose graph lives under a
        ``definition`` key, with ``connections`` or ``edges``.

        Args:
            data: The persisted definition.

        Returns:
            The definition. It is not validated.
        """
        graph = data.get("definition") or data
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", data.get("id", ""))),
            nodes=tuple(Node.from_dict(node) for node in graph.get("nodes", ())),
            edges=tuple(Edge.from_dict(edge) for edge in graph.get("connections", graph.get("edges", ()))),
            variables=tuple(Variable.from_dict(var) for var in graph.get("variables") or ()),
            config=WorkflowConfig.from_dict(graph.get("config")),
            version=int(data.get("version", 1)),
            description=data.get("description"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize back to the persisted camelCase-compatible form."""
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "definition": {
                "nodes": [
                    {"id": n.id, "type": n.type.value, "position": n.position, "data": n.data} for n in self.nodes
                ],
                "connections": [
                    {
                        "id": e.id,
                        "from": e.source,
                        "to": e.target,
                        "label": e.label,
                        "condition": (
                            {
                                "field": e.condition.field,
                                "operator": e.condition.operator,
                                "dataType": e.condition.data_type,
                                **({} if e.condition.value is UNSET else {"value": e.condition.value}),
                            }
                            if e.condition
                            else None
                        ),
                    }
                    for e in self.edges
                ],
                "variables": [
                    {
                        "name": v.name,
                        "type": v.type,
                        "defaultValue": v.default,
                        "required": v.required,
                        "description": v.description,
                    }
                    for v in self.variables
                ],
                "config": {
                    "maxExecutionTime": self.config.max_execution_time,
                    "maxRetries": self.config.max_retries,
                    "errorHandling": self.config.error_handling.value,
                    "notifications": self.config.notifications,
                },
            },
        }

    @property
    def start_node(self) -> Node | None:
        return next((node for node in self.nodes if node.type == NodeType.START), None)

    def get_node(self, node_id: str) -> Node | None:
        """Look up a node by id.

        Args:
            node_id: The node identifier.

        Returns:
            The node or None if it is not declared.
        """
        return next((node for node in self.nodes if node.id == node_id), None)

    def outgoing(self, node_id: str) -> list[Edge]:
        """Return the edges leaving ``node_id`` in declaration order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def default_variables(self) -> dict[str, Any]:
        """Return the initial variable values of a new instance."""
        return {var.name: var.default for var in self.variables if var.default is not None}

    def validate(self) -> list[str]:
        """Validate the definition for structural and configuration issues.

        Checks for exactly one start node, at least one end node, unique node
        ids, dangling edge references, nodes unreachable from the start node,
        malformed predicates and missing type-specific settings. A condition
        node's default path must be the target of one of its connections.

        Returns:
            List of validation error messages. Empty list if valid.

        Example:
            >>> errors = definition.validate()
            >>> if errors:
            ...     print("Validation errors:", errors)
        """
        errors: list[str] = []
        node_ids = [node.id for node in self.nodes]
        known = set(node_ids)

        starts = [node for node in self.nodes if node.type == NodeType.START]
        if not starts:
            errors.append("Workflow must have a start node")
        elif len(starts) > 1:
            errors.append("Workflow must have exactly one start node")
        if not any(node.type == NodeType.END for node in self.nodes):
            errors.append("Workflow must have at least one end node")

        duplicates = sorted({node_id for node_id in node_ids if node_ids.count(node_id) > 1})
        errors.extend(f"Duplicate node id '{node_id}'" for node_id in duplicates)

        for i, edge in enumerate(self.edges):
            if edge.source not in known:
                errors.append(f"Connection {i}: source node '{edge.source}' not found")
            if edge.target not in known:
                errors.append(f"Connection {i}: target node '{edge.target}' not found")
            if edge.condition is not None:
                errors.extend(f"Connection {i}: {problem}" for problem in edge.condition.validate())

        if len(starts) == 1:
            reachable = self._reachable_from(starts[0].id)
            for node in self.nodes:
                if node.type != NodeType.START and node.id not in reachable:
                    errors.append(f"Node '{node.id}' is unreachable from the start node")

        for node in self.nodes:
            errors.extend(f"Node '{node.id}': {problem}" for problem in self._validate_node(node, known))

        return errors

    def _reachable_from(self, start: str) -> set[str]:
        reachable: set[str] = set()
        to_visit = [start]
        while to_visit:
            current = to_visit.pop()
            if current in reachable:
                continue
            reachable.add(current)
            to_visit.extend(edge.target for edge in self.outgoing(current) if edge.target not in reachable)
        return reachable

    def _validate_node(self, node: Node, known: set[str]) -> list[str]:
        data = node.data
        problems: list[str] = []
        if node.type == NodeType.ACTION:
            action_type = data.get("action_type")
            if action_type not in ActionType.__members__.values():
                problems.append(f"unknown action type '{action_type}'")
        elif node.type == NodeType.CONDITION:
            for raw in data.get("conditions") or ():
                problems.extend(Predicate.from_dict(raw).validate())
            if data.get("operator", LogicalOperator.AND) not in LogicalOperator.__members__.values():
                problems.append(f"unknown logical operator '{data.get('operator')}'")
            default_path = data.get("default_path")
            if default_path and default_path not in known:
                problems.append(f"default path '{default_path}' not found")
            elif default_path and all(edge.target != default_path for edge in self.outgoing(node.id)):
                problems.append(f"default path '{default_path}' has no connection from this node")
        elif node.type == NodeType.WAIT:
            wait_type = data.get("wait_type")
            if wait_type not in WaitType.__members__.values():
                problems.append(f"unknown wait type '{wait_type}'")
            elif wait_type == WaitType.TIME and not isinstance(data.get("duration"), int | float):
                problems.append("time wait requires a duration")
            elif wait_type == WaitType.CONDITION:
                if not data.get("condition"):
                    problems.append("condition wait requires a condition")
                else:
                    problems.extend(Predicate.from_dict(data["condition"]).validate())
        return problems
