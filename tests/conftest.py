"""Shared test fixtures for litestar-flows test suite."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from litestar_flows.actions import ActionDispatcher, ActionHandlerRegistry, NotifyUserActionHandler
from litestar_flows.core.context import ExecutionContext
from litestar_flows.core.definition import WorkflowDefinition
from litestar_flows.core.types import ActionType
from litestar_flows.db import SQLAlchemyWorkflowStore
from litestar_flows.engine import ExecutionEngine, ScheduledResumptionProcessor, WorkflowRegistry
from litestar_flows.exceptions import ActionError
from litestar_flows.state import ContextStore, MemoryKeyValueStore

# =============================================================================
# Test doubles
# =============================================================================


class FrozenClock:
    """Clock returning a settable aware datetime."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class RecordingEventBus:
    """Event bus keeping every emitted event in order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def emit(self, event_type: str, **payload: Any) -> None:
        self.events.append((str(event_type), payload))

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.events if name == str(event_type)]


class RecordingSleep:
    """Replacement for ``asyncio.sleep`` that only records the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FlakyHandler:
    """Action handler failing a fixed number of times before succeeding."""

    def __init__(self, failures: int, status_code: int | None = None, result: Any = None) -> None:
        self.failures = failures
        self.status_code = status_code
        self.result = result if result is not None else {"ok": True}
        self.calls: list[dict[str, Any]] = []

    async def handle(self, action_type: str, config: dict[str, Any], context: ExecutionContext) -> Any:
        self.calls.append(config)
        if len(self.calls) <= self.failures:
            msg = f"attempt {len(self.calls)} failed"
            raise ActionError(msg, status_code=self.status_code)
        return self.result


# =============================================================================
# Core fixtures
# =============================================================================


@pytest.fixture
def clock() -> FrozenClock:
    """Frozen clock starting at a fixed instant."""
    return FrozenClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def event_bus() -> RecordingEventBus:
    """Event bus recording emitted events."""
    return RecordingEventBus()


@pytest.fixture
def sleeps() -> RecordingSleep:
    """Sleep double recording retry delays."""
    return RecordingSleep()


@pytest.fixture
def kv_backend() -> MemoryKeyValueStore:
    """In-memory key-value backend."""
    return MemoryKeyValueStore()


@pytest.fixture
def context_store(kv_backend: MemoryKeyValueStore) -> ContextStore:
    """Context store over the in-memory backend."""
    return ContextStore(kv_backend)


@pytest.fixture
async def store() -> AsyncIterator[SQLAlchemyWorkflowStore]:
    """Relational store on an in-memory SQLite database."""
    workflow_store = SQLAlchemyWorkflowStore.from_url("sqlite+aiosqlite:///:memory:")
    await workflow_store.create_all()
    yield workflow_store
    await workflow_store.close()


@pytest.fixture
def sent_emails() -> list[dict[str, Any]]:
    """Resolved configs received by the ``send_email`` test handler."""
    return []


@pytest.fixture
def action_registry(sent_emails: list[dict[str, Any]]) -> ActionHandlerRegistry:
    """Action handlers used by engine tests.

    ``send_email`` records its resolved config and returns ``{"sent": True}``;
    ``notify_user`` is the built-in handler.
    """
    registry = ActionHandlerRegistry()

    async def send_email(action_type: str, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        sent_emails.append(config)
        return {"sent": True, "to": config.get("to")}

    registry.register(ActionType.SEND_EMAIL, send_email)
    registry.register(ActionType.NOTIFY_USER, NotifyUserActionHandler())
    return registry


@pytest.fixture
def dispatcher(
    action_registry: ActionHandlerRegistry, event_bus: RecordingEventBus, sleeps: RecordingSleep
) -> ActionDispatcher:
    """Dispatcher that never really sleeps."""
    return ActionDispatcher(action_registry, event_bus=event_bus, sleep=sleeps)


@pytest.fixture
def flaky_handler() -> type[FlakyHandler]:
    """The failing-then-succeeding handler class."""
    return FlakyHandler


@pytest.fixture
def workflow_registry() -> WorkflowRegistry:
    """Empty in-memory definition registry."""
    return WorkflowRegistry()


@pytest.fixture
def engine(
    workflow_registry: WorkflowRegistry,
    store: SQLAlchemyWorkflowStore,
    context_store: ContextStore,
    dispatcher: ActionDispatcher,
    event_bus: RecordingEventBus,
    clock: FrozenClock,
) -> ExecutionEngine:
    """Execution engine wired to in-memory collaborators."""
    return ExecutionEngine(
        workflow_registry,
        store,
        context_store,
        dispatcher,
        event_bus=event_bus,
        condition_poll_interval=30000,
        clock=clock,
    )


@pytest.fixture
def processor(engine: ExecutionEngine) -> ScheduledResumptionProcessor:
    """Scheduled resumption processor for the engine."""
    return ScheduledResumptionProcessor(engine)


# =============================================================================
# Definition builders
# =============================================================================


@pytest.fixture
def build_definition(workflow_registry: WorkflowRegistry) -> Callable[..., WorkflowDefinition]:
    """Factory registering a definition built from nodes and connections.

    Nodes are given as ``(id, type)`` or ``(id, type, data)`` tuples and
    connections as ``(from, to)`` or ``(from, to, condition)`` tuples.
    """

    def build(
        nodes: list[tuple[Any, ...]],
        connections: list[tuple[Any, ...]],
        *,
        definition_id: str = "flow",
        config: dict[str, Any] | None = None,
        variables: list[dict[str, Any]] | None = None,
        version: int = 1,
    ) -> WorkflowDefinition:
        payload = {
            "id": definition_id,
            "name": definition_id.replace("_", " ").title(),
            "version": version,
            "definition": {
                "nodes": [
                    {"id": node[0], "type": node[1], "data": node[2] if len(node) > 2 else {}} for node in nodes
                ],
                "connections": [
                    {
                        "id": f"{conn[0]}-{conn[1]}",
                        "from": conn[0],
                        "to": conn[1],
                        **({"condition": conn[2]} if len(conn) > 2 else {}),
                    }
                    for conn in connections
                ],
                "variables": variables or [],
                "config": config or {},
            },
        }
        return workflow_registry.register(payload)

    return build


@pytest.fixture
def age_gate(build_definition: Callable[..., WorkflowDefinition]) -> WorkflowDefinition:
    """``start -> condition(age >= 18 ? adult : minor) -> end``."""
    return build_definition(
        [
            ("start", "start"),
            ("check_age", "condition", {"label": "Adult?"}),
            ("adult", "form", {"formId": "adult-form"}),
            ("minor", "form", {"formId": "minor-form"}),
            ("end", "end"),
        ],
        [
            ("start", "check_age"),
            ("check_age", "adult", {"field": "age", "operator": "gte", "value": 18, "dataType": "number"}),
            ("check_age", "minor", {"field": "age", "operator": "lt", "value": 18, "dataType": "number"}),
            ("adult", "end"),
            ("minor", "end"),
        ],
        definition_id="age_gate",
    )
