"""Tests for WorkflowRuntime assembly."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from litestar_flows import EngineSettings, InMemoryEventBus, InstanceStatus, WorkflowRuntime
from litestar_flows.actions import ActionHandlerRegistry
from litestar_flows.core.types import ActionType
from litestar_flows.db import DatabaseDefinitionSource
from litestar_flows.state import MemoryKeyValueStore

DEFINITION = {
    "id": "greeting",
    "name": "Greeting",
    "version": 1,
    "definition": {
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "notify", "type": "action", "data": {"actionType": "notify_user", "config": {"message": "Hi {{ name }}"}}},
            {"id": "end", "type": "end"},
        ],
        "connections": [{"from": "start", "to": "notify"}, {"from": "notify", "to": "end"}],
    },
}


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        _env_file=None,
        redis_url=None,
        database_url="sqlite+aiosqlite:///:memory:",
        context_ttl=600,
        condition_poll_interval=15000,
        task_max_retries=5,
    )


@pytest.fixture
async def runtime(settings: EngineSettings) -> AsyncIterator[WorkflowRuntime]:
    """A started runtime without the background scheduler."""
    workflow_runtime = WorkflowRuntime.from_settings(settings)
    await workflow_runtime.startup()
    yield workflow_runtime
    await workflow_runtime.shutdown()


@pytest.mark.integration
@pytest.mark.asyncio
class TestWorkflowRuntime:
    """Tests for WorkflowRuntime."""

    async def test_settings_are_applied(self, runtime: WorkflowRuntime) -> None:
        assert isinstance(runtime.backend, MemoryKeyValueStore)
        assert runtime.context_store.context_ttl == 600
        assert runtime.engine.condition_poll_interval == 15000
        assert runtime.store.task_max_retries == 5
        assert runtime.definitions is runtime.registry
        assert isinstance(runtime.event_bus, InMemoryEventBus)
        assert ActionType.CALL_WEBHOOK in runtime.handlers
        assert ActionType.UPDATE_DATABASE in runtime.handlers
        assert ActionType.CREATE_TASK in runtime.handlers

    async def test_runs_a_workflow_end_to_end(self, runtime: WorkflowRuntime) -> None:
        """Test the wired engine runs a definition and publishes events on its bus."""
        seen: list[str] = []
        runtime.event_bus.subscribe("*", lambda event: seen.append(event.event_type))
        runtime.registry.register(DEFINITION)

        instance = await runtime.engine.start("greeting", {"name": "Ana"}, user_id="u-7")

        assert instance.status == InstanceStatus.COMPLETED
        assert instance.context.variables["action_notify_result"] == {"success": True, "notified": True, "user_id": "u-7"}
        assert seen[0] == "workflow:started"
        assert "action:success" in seen

    async def test_database_definition_source(self, settings: EngineSettings) -> None:
        """Test the engine can read definitions from the database."""
        from litestar_flows.core.definition import WorkflowDefinition
        from litestar_flows.db import SQLAlchemyWorkflowStore

        store = SQLAlchemyWorkflowStore.from_url(settings.database_url)
        runtime = WorkflowRuntime(
            settings,
            store=store,
            backend=MemoryKeyValueStore(),
            definitions=DatabaseDefinitionSource(store),
        )
        await runtime.startup()
        try:
            await store.save_definition(WorkflowDefinition.from_dict(DEFINITION))
            instance = await runtime.engine.start("greeting", {"name": "Bo"})
        finally:
            await runtime.shutdown()

        assert instance.status == InstanceStatus.COMPLETED

    async def test_custom_handlers_skip_the_http_client(self, settings: EngineSettings) -> None:
        handlers = ActionHandlerRegistry()
        runtime = WorkflowRuntime.from_settings(settings, handlers=handlers)

        assert runtime.handlers is handlers
        assert runtime.http_client is None
        await runtime.shutdown()

    async def test_scheduler_start_and_stop(self, runtime: WorkflowRuntime) -> None:
        runtime.start_scheduler()
        runtime.start_scheduler()
        assert runtime.scheduler_running

        await runtime.stop_scheduler()

        assert not runtime.scheduler_running
        await runtime.stop_scheduler()
