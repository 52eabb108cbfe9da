"""Tests for the WorkflowPlugin integration with Litestar.

These tests verify that the plugin correctly integrates with Litestar
applications and provides dependency injection for workflow components.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

import pytest
from litestar import Controller, Litestar, get, post
from litestar.status_codes import HTTP_200_OK, HTTP_201_CREATED
from litestar.testing import TestClient

from litestar_flows import (
    EngineSettings,
    ExecutionEngine,
    WorkflowPlugin,
    WorkflowPluginConfig,
    WorkflowRegistry,
    WorkflowRuntime,
)

SIGNUP = {
    "id": "signup",
    "name": "Signup",
    "version": 1,
    "definition": {
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "check_age", "type": "condition", "data": {"defaultPath": "minor"}},
            {"id": "adult", "type": "end"},
            {"id": "minor", "type": "end"},
        ],
        "connections": [
            {"from": "start", "to": "check_age"},
            {
                "from": "check_age",
                "to": "adult",
                "condition": {"field": "age", "operator": "gte", "value": 18, "dataType": "number"},
            },
            {"from": "check_age", "to": "minor"},
        ],
    },
}


@pytest.fixture
def settings() -> EngineSettings:
    """Settings for an in-memory runtime."""
    return EngineSettings(
        _env_file=None,
        redis_url=None,
        database_url="sqlite+aiosqlite:///:memory:",
        scheduler_poll_interval=0.05,
    )


# =============================================================================
# Test Controllers
# =============================================================================


class FlowController(Controller):
    """Test controller for workflow operations."""

    path = "/flows"

    @get("/")
    async def list_flows(self, workflow_registry: WorkflowRegistry) -> list[dict[str, Any]]:
        """List registered definitions."""
        return [{"id": d.id, "version": d.version} for d in workflow_registry.list_definitions()]

    @post("/{definition_id:str}/start")
    async def start_flow(
        self, definition_id: str, data: dict[str, Any], workflow_engine: ExecutionEngine
    ) -> dict[str, Any]:
        """Start an instance."""
        instance = await workflow_engine.start(definition_id, data)
        return {"instance_id": str(instance.id), "status": str(instance.status)}

    @get("/instances/{instance_id:uuid}")
    async def get_instance(self, instance_id: UUID, workflow_runtime: WorkflowRuntime) -> dict[str, Any]:
        """Get instance status."""
        instance = await workflow_runtime.engine.get_instance(instance_id)
        return {"status": str(instance.status), "node": instance.current_node_id}


# =============================================================================
# Plugin Initialization Tests
# =============================================================================


@pytest.mark.unit
class TestPluginInitialization:
    """Tests for plugin initialization."""

    def test_runtime_unavailable_before_init(self) -> None:
        plugin = WorkflowPlugin()

        with pytest.raises(RuntimeError, match="has not been initialized"):
            _ = plugin.runtime

    def test_plugin_builds_runtime_from_settings(self, settings: EngineSettings) -> None:
        """Plugin builds a runtime when none is provided."""
        plugin = WorkflowPlugin(config=WorkflowPluginConfig(settings=settings))
        Litestar(plugins=[plugin])

        assert isinstance(plugin.runtime, WorkflowRuntime)
        assert isinstance(plugin.engine, ExecutionEngine)
        assert plugin.registry is plugin.runtime.registry
        assert plugin.runtime.settings is settings

    def test_plugin_uses_provided_runtime(self, settings: EngineSettings) -> None:
        runtime = WorkflowRuntime.from_settings(settings)
        plugin = WorkflowPlugin(config=WorkflowPluginConfig(runtime=runtime))
        Litestar(plugins=[plugin])

        assert plugin.runtime is runtime

    def test_definitions_are_registered(self, settings: EngineSettings) -> None:
        plugin = WorkflowPlugin(config=WorkflowPluginConfig(settings=settings, definitions=[SIGNUP]))
        Litestar(plugins=[plugin])

        assert plugin.registry.has_workflow("signup", 1)

    def test_dependencies_registered(self, settings: EngineSettings) -> None:
        plugin = WorkflowPlugin(config=WorkflowPluginConfig(settings=settings))
        app = Litestar(plugins=[plugin])

        assert {"workflow_runtime", "workflow_engine", "workflow_registry"} <= set(app.dependencies)

    def test_custom_dependency_keys(self, settings: EngineSettings) -> None:
        config = WorkflowPluginConfig(
            settings=settings,
            dependency_key_engine="flows",
            dependency_key_registry="definitions",
            dependency_key_runtime="runtime",
        )
        app = Litestar(plugins=[WorkflowPlugin(config=config)])

        assert {"flows", "definitions", "runtime"} <= set(app.dependencies)
        assert "workflow_engine" not in app.dependencies


# =============================================================================
# Application Tests
# =============================================================================


@pytest.mark.integration
class TestPluginInApplication:
    """Tests for the plugin inside a running application."""

    def test_start_and_inspect_instance(self, settings: EngineSettings) -> None:
        """Test route handlers receive the engine, registry and runtime."""
        plugin = WorkflowPlugin(
            config=WorkflowPluginConfig(settings=settings, definitions=[SIGNUP], run_scheduler=False)
        )
        app = Litestar(route_handlers=[FlowController], plugins=[plugin])

        with TestClient(app=app) as client:
            listed = client.get("/flows/")
            assert listed.status_code == HTTP_200_OK
            assert listed.json() == [{"id": "signup", "version": 1}]

            started = client.post("/flows/signup/start", json={"age": 30})
            assert started.status_code == HTTP_201_CREATED
            assert started.json()["status"] == "completed"

            instance = client.get(f"/flows/instances/{started.json()['instance_id']}")
            assert instance.status_code == HTTP_200_OK
            assert instance.json() == {"status": "completed", "node": "adult"}

    def test_scheduler_follows_app_lifespan(self, settings: EngineSettings) -> None:
        plugin = WorkflowPlugin(config=WorkflowPluginConfig(settings=settings, run_scheduler=True))
        app = Litestar(plugins=[plugin])

        with TestClient(app=app):
            assert plugin.runtime.scheduler_running

        assert not plugin.runtime.scheduler_running

    def test_scheduler_disabled(self, settings: EngineSettings) -> None:
        plugin = WorkflowPlugin(config=WorkflowPluginConfig(settings=settings, run_scheduler=False))
        app = Litestar(plugins=[plugin])

        with TestClient(app=app):
            assert not plugin.runtime.scheduler_running
