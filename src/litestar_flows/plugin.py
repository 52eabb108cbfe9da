"""Litestar plugin for workflow integration.

This module provides the WorkflowPlugin, which builds a
:class:`~litestar_flows.runtime.WorkflowRuntime`, exposes it to route handlers
through dependency injection and ties its lifecycle to the application's.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from litestar.di import Provide
from litestar.plugins import InitPluginProtocol

from litestar_flows.engine.executor import ExecutionEngine
from litestar_flows.engine.registry import WorkflowRegistry
from litestar_flows.runtime import WorkflowRuntime

if TYPE_CHECKING:
    from litestar import Litestar
    from litestar.config.app import AppConfig

    from litestar_flows.config import EngineSettings
    from litestar_flows.core.definition import WorkflowDefinition

__all__ = ["WorkflowPlugin", "WorkflowPluginConfig"]


@dataclass
class WorkflowPluginConfig:
    """Configuration for the WorkflowPlugin.

    Attributes:
        runtime: Optional pre-built runtime. If not provided, one is built
            from ``settings``.
        settings: Settings used when no runtime is given; read from the
            environment when omitted.
        definitions: Definitions registered with the runtime's registry when
            the app is initialized.
        run_scheduler: Whether to poll scheduled tasks during the app lifespan.
        create_tables: Whether to create the workflow tables on startup.
        dependency_key_runtime: Dependency key of the WorkflowRuntime.
        dependency_key_engine: Dependency key of the ExecutionEngine.
        dependency_key_registry: Dependency key of the WorkflowRegistry.
    """

    runtime: WorkflowRuntime | None = None
    settings: EngineSettings | None = None
    definitions: list[WorkflowDefinition | Mapping[str, Any]] = field(default_factory=list)
    run_scheduler: bool = True
    create_tables: bool = True
    dependency_key_runtime: str = "workflow_runtime"
    dependency_key_engine: str = "workflow_engine"
    dependency_key_registry: str = "workflow_registry"


class WorkflowPlugin(InitPluginProtocol):
    """Litestar plugin for workflow management.

    Example:
        Basic usage::

            from litestar import Litestar, post
            from litestar_flows import ExecutionEngine, WorkflowPlugin, WorkflowPluginConfig


            @post("/flows/{definition_id:str}/start")
            async def start_flow(definition_id: str, data: dict, workflow_engine: ExecutionEngine) -> dict:
                instance = await workflow_engine.start(definition_id, data)
                return {"instance_id": str(instance.id), "status": instance.status}


            app = Litestar(
                route_handlers=[start_flow],
                plugins=[WorkflowPlugin(config=WorkflowPluginConfig(definitions=[onboarding]))],
            )
    """

    __slots__ = ("_config", "_runtime")

    def __init__(self, config: WorkflowPluginConfig | None = None) -> None:
        self._config = config or WorkflowPluginConfig()
        self._runtime: WorkflowRuntime | None = None

    @property
    def runtime(self) -> WorkflowRuntime:
        """Get the workflow runtime.

        Raises:
            RuntimeError: If accessed before plugin initialization.
        """
        if self._runtime is None:
            msg = "WorkflowPlugin has not been initialized. Access runtime after app startup."
            raise RuntimeError(msg)
        return self._runtime

    @property
    def engine(self) -> ExecutionEngine:
        return self.runtime.engine

    @property
    def registry(self) -> WorkflowRegistry:
        return self.runtime.registry

    @asynccontextmanager
    async def _lifespan(self, app: Litestar) -> AsyncGenerator[None, None]:
        runtime = self.runtime
        await runtime.startup(create_tables=self._config.create_tables, run_scheduler=self._config.run_scheduler)
        try:
            yield
        finally:
            await runtime.shutdown()

    def on_app_init(self, app_config: AppConfig) -> AppConfig:
        """Build the runtime and register dependencies and the lifespan.

        Args:
            app_config: The Litestar application configuration.

        Returns:
            The modified application configuration.
        """
        self._runtime = self._config.runtime or WorkflowRuntime.from_settings(self._config.settings)

        for definition in self._config.definitions:
            self._runtime.registry.register(definition)

        def provide_runtime() -> WorkflowRuntime:
            return self.runtime

        def provide_engine() -> ExecutionEngine:
            return self.runtime.engine

        def provide_registry() -> WorkflowRegistry:
            return self.runtime.registry

        app_config.dependencies[self._config.dependency_key_runtime] = Provide(provide_runtime, sync_to_thread=False)
        app_config.dependencies[self._config.dependency_key_engine] = Provide(provide_engine, sync_to_thread=False)
        app_config.dependencies[self._config.dependency_key_registry] = Provide(
            provide_registry,
            sync_to_thread=False,
        )
        app_config.lifespan.append(self._lifespan)
        return app_config
