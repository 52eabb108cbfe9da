"""Assembly of the engine and its collaborators.

:class:`WorkflowRuntime` wires the definition source, relational store,
context store, action dispatcher, execution engine and scheduled resumption
processor together. It is created once per process and handed to whatever
needs it; the Litestar plugin injects it into route handlers.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

import httpx

from litestar_flows.actions import ActionDispatcher, ActionHandlerRegistry
from litestar_flows.config import EngineSettings
from litestar_flows.core.events import InMemoryEventBus
from litestar_flows.db import SQLAlchemyWorkflowStore
from litestar_flows.engine import ExecutionEngine, ScheduledResumptionProcessor, WorkflowRegistry
from litestar_flows.logging_config import configure_logging
from litestar_flows.state import ContextStore, MemoryKeyValueStore, RedisKeyValueStore

if TYPE_CHECKING:
    from litestar_flows.core.protocols import DefinitionSource, EventBus, KeyValueStore

__all__ = ["WorkflowRuntime"]

logger = logging.getLogger(__name__)


class WorkflowRuntime:
    """Holds one fully wired engine.

    Attributes:
        settings: Settings the runtime was built from.
        registry: In-memory definition registry; also the default definition source.
        definitions: Source the engine reads definitions from.
        store: Relational store.
        context_store: Per-instance context store.
        handlers: Action handler registry.
        dispatcher: Action dispatcher.
        event_bus: Lifecycle event bus.
        engine: The execution engine.
        processor: The scheduled resumption processor.

    Example:
        >>> runtime = WorkflowRuntime.from_settings(EngineSettings(redis_url=None))
        >>> await runtime.startup()
        >>> runtime.registry.register(definition)
        >>> instance = await runtime.engine.start(definition.id, {"age": 20})
        >>> await runtime.shutdown()
    """

    def __init__(
        self,
        settings: EngineSettings,
        *,
        store: SQLAlchemyWorkflowStore,
        backend: KeyValueStore,
        registry: WorkflowRegistry | None = None,
        definitions: DefinitionSource | None = None,
        handlers: ActionHandlerRegistry | None = None,
        event_bus: EventBus | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry or WorkflowRegistry()
        self.definitions: DefinitionSource = definitions or self.registry
        self.store = store
        self.backend = backend
        self.context_store = ContextStore(
            backend,
            key_prefix=settings.key_prefix,
            context_ttl=settings.context_ttl,
            checkpoint_ttl=settings.checkpoint_ttl,
            lock_ttl=settings.lock_ttl,
            tracking_limit=settings.tracking_limit,
        )
        self._owns_http_client = http_client is None and handlers is None
        self.http_client = http_client or (httpx.AsyncClient() if handlers is None else None)
        self.handlers = handlers or ActionHandlerRegistry.default(
            http_client=self.http_client, session_maker=store.session_maker
        )
        self.event_bus: EventBus = event_bus or InMemoryEventBus()
        self.dispatcher = ActionDispatcher(self.handlers, event_bus=self.event_bus)
        self.engine = ExecutionEngine(
            self.definitions,
            self.store,
            self.context_store,
            self.dispatcher,
            event_bus=self.event_bus,
            condition_poll_interval=settings.condition_poll_interval,
            lock_wait_timeout=settings.lock_wait_timeout,
        )
        self.processor = ScheduledResumptionProcessor(self.engine, batch_size=settings.scheduler_batch_size)
        self._scheduler_task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings | None = None,
        *,
        definitions: DefinitionSource | None = None,
        handlers: ActionHandlerRegistry | None = None,
        event_bus: EventBus | None = None,
        configure_logs: bool = False,
    ) -> WorkflowRuntime:
        """Build a runtime from settings.

        Args:
            settings: Settings; read from the environment when omitted.
            definitions: Definition source; the runtime's registry by default.
            handlers: Action handlers; the built-in ones by default.
            event_bus: Event bus; an :class:`InMemoryEventBus` by default.
            configure_logs: Install the package log handler from the settings.

        Returns:
            The runtime, not started yet.
        """
        settings = settings or EngineSettings()
        if configure_logs:
            configure_logging(settings.log_level, json_output=settings.log_json)
        backend: KeyValueStore
        if settings.redis_url:
            backend = RedisKeyValueStore.from_url(settings.redis_url)
        else:
            logger.info("No redis_url configured, using the in-memory context backend")
            backend = MemoryKeyValueStore()
        store = SQLAlchemyWorkflowStore.from_url(settings.database_url, task_max_retries=settings.task_max_retries)
        return cls(
            settings,
            store=store,
            backend=backend,
            definitions=definitions,
            handlers=handlers,
            event_bus=event_bus,
        )

    async def startup(self, *, create_tables: bool = True, run_scheduler: bool = False) -> None:
        """Prepare the store and optionally start polling scheduled tasks."""
        if create_tables:
            await self.store.create_all()
        if run_scheduler:
            self.start_scheduler()

    def start_scheduler(self) -> None:
        """Run the scheduled resumption processor in a background task."""
        if self._scheduler_task is not None and not self._scheduler_task.done():
            return
        self._stop_event = asyncio.Event()
        self._scheduler_task = asyncio.create_task(
            self.processor.run(poll_interval=self.settings.scheduler_poll_interval, stop_event=self._stop_event)
        )

    async def stop_scheduler(self) -> None:
        if self._scheduler_task is None or self._stop_event is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._scheduler_task, timeout=self.settings.scheduler_poll_interval + 5)
        except TimeoutError:
            self._scheduler_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._scheduler_task
        self._scheduler_task = None
        self._stop_event = None

    @property
    def scheduler_running(self) -> bool:
        return self._scheduler_task is not None and not self._scheduler_task.done()

    async def shutdown(self) -> None:
        """Stop the scheduler and release connections."""
        await self.stop_scheduler()
        if self._owns_http_client and self.http_client is not None:
            await self.http_client.aclose()
        await self.backend.close()
        await self.store.close()
