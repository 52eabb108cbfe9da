"""Action dispatch with retry and exponential backoff."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import httpx

from litestar_flows.core.definition import RetryPolicy
from litestar_flows.core.events import WorkflowEventType
from litestar_flows.evaluation.templates import TemplateResolver
from litestar_flows.exceptions import ActionCancelledError, ActionExecutionError

if TYPE_CHECKING:
    from uuid import UUID

    from litestar_flows.actions.handlers import ActionHandlerRegistry
    from litestar_flows.core.context import ExecutionContext
    from litestar_flows.core.protocols import EventBus

__all__ = ["ActionDispatcher", "result_variable", "status_code_of"]

logger = logging.getLogger(__name__)


def result_variable(node_id: str) -> str:
    """Name of the variable holding the result of an action node."""
    return f"action_{node_id}_result"


def status_code_of(error: BaseException) -> int | None:
    """Extract an HTTP-like status code from a handler failure, if any."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


class ActionDispatcher:
    """Runs action handlers under a retry policy.

    The dispatcher resolves templates in the action configuration, looks up
    the handler for the action type and calls it up to ``max_retries + 1``
    times. Before retry ``n`` (1-based) it sleeps
    ``retry_delay * backoff_multiplier ** (n - 1)`` milliseconds.

    Args:
        handlers: Registry of action handlers.
        event_bus: Optional bus receiving ``action:success``/``action:failed``.
        resolver: Template resolver applied to the configuration.
        sleep: Awaitable sleep taking seconds; replaceable in tests.

    Example:
        >>> dispatcher = ActionDispatcher(ActionHandlerRegistry.default())
        >>> result = await dispatcher.execute(
        ...     "call_webhook",
        ...     {"url": "https://example.com/hook/{{ formData.id }}"},
        ...     context,
        ...     RetryPolicy(max_retries=2, retry_delay=500, backoff_multiplier=2),
        ... )
    """

    def __init__(
        self,
        handlers: ActionHandlerRegistry,
        *,
        event_bus: EventBus | None = None,
        resolver: TemplateResolver | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.handlers = handlers
        self.event_bus = event_bus
        self.resolver = resolver or TemplateResolver()
        self._sleep = sleep

    async def execute(
        self,
        action_type: str,
        config: dict[str, Any] | None,
        context: ExecutionContext,
        retry_policy: RetryPolicy | None = None,
        *,
        node_id: str | None = None,
        instance_id: UUID | str | None = None,
        cancel_check: Callable[[], Awaitable[bool]] | None = None,
    ) -> Any:
        """Perform an action.

        Args:
            action_type: The action type to perform.
            config: Action configuration; strings may contain placeholders.
            context: The instance's execution context.
            retry_policy: Retry settings; a single attempt when omitted.
            node_id: Action node id. When given, the result is stored in
                ``context.variables["action_<node_id>_result"]``.
            instance_id: Owning instance, included in events.
            cancel_check: Consulted before every retry; returning True stops
                the action.

        Returns:
            The handler's result.

        Raises:
            ActionHandlerNotFoundError: If no handler is registered.
            ActionCancelledError: If ``cancel_check`` reports cancellation.
            ActionExecutionError: If every attempt failed, or a failure carried
                a status code outside ``retry_on_status_codes``.
        """
        handler = self.handlers.get(action_type)
        policy = retry_policy or RetryPolicy()
        resolved = self.resolver.resolve_object(config or {}, context)
        max_attempts = max(policy.max_retries, 0) + 1

        attempts = 0
        last_error: Exception | None = None
        while attempts < max_attempts:
            attempts += 1
            logger.debug("Executing %s (attempt %d/%d)", action_type, attempts, max_attempts)
            try:
                result = await handler.handle(str(action_type), resolved, context)
            except Exception as exc:  # handler failures are arbitrary
                last_error = exc
                status = status_code_of(exc)
                logger.warning(
                    "Action %s failed on attempt %d/%d: %s", action_type, attempts, max_attempts, exc
                )
                if attempts >= max_attempts:
                    break
                if not policy.should_retry(status):
                    logger.info("Not retrying %s: status %s is not retryable", action_type, status)
                    break
                await self._sleep(policy.delay_before_retry(attempts) / 1000)
                if cancel_check is not None and await cancel_check():
                    logger.info("Action %s cancelled after %d attempt(s)", action_type, attempts)
                    raise ActionCancelledError(str(action_type), attempts) from exc
                continue

            if node_id is not None:
                context.variables[result_variable(node_id)] = result
            await self._emit(
                WorkflowEventType.ACTION_SUCCESS,
                action_type=str(action_type),
                attempts=attempts,
                node_id=node_id,
                instance_id=instance_id,
                result=result,
            )
            return result

        await self._emit(
            WorkflowEventType.ACTION_FAILED,
            action_type=str(action_type),
            attempts=attempts,
            node_id=node_id,
            instance_id=instance_id,
            error=str(last_error),
        )
        raise ActionExecutionError(str(action_type), attempts, last_error) from last_error

    async def _emit(self, event_type: str, **payload: Any) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event_type, **payload)
