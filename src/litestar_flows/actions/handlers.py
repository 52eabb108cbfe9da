"""Action handler registry and the built-in handlers.

The package ships webhook calls (``call_webhook``) and user notifications
(``notify_user``) here, and the database backed ``update_database`` and
``create_task`` handlers in :mod:`litestar_flows.actions.database`. Messaging,
email and document generation handlers are registered by the host application
against the same :class:`~litestar_flows.core.protocols.ActionHandler` protocol.
"""

from __future__ import annotations

import base64
import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any

import httpx

from litestar_flows.actions.database import CreateTaskActionHandler, DatabaseActionHandler
from litestar_flows.core.types import ActionType
from litestar_flows.exceptions import ActionError, ActionHandlerNotFoundError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from litestar_flows.core.context import ExecutionContext
    from litestar_flows.core.protocols import ActionHandler

__all__ = [
    "ActionHandlerRegistry",
    "CallableActionHandler",
    "NotifyUserActionHandler",
    "WebhookActionHandler",
    "auth_headers",
]

logger = logging.getLogger(__name__)

HandlerFunction = Callable[[str, dict[str, Any], "ExecutionContext"], Awaitable[Any] | Any]


class CallableActionHandler:
    """Adapts a plain function to the action handler protocol."""

    def __init__(self, func: HandlerFunction) -> None:
        self.func = func

    async def handle(self, action_type: str, config: dict[str, Any], context: ExecutionContext) -> Any:
        result = self.func(action_type, config, context)
        if inspect.isawaitable(result):
            result = await result
        return result


class ActionHandlerRegistry:
    """Maps action types to handlers.

    Example:
        >>> registry = ActionHandlerRegistry.default()
        >>> registry.register(ActionType.SEND_EMAIL, SmtpHandler(settings))
        >>> registry.get("send_email")
        <SmtpHandler ...>
    """

    def __init__(self) -> None:
        self._handlers: dict[str, ActionHandler] = {}

    @classmethod
    def default(
        cls,
        http_client: httpx.AsyncClient | None = None,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
    ) -> ActionHandlerRegistry:
        """Create a registry holding the built-in handlers.

        Args:
            http_client: Optional client shared by the webhook handler.
            session_maker: Database session factory; enables ``update_database``
                and ``create_task``.

        Returns:
            A registry with ``call_webhook`` and ``notify_user`` registered,
            plus the database handlers when ``session_maker`` is given.
        """
        registry = cls()
        registry.register(ActionType.CALL_WEBHOOK, WebhookActionHandler(client=http_client))
        registry.register(ActionType.NOTIFY_USER, NotifyUserActionHandler())
        if session_maker is not None:
            registry.register(ActionType.UPDATE_DATABASE, DatabaseActionHandler(session_maker))
            registry.register(ActionType.CREATE_TASK, CreateTaskActionHandler(session_maker))
        return registry

    def register(self, action_type: str, handler: ActionHandler | HandlerFunction) -> None:
        """Register ``handler`` for ``action_type``, replacing any previous one.

        Args:
            action_type: The action type.
            handler: An object with an async ``handle`` method, or a function
                with the same signature.
        """
        if not hasattr(handler, "handle"):
            handler = CallableActionHandler(handler)  # type: ignore[arg-type]
        self._handlers[str(action_type)] = handler  # type: ignore[assignment]
        logger.debug("Registered action handler for %s", action_type)

    def unregister(self, action_type: str) -> None:
        self._handlers.pop(str(action_type), None)

    def get(self, action_type: str) -> ActionHandler:
        """Return the handler for ``action_type``.

        Raises:
            ActionHandlerNotFoundError: If no handler is registered.
        """
        try:
            return self._handlers[str(action_type)]
        except KeyError:
            raise ActionHandlerNotFoundError(str(action_type)) from None

    def __contains__(self, action_type: object) -> bool:
        return str(action_type) in self._handlers

    def action_types(self) -> list[str]:
        return sorted(self._handlers)


def auth_headers(auth: Mapping[str, Any] | None) -> dict[str, str]:
    """Build the request headers for a webhook authentication block.

    Args:
        auth: ``{"type": "bearer" | "basic" | "api_key" | "oauth2" | "none",
            "credentials": {...}}``.

    Returns:
        Headers to add to the request.
    """
    if not auth:
        return {}
    credentials = auth.get("credentials") or {}
    auth_type = auth.get("type")
    if auth_type == "bearer":
        return {"Authorization": f"Bearer {credentials.get('token', '')}"}
    if auth_type == "basic":
        raw = f"{credentials.get('username', '')}:{credentials.get('password', '')}"
        return {"Authorization": f"Basic {base64.b64encode(raw.encode()).decode()}"}
    if auth_type == "api_key":
        key_name = credentials.get("keyName") or credentials.get("key_name") or "X-API-Key"
        return {key_name: str(credentials.get("key", ""))}
    if auth_type == "oauth2":
        token = credentials.get("accessToken") or credentials.get("access_token", "")
        return {"Authorization": f"Bearer {token}"}
    return {}


class WebhookActionHandler:
    """Calls an HTTP endpoint.

    Responses below 500 are returned as results, with ``success`` set for
    statuses below 400. Server errors and transport failures raise
    :class:`~litestar_flows.exceptions.ActionError` so the dispatcher can
    retry them.

    Args:
        client: Optional shared client; one is created on first use otherwise.
        timeout: Request timeout in seconds.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 30.0) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def handle(self, action_type: str, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        webhook = config.get("webhook", config)
        url = webhook.get("url")
        if not url:
            msg = "Webhook configuration requires a url"
            raise ActionError(msg)

        method = str(webhook.get("method") or "POST").upper()
        headers = {"Content-Type": "application/json", **(webhook.get("headers") or {})}
        headers.update(auth_headers(webhook.get("authentication")))

        body = webhook.get("body")
        request: dict[str, Any] = {}
        if isinstance(body, str):
            try:
                request["json"] = json.loads(body)
            except ValueError:
                request["content"] = body
        elif body is not None:
            request["json"] = body

        client = await self._get_client()
        try:
            response = await client.request(method, url, headers=headers, timeout=self._timeout, **request)
        except httpx.TimeoutException as exc:
            msg = f"Webhook timed out: {url}"
            raise ActionError(msg) from exc
        except httpx.HTTPError as exc:
            msg = f"Webhook request failed: {exc}"
            raise ActionError(msg) from exc

        if response.status_code >= 500:
            msg = f"Webhook responded with {response.status_code}"
            raise ActionError(msg, status_code=response.status_code)

        try:
            data: Any = response.json()
        except ValueError:
            data = response.text
        return {
            "success": response.status_code < 400,
            "status": response.status_code,
            "data": data,
            "headers": dict(response.headers),
        }


class NotifyUserActionHandler:
    """Logs an in-app notification for the user who started the instance."""

    async def handle(self, action_type: str, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        user_id = config.get("user_id") or config.get("userId") or context.metadata.get("user_id")
        message = config.get("message") or "Workflow action completed"
        logger.info(
            "User notification",
            extra={"user_id": user_id, "notification": message, "instance_id": context.metadata.get("instance_id")},
        )
        return {"success": True, "notified": True, "user_id": user_id}
