"""Tests for the action handler registry and built-in handlers."""

from __future__ import annotations

import base64
import json
from collections.abc import AsyncIterator, Callable

import httpx
import pytest

from litestar_flows.actions import (
    ActionHandlerRegistry,
    CallableActionHandler,
    NotifyUserActionHandler,
    WebhookActionHandler,
    auth_headers,
)
from litestar_flows.core.context import ExecutionContext
from litestar_flows.exceptions import ActionError, ActionHandlerNotFoundError


@pytest.fixture
def requests_seen() -> list[httpx.Request]:
    return []


@pytest.fixture
def respond_with(requests_seen: list[httpx.Request]) -> Callable[[httpx.Response], httpx.MockTransport]:
    """Build a transport recording requests and answering with ``response``."""

    def build(response: httpx.Response) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            requests_seen.append(request)
            return response

        return httpx.MockTransport(handler)

    return build


@pytest.fixture
async def ok_client(
    respond_with: Callable[[httpx.Response], httpx.MockTransport],
) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(transport=respond_with(httpx.Response(201, json={"id": "evt_1"}))) as client:
        yield client


# =============================================================================
# Registry
# =============================================================================


@pytest.mark.unit
class TestActionHandlerRegistry:
    """Tests for ActionHandlerRegistry."""

    def test_default_handlers(self) -> None:
        registry = ActionHandlerRegistry.default()
        assert registry.action_types() == ["call_webhook", "notify_user"]
        assert isinstance(registry.get("call_webhook"), WebhookActionHandler)

    def test_functions_are_wrapped(self) -> None:
        registry = ActionHandlerRegistry()
        registry.register("create_record", lambda action_type, config, context: None)
        assert isinstance(registry.get("create_record"), CallableActionHandler)
        assert "create_record" in registry

    def test_unregister(self) -> None:
        registry = ActionHandlerRegistry.default()
        registry.unregister("notify_user")
        with pytest.raises(ActionHandlerNotFoundError):
            registry.get("notify_user")

    async def test_sync_and_async_functions(self) -> None:
        """Test both sync and async functions are awaited uniformly."""

        async def async_handler(action_type: str, config: dict, context: ExecutionContext) -> str:
            return f"async:{config['x']}"

        sync = CallableActionHandler(lambda action_type, config, context: f"sync:{config['x']}")
        assert await sync.handle("t", {"x": 1}, ExecutionContext()) == "sync:1"
        assert await CallableActionHandler(async_handler).handle("t", {"x": 2}, ExecutionContext()) == "async:2"


# =============================================================================
# Webhook
# =============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
class TestWebhookActionHandler:
    """Tests for WebhookActionHandler."""

    async def test_posts_json_body(self, ok_client: httpx.AsyncClient, requests_seen: list[httpx.Request]) -> None:
        handler = WebhookActionHandler(client=ok_client)
        result = await handler.handle(
            "call_webhook",
            {
                "url": "https://hooks.example.com/orders",
                "headers": {"X-Trace": "abc"},
                "body": {"order": 42},
                "authentication": {"type": "bearer", "credentials": {"token": "t0k"}},
            },
            ExecutionContext(),
        )

        assert result["success"] is True
        assert result["status"] == 201
        assert result["data"] == {"id": "evt_1"}
        request = requests_seen[0]
        assert request.method == "POST"
        assert request.headers["Authorization"] == "Bearer t0k"
        assert request.headers["X-Trace"] == "abc"
        assert json.loads(request.content) == {"order": 42}

    async def test_nested_webhook_block_and_string_body(
        self, ok_client: httpx.AsyncClient, requests_seen: list[httpx.Request]
    ) -> None:
        """Test a ``webhook`` sub-block is used and JSON string bodies are decoded."""
        handler = WebhookActionHandler(client=ok_client)
        await handler.handle(
            "call_webhook",
            {"webhook": {"url": "https://hooks.example.com", "method": "put", "body": '{"a": 1}'}},
            ExecutionContext(),
        )
        assert requests_seen[0].method == "PUT"
        assert json.loads(requests_seen[0].content) == {"a": 1}

    async def test_client_error_is_a_result(
        self, respond_with: Callable[[httpx.Response], httpx.MockTransport]
    ) -> None:
        """Test a 4xx response is returned as an unsuccessful result."""
        async with httpx.AsyncClient(transport=respond_with(httpx.Response(404, text="missing"))) as client:
            result = await WebhookActionHandler(client=client).handle(
                "call_webhook", {"url": "https://hooks.example.com"}, ExecutionContext()
            )
        assert result["success"] is False
        assert result["status"] == 404
        assert result["data"] == "missing"

    async def test_server_error_raises_with_status(
        self, respond_with: Callable[[httpx.Response], httpx.MockTransport]
    ) -> None:
        async with httpx.AsyncClient(transport=respond_with(httpx.Response(503))) as client:
            with pytest.raises(ActionError) as exc_info:
                await WebhookActionHandler(client=client).handle(
                    "call_webhook", {"url": "https://hooks.example.com"}, ExecutionContext()
                )
        assert exc_info.value.status_code == 503

    async def test_transport_error(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
            with pytest.raises(ActionError, match="request failed"):
                await WebhookActionHandler(client=client).handle(
                    "call_webhook", {"url": "https://hooks.example.com"}, ExecutionContext()
                )

    async def test_missing_url(self) -> None:
        with pytest.raises(ActionError, match="url"):
            await WebhookActionHandler().handle("call_webhook", {}, ExecutionContext())


@pytest.mark.unit
class TestAuthHeaders:
    """Tests for webhook authentication headers."""

    def test_basic(self) -> None:
        headers = auth_headers({"type": "basic", "credentials": {"username": "ops", "password": "s3cret"}})
        assert headers == {"Authorization": "Basic " + base64.b64encode(b"ops:s3cret").decode()}

    def test_api_key(self) -> None:
        assert auth_headers({"type": "api_key", "credentials": {"keyName": "X-Token", "key": "k"}}) == {"X-Token": "k"}
        assert auth_headers({"type": "api_key", "credentials": {"key": "k"}}) == {"X-API-Key": "k"}

    def test_oauth2(self) -> None:
        assert auth_headers({"type": "oauth2", "credentials": {"accessToken": "a"}}) == {"Authorization": "Bearer a"}

    def test_none(self) -> None:
        assert auth_headers(None) == {}
        assert auth_headers({"type": "none"}) == {}


@pytest.mark.unit
@pytest.mark.asyncio
class TestNotifyUserActionHandler:
    """Tests for NotifyUserActionHandler."""

    async def test_defaults_to_starting_user(self) -> None:
        context = ExecutionContext(metadata={"user_id": "u-1", "instance_id": "i-1"})
        result = await NotifyUserActionHandler().handle("notify_user", {"message": "Done"}, context)
        assert result == {"success": True, "notified": True, "user_id": "u-1"}

    async def test_explicit_user(self) -> None:
        result = await NotifyUserActionHandler().handle("notify_user", {"userId": "u-2"}, ExecutionContext())
        assert result["user_id"] == "u-2"
