"""Action dispatch and handlers."""

from __future__ import annotations

from litestar_flows.actions.database import CreateTaskActionHandler, DatabaseActionHandler
from litestar_flows.actions.dispatcher import ActionDispatcher, result_variable, status_code_of
from litestar_flows.actions.handlers import (
    ActionHandlerRegistry,
    CallableActionHandler,
    NotifyUserActionHandler,
    WebhookActionHandler,
    auth_headers,
)

__all__ = [
    "ActionDispatcher",
    "ActionHandlerRegistry",
    "CallableActionHandler",
    "CreateTaskActionHandler",
    "DatabaseActionHandler",
    "NotifyUserActionHandler",
    "WebhookActionHandler",
    "auth_headers",
    "result_variable",
    "status_code_of",
]
