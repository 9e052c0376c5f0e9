"""Starlette application wiring for the SSE transport."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from starlette.applications import Starlette
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from sse_rpc.server.lifecycle import SessionLifecycleManager
from sse_rpc.server.registry import SessionRegistry
from sse_rpc.server.router import RequestRouter
from sse_rpc.server.settings import Settings
from sse_rpc.types import LATEST_PROTOCOL_VERSION, Implementation, InitializeRequestParams, InitializeResult

logger = logging.getLogger(__name__)


class ASGIEndpoint:
    """Lets Starlette's Route dispatch to a plain ASGI callable.

    Route wraps functions and bound methods as request/response endpoints; an
    instance of this class is passed through as a raw ASGI app instead.
    """

    def __init__(self, app: Callable[[Scope, Receive, Send], Awaitable[None]]):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.app(scope, receive, send)


def register_builtin_methods(router: RequestRouter, settings: Settings) -> None:
    """Register ``initialize``, ``ping`` and ``notifications/initialized``.

    Methods the router already has a handler for are left alone.
    """
    server_info = Implementation(name=settings.server_name, version=settings.server_version)

    async def initialize(params: InitializeRequestParams) -> InitializeResult:
        ctx = router.request_context
        ctx.session.client_params = params
        logger.info(
            "Session %s initialized by %s (protocol %s)",
            ctx.session_id,
            params.clientInfo.name if params.clientInfo else "unknown client",
            params.protocolVersion,
        )
        return InitializeResult(
            protocolVersion=LATEST_PROTOCOL_VERSION,
            capabilities={},
            serverInfo=server_info,
            instructions=settings.instructions,
        )

    async def ping(params: dict[str, Any] | None) -> dict[str, Any]:
        return {}

    async def initialized(params: dict[str, Any] | None) -> None:
        logger.debug("Client of session %s finished initialization", router.request_context.session_id)

    if "initialize" not in router.methods:
        router.add_method("initialize", initialize, params_model=InitializeRequestParams)
    if "ping" not in router.methods:
        router.add_method("ping", ping)
    if "notifications/initialized" not in router.methods:
        router.add_method("notifications/initialized", initialized)


def create_app(
    settings: Settings | None = None,
    *,
    router: RequestRouter | None = None,
) -> Starlette:
    """Build the Starlette app serving the SSE stream and the message endpoint.

    Args:
        settings: Server settings; read from the environment when omitted.
        router: A router with application methods already registered. A new one
            over a fresh registry is created when omitted. The built-in methods
            are added unless the router already has them.
    """
    settings = settings or Settings()
    if router is None:
        router = RequestRouter(SessionRegistry(max_sessions=settings.max_sessions))

    register_builtin_methods(router, settings)

    manager = SessionLifecycleManager(
        router,
        message_path=settings.message_path,
        session_idle_timeout=settings.session_idle_timeout,
        reap_interval=settings.reap_interval,
        ping_interval=settings.ping_interval,
        max_body_bytes=settings.max_body_bytes,
        security_settings=settings.transport_security,
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with manager.run():
            yield

    app = Starlette(
        debug=settings.debug,
        routes=[
            Route(settings.sse_path, endpoint=ASGIEndpoint(manager.handle_sse), methods=["GET"]),
            Route(manager.message_path, endpoint=ASGIEndpoint(manager.handle_post_message), methods=["POST"]),
        ],
        lifespan=lifespan,
    )
    app.state.session_manager = manager
    return app
