"""
Session lifecycle for the SSE transport.

This module provides two ASGI applications and the background machinery that
keeps sessions tidy:

    1. handle_sse() answers a GET by opening a session, announcing the session's
       message endpoint as the first SSE event and then streaming the session's
       events until the client disconnects or the session is closed.
    2. handle_post_message() answers a POST to the message endpoint by routing the
       JSON-RPC body to the RequestRouter.

Example usage:
```
    router = RequestRouter(SessionRegistry())
    manager = SessionLifecycleManager(router, message_path="/message")

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with manager.run():
            yield

    app = Starlette(
        routes=[
            Route("/sse", endpoint=ASGIEndpoint(manager.handle_sse), methods=["GET"]),
            Route("/message", endpoint=ASGIEndpoint(manager.handle_post_message), methods=["POST"]),
        ],
        lifespan=lifespan,
    )
```

See create_app() in sse_rpc.server.app for the ready-made version.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator
from http import HTTPStatus
from urllib.parse import quote, urlparse

import anyio
from sse_starlette import EventSourceResponse
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

from sse_rpc.server.registry import SessionRegistry
from sse_rpc.server.router import RequestRouter
from sse_rpc.server.session import Session
from sse_rpc.server.sse import SSEChannel, SSEChannelWriter
from sse_rpc.server.transport_security import TransportSecurityMiddleware, TransportSecuritySettings
from sse_rpc.shared.exceptions import (
    InvalidEnvelope,
    ParseError,
    ResourceExhausted,
    SessionClosed,
    SessionNotFound,
    TransportError,
    UnknownMethod,
)
from sse_rpc.types import JSONRPC_VERSION, JSONRPCErrorResponse, dump_message

logger = logging.getLogger(__name__)

SESSION_ID_PARAM = "sessionId"
DEFAULT_MAX_BODY_BYTES = 4 * 1024 * 1024


class BodyTooLargeError(Exception):
    def __init__(self, max_body_bytes: int):
        super().__init__(f"Request body exceeds {max_body_bytes} bytes")
        self.max_body_bytes = max_body_bytes


async def read_body(request: Request, max_body_bytes: int) -> bytes:
    """Read a request body without ever buffering more than ``max_body_bytes``."""
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > max_body_bytes:
        raise BodyTooLargeError(max_body_bytes)

    body = bytearray()
    async for chunk in request.stream():
        if len(body) + len(chunk) > max_body_bytes:
            raise BodyTooLargeError(max_body_bytes)
        body.extend(chunk)
    return bytes(body)


def normalize_message_path(message_path: str) -> str:
    """Validate the message path and make sure it starts with a slash.

    Only a path is accepted, the endpoint is always announced relative to the
    origin the client connected to.
    """
    parsed = urlparse(message_path)
    if parsed.scheme or parsed.netloc or message_path.startswith("//"):
        raise ValueError(f"message_path must be a path, not a URL: {message_path!r}")
    if parsed.query or parsed.fragment or "?" in message_path or "#" in message_path:
        raise ValueError(f"message_path must not contain a query or fragment: {message_path!r}")
    if not message_path.startswith("/"):
        message_path = "/" + message_path
    return message_path


def _error_response(exc: TransportError, status_code: int) -> JSONResponse:
    envelope = JSONRPCErrorResponse(jsonrpc=JSONRPC_VERSION, id=exc.request_id, error=exc.to_error_data())
    return JSONResponse(dump_message(envelope), status_code=status_code)


class SessionLifecycleManager:
    """
    Creates, announces, expires and tears down SSE sessions.

    Only one ``run()`` context may be entered per instance. It owns the task group
    in which push-style handlers run and the loop that expires idle sessions.

    Args:
        router: The router that handles posted messages; its registry and writer
            are shared with the manager.
        message_path: Path of the message endpoint announced to clients.
        session_idle_timeout: Seconds of inactivity after which a session is
            closed, or None to keep sessions until disconnect.
        reap_interval: Seconds between two idle sweeps.
        ping_interval: Seconds between keep-alive comments on SSE streams.
        max_body_bytes: Largest accepted POST body.
        security_settings: Host/Origin validation settings.
    """

    def __init__(
        self,
        router: RequestRouter,
        *,
        message_path: str = "/message",
        session_idle_timeout: float | None = None,
        reap_interval: float = 30.0,
        ping_interval: int = 15,
        max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
        security_settings: TransportSecuritySettings | None = None,
    ):
        self.router = router
        self.message_path = normalize_message_path(message_path)
        self.session_idle_timeout = session_idle_timeout
        self.reap_interval = reap_interval
        self.ping_interval = ping_interval
        self.max_body_bytes = max_body_bytes
        self._security = TransportSecurityMiddleware(security_settings)

        self._run_lock = anyio.Lock()
        self._has_started = False

    @property
    def registry(self) -> SessionRegistry:
        return self.router.registry

    @property
    def writer(self) -> SSEChannelWriter:
        return self.router.writer

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """
        Run the manager for the lifetime of the application.

        Use this in the lifespan of the Starlette app:

        @contextlib.asynccontextmanager
        async def lifespan(app: Starlette) -> AsyncIterator[None]:
            async with manager.run():
                yield
        """
        async with self._run_lock:
            if self._has_started:
                raise RuntimeError(
                    "SessionLifecycleManager.run() can only be called once per instance. "
                    "Create a new instance if you need to run again."
                )
            self._has_started = True

        async with anyio.create_task_group() as tg:
            self.router.task_group = tg
            if self.session_idle_timeout is not None:
                tg.start_soon(self._reap_idle_sessions, self.session_idle_timeout)
            logger.info("SSE session manager started")
            try:
                yield
            finally:
                logger.info("SSE session manager shutting down")
                self.router.task_group = None
                with anyio.CancelScope(shield=True):
                    await self.registry.close_all(reason="server shutdown")
                tg.cancel_scope.cancel()

    async def _reap_idle_sessions(self, ttl: float) -> None:
        while True:
            await anyio.sleep(self.reap_interval)
            expired = await self.registry.expire_idle(self.registry.clock(), ttl)
            if expired:
                logger.debug("Expired %d idle session(s)", len(expired))

    def endpoint_url(self, session_id: str, root_path: str = "") -> str:
        """The message URL announced to a session, including any mount prefix."""
        return f"{quote(root_path.rstrip('/') + self.message_path)}?{SESSION_ID_PARAM}={session_id}"

    async def open_session(self, root_path: str = "") -> Session:
        """Create a session, attach its stream and announce its endpoint.

        The session is ACTIVE when this returns, with the ``endpoint`` event
        queued as the first event on its stream. If anything fails, the session
        is removed again.

        Raises:
            ResourceExhausted: if no more sessions can be opened
        """
        session_id = await self.registry.create()
        try:
            channel = SSEChannel()
            await self.registry.attach_stream(session_id, channel)
            await channel.announce(self.endpoint_url(session_id, root_path))
            session = self.registry.lookup(session_id)
            session.mark_active()
        except BaseException:
            with anyio.CancelScope(shield=True):
                await self.registry.close(session_id, reason="failed to open stream")
            raise

        logger.debug("Session %s announced at %s", session_id, self.endpoint_url(session_id, root_path))
        return session

    async def close_session(self, session_id: str, reason: str = "closed by server") -> bool:
        """Close a session explicitly; its stream ends and pending requests fail."""
        return await self.registry.close(session_id, reason=reason)

    async def handle_sse(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            logger.error("handle_sse received non-HTTP request")
            raise ValueError("handle_sse can only handle HTTP requests")

        request = Request(scope, receive)
        error_response = await self._security.validate_request(request, is_post=False)
        if error_response:
            await error_response(scope, receive, send)
            return

        try:
            session = await self.open_session(root_path=scope.get("root_path", ""))
        except ResourceExhausted as exc:
            response = Response(str(exc), status_code=HTTPStatus.SERVICE_UNAVAILABLE)
            await response(scope, receive, send)
            return

        channel = session.channel
        assert channel is not None

        response = EventSourceResponse(
            channel.events(),
            ping=self.ping_interval,
            headers={"Cache-Control": "no-cache"},
        )
        try:
            await response(scope, receive, send)
        finally:
            with anyio.CancelScope(shield=True):
                await self.close_session(session.id, reason="stream ended")
            channel.close_receiver()

    async def handle_post_message(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)

        error_response = await self._security.validate_request(request, is_post=True)
        if error_response:
            await error_response(scope, receive, send)
            return

        session_id = request.query_params.get(SESSION_ID_PARAM)
        if not session_id:
            logger.warning("Received request without %s", SESSION_ID_PARAM)
            response = _error_response(InvalidEnvelope(f"{SESSION_ID_PARAM} is required"), HTTPStatus.BAD_REQUEST)
            await response(scope, receive, send)
            return

        try:
            body = await read_body(request, self.max_body_bytes)
        except BodyTooLargeError as exc:
            logger.warning("Rejected oversized message for session %s", session_id)
            response = Response(str(exc), status_code=HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
            await response(scope, receive, send)
            return

        try:
            result = await self.router.handle(session_id, body)
        except (SessionNotFound, SessionClosed) as exc:
            logger.warning("Message for unknown or closed session %s", session_id)
            response = _error_response(exc, HTTPStatus.NOT_FOUND)
        except (ParseError, InvalidEnvelope) as exc:
            logger.warning("Rejected message for session %s: %s", session_id, exc)
            response = _error_response(exc, HTTPStatus.BAD_REQUEST)
        except UnknownMethod as exc:
            response = _error_response(exc, HTTPStatus.OK)
        else:
            if result is None:
                response = Response(status_code=HTTPStatus.ACCEPTED)
            else:
                response = JSONResponse(dump_message(result), status_code=HTTPStatus.OK)

        await response(scope, receive, send)
