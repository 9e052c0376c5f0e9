"""
JSON-RPC request router.

The router turns the raw body of a POST to a session's message endpoint into
exactly one JSON-RPC response. Synchronous methods return the response to the
caller; push-style methods are run in the background and their response is
pushed to the session's SSE stream as a ``message`` event.

Example:
    router = RequestRouter(registry, writer)

    @router.method("echo", params_model=EchoParams)
    async def echo(params: EchoParams) -> dict[str, Any]:
        return {"text": params.text}

    @router.method("jobs/run", push=True)
    async def run_job(params: dict[str, Any] | None) -> dict[str, Any]:
        ctx = router.request_context
        await ctx.send_notification("jobs/progress", {"progress": 0.5})
        return {"status": "done"}
"""

from __future__ import annotations

import contextvars
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

import anyio
from anyio.abc import TaskGroup
from pydantic import BaseModel, TypeAdapter, ValidationError

from sse_rpc.server.registry import SessionRegistry
from sse_rpc.server.session import PendingRequest, Session
from sse_rpc.server.sse import SSEChannelWriter, SSEEvent
from sse_rpc.shared.exceptions import (
    HandlerError,
    InvalidEnvelope,
    ParseError,
    RPCError,
    SessionNotFound,
    StreamClosed,
    UnknownMethod,
)
from sse_rpc.types import (
    INVALID_PARAMS,
    JSONRPC_VERSION,
    ErrorData,
    JSONRPCErrorResponse,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    JSONRPCResultResponse,
    RequestId,
)

logger = logging.getLogger(__name__)

HandlerFunc = Callable[[Any], Awaitable[Any]]

_result_adapter: TypeAdapter[dict[str, Any]] = TypeAdapter(dict[str, Any])


@dataclass
class MethodHandler:
    name: str
    func: HandlerFunc
    push: bool = False
    params_model: type[BaseModel] | None = None


@dataclass
class RequestContext:
    """Per-request state available to handlers through ``RequestRouter.request_context``."""

    session: Session
    method: str
    request_id: RequestId | None
    writer: SSEChannelWriter

    @property
    def session_id(self) -> str:
        return self.session.id

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> SSEEvent:
        """Push a JSON-RPC notification to this request's session."""
        notification = JSONRPCNotification(jsonrpc=JSONRPC_VERSION, method=method, params=params)
        return await self.writer.push_message(self.session.id, notification)


request_ctx: contextvars.ContextVar[RequestContext] = contextvars.ContextVar("request_ctx")


def _request_id_of(payload: Mapping[str, Any]) -> RequestId | None:
    request_id = payload.get("id")
    if isinstance(request_id, bool):
        return None
    if isinstance(request_id, int | str):
        return request_id
    return None


def _to_result(value: Any) -> dict[str, Any]:
    """Convert a handler return value into a JSON-ready result object.

    Raises TypeError for anything but a mapping or a pydantic model, and
    PydanticSerializationError when the value holds something JSON cannot carry.
    """
    if value is None:
        return {}
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(value, Mapping):
        return _result_adapter.dump_python(dict(value), mode="json")  # type: ignore[arg-type]
    raise TypeError(f"Handler must return a mapping or a pydantic model, got {type(value).__name__}")


class RequestRouter:
    """
    Validates JSON-RPC envelopes posted to a session and dispatches them to the
    registered method handlers.

    Args:
        registry: The session registry used to resolve session ids.
        writer: The SSE writer used for push-style responses and notifications.
            Defaults to a writer over ``registry``.
    """

    def __init__(self, registry: SessionRegistry, writer: SSEChannelWriter | None = None):
        self.registry = registry
        self.writer = writer or SSEChannelWriter(registry)
        self.task_group: TaskGroup | None = None
        self._methods: dict[str, MethodHandler] = {}

    @property
    def methods(self) -> Mapping[str, MethodHandler]:
        return self._methods

    def add_method(
        self,
        name: str,
        func: HandlerFunc,
        *,
        push: bool = False,
        params_model: type[BaseModel] | None = None,
    ) -> None:
        if name in self._methods:
            logger.warning("Replacing handler for method %s", name)
        self._methods[name] = MethodHandler(name=name, func=func, push=push, params_model=params_model)

    def method(
        self,
        name: str,
        *,
        push: bool = False,
        params_model: type[BaseModel] | None = None,
    ) -> Callable[[HandlerFunc], HandlerFunc]:
        """Register a method handler.

        The handler receives the request params, validated against
        ``params_model`` when one is given, and returns a mapping or a pydantic
        model that becomes the JSON-RPC result. Push-style handlers answer over
        the session's SSE stream instead of the HTTP response.
        """

        def decorator(func: HandlerFunc) -> HandlerFunc:
            self.add_method(name, func, push=push, params_model=params_model)
            return func

        return decorator

    @property
    def request_context(self) -> RequestContext:
        try:
            return request_ctx.get()
        except LookupError:
            raise LookupError("Request context is only available while a handler is running") from None

    async def handle(self, session_id: str, raw_body: bytes | str) -> JSONRPCResponse | None:
        """Route one posted message.

        Returns the response for synchronous methods, or None when nothing is to
        be sent in the HTTP response (push-style methods and notifications).

        Raises:
            SessionNotFound: if the session does not exist or is not active
            SessionClosed: if the session closed while the request was pending
            ParseError: if the body is not valid JSON
            InvalidEnvelope: if the body is not a valid request or notification
            UnknownMethod: if no handler is registered for the method
        """
        session = self._active_session(session_id)
        now = self.registry.clock()
        session.touch(now)

        message = self._parse(raw_body)
        if isinstance(message, JSONRPCNotification):
            await self._handle_notification(session, message)
            return None

        handler = self._methods.get(message.method)
        if handler is None:
            raise UnknownMethod(f"Method not found: {message.method}", request_id=message.id)

        pending = session.begin_request(message.id, message.method, now)
        logger.debug("Session %s: request %r (%s)", session.id, message.id, message.method)

        if handler.push:
            if self.task_group is not None:
                self.task_group.start_soon(self._run_push, session, handler, message, pending)
            else:
                await self._run_push(session, handler, message, pending)
            return None

        try:
            response = await self._invoke(session, handler, message)
        finally:
            session.finish_request(pending)

        if pending.failure is not None:
            raise pending.failure
        return response

    def _active_session(self, session_id: str) -> Session:
        session = self.registry.lookup(session_id)
        if not session.is_active:
            raise SessionNotFound(f"Session {session_id} is not active")
        return session

    def _parse(self, raw_body: bytes | str) -> JSONRPCRequest | JSONRPCNotification:
        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ParseError(f"Parse error: {exc}") from exc

        if isinstance(payload, list):
            raise InvalidEnvelope("Batch requests are not supported")
        if not isinstance(payload, dict):
            raise InvalidEnvelope("A JSON-RPC message must be a JSON object")

        request_id = _request_id_of(payload)
        if payload.get("jsonrpc") != JSONRPC_VERSION:
            raise InvalidEnvelope('The "jsonrpc" member must be exactly "2.0"', request_id=request_id)
        if "method" not in payload:
            raise InvalidEnvelope("Only requests and notifications can be posted", request_id=request_id)

        model = JSONRPCRequest if "id" in payload else JSONRPCNotification
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise InvalidEnvelope(
                "Invalid request",
                request_id=request_id,
                data=exc.errors(include_url=False, include_context=False, include_input=False),
            ) from exc

    async def _invoke(self, session: Session, handler: MethodHandler, message: JSONRPCRequest) -> JSONRPCResponse:
        error: ErrorData | None = None
        result: dict[str, Any] = {}

        token = request_ctx.set(
            RequestContext(session=session, method=message.method, request_id=message.id, writer=self.writer)
        )
        try:
            params: Any = message.params
            if handler.params_model is not None:
                try:
                    params = handler.params_model.model_validate(message.params or {})
                except ValidationError as exc:
                    raise RPCError(
                        ErrorData(
                            code=INVALID_PARAMS,
                            message="Invalid params",
                            data=exc.errors(include_url=False, include_context=False, include_input=False),
                        )
                    ) from exc

            result = _to_result(await handler.func(params))
        except RPCError as err:
            error = err.error
        except anyio.get_cancelled_exc_class():
            raise
        except Exception as err:
            logger.exception("Handler for %s raised", message.method)
            error = HandlerError.from_exception(err).error
        finally:
            request_ctx.reset(token)

        if error is not None:
            return JSONRPCErrorResponse(jsonrpc=JSONRPC_VERSION, id=message.id, error=error)
        return JSONRPCResultResponse(jsonrpc=JSONRPC_VERSION, id=message.id, result=result)

    async def _run_push(
        self,
        session: Session,
        handler: MethodHandler,
        message: JSONRPCRequest,
        pending: PendingRequest,
    ) -> None:
        try:
            response = await self._invoke(session, handler, message)
        finally:
            session.finish_request(pending)

        if pending.failure is not None:
            logger.warning("Dropping response to request %r: %s", message.id, pending.failure)
            return

        # Runs in the manager's task group: nothing may escape into it.
        try:
            await self.writer.push_message(session.id, response)
        except StreamClosed:
            logger.warning("Could not push response to request %r: session %s has no open stream", message.id, session.id)
        except Exception:
            logger.exception("Could not push response to request %r in session %s", message.id, session.id)

    async def _handle_notification(self, session: Session, message: JSONRPCNotification) -> None:
        handler = self._methods.get(message.method)
        if handler is None:
            logger.debug("Ignoring notification %s without a handler", message.method)
            return

        token = request_ctx.set(RequestContext(session=session, method=message.method, request_id=None, writer=self.writer))
        try:
            params: Any = message.params
            if handler.params_model is not None:
                params = handler.params_model.model_validate(message.params or {})
            await handler.func(params)
        except anyio.get_cancelled_exc_class():
            raise
        except Exception:
            logger.exception("Uncaught exception in notification handler for %s", message.method)
        finally:
            request_ctx.reset(token)
