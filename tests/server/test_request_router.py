import json
import logging
from typing import Any

import anyio
import pytest
from pydantic import BaseModel

from sse_rpc.server.registry import SessionRegistry
from sse_rpc.server.router import RequestRouter
from sse_rpc.server.session import Session
from sse_rpc.server.sse import SSEChannel, SSEEvent
from sse_rpc.shared.exceptions import (
    DuplicateRequestId,
    InvalidEnvelope,
    ParseError,
    RPCError,
    SessionClosed,
    SessionNotFound,
    UnknownMethod,
)
from sse_rpc.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    ErrorData,
    JSONRPCErrorResponse,
    JSONRPCResultResponse,
)


class AddParams(BaseModel):
    a: int
    b: int


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def router(registry: SessionRegistry) -> RequestRouter:
    router = RequestRouter(registry)

    @router.method("add", params_model=AddParams)
    async def add(params: AddParams) -> dict[str, Any]:
        return {"sum": params.a + params.b}

    @router.method("echo")
    async def echo(params: dict[str, Any] | None) -> dict[str, Any]:
        return {"params": params, "session": router.request_context.session_id}

    @router.method("fail")
    async def fail(params: dict[str, Any] | None) -> dict[str, Any]:
        raise RuntimeError("boom")

    @router.method("reject")
    async def reject(params: dict[str, Any] | None) -> dict[str, Any]:
        raise RPCError(ErrorData(code=404, message="No such thing", data={"what": "thing"}))

    @router.method("scalar")
    async def scalar(params: dict[str, Any] | None) -> int:
        return 42

    @router.method("push/echo", push=True)
    async def push_echo(params: dict[str, Any] | None) -> dict[str, Any]:
        await router.request_context.send_notification("progress", {"step": 1})
        return {"params": params}

    return router


async def open_session(registry: SessionRegistry) -> Session:
    session_id = await registry.create()
    channel = SSEChannel()
    await registry.attach_stream(session_id, channel)
    await channel.announce(f"/message?sessionId={session_id}")
    await channel.receive_stream.receive()
    session = registry.lookup(session_id)
    session.mark_active()
    return session


def body(**fields: Any) -> bytes:
    return json.dumps({"jsonrpc": "2.0", **fields}).encode()


@pytest.mark.anyio
async def test_sync_request_returns_result(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)

    response = await router.handle(session.id, body(id=1, method="add", params={"a": 2, "b": 3}))

    assert response == JSONRPCResultResponse(jsonrpc="2.0", id=1, result={"sum": 5})
    assert session.pending == {}


@pytest.mark.anyio
async def test_string_id_is_not_coerced(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)

    response = await router.handle(session.id, body(id="1", method="echo"))

    assert isinstance(response, JSONRPCResultResponse)
    assert response.id == "1"
    assert response.result == {"params": None, "session": session.id}


@pytest.mark.anyio
async def test_unknown_session(router: RequestRouter):
    with pytest.raises(SessionNotFound):
        await router.handle("nope", body(id=1, method="echo"))


@pytest.mark.anyio
async def test_session_must_be_active(router: RequestRouter, registry: SessionRegistry):
    session_id = await registry.create()

    with pytest.raises(SessionNotFound):
        await router.handle(session_id, body(id=1, method="echo"))


@pytest.mark.anyio
async def test_closed_session(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)
    await registry.close(session.id)

    with pytest.raises(SessionNotFound):
        await router.handle(session.id, body(id=1, method="echo"))


@pytest.mark.anyio
async def test_malformed_json(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)

    with pytest.raises(ParseError) as exc_info:
        await router.handle(session.id, b'{"jsonrpc": "2.0", "id": 1,')
    assert exc_info.value.code == -32700
    assert exc_info.value.request_id is None


@pytest.mark.anyio
@pytest.mark.parametrize(
    "raw, request_id",
    [
        ('[{"jsonrpc": "2.0", "id": 1, "method": "echo"}]', None),
        ('"hello"', None),
        ('{"id": 1, "method": "echo"}', 1),
        ('{"jsonrpc": "1.0", "id": 2, "method": "echo"}', 2),
        ('{"jsonrpc": "2.0", "id": 3}', 3),
        ('{"jsonrpc": "2.0", "id": 4, "result": {}}', 4),
        ('{"jsonrpc": "2.0", "id": 5, "method": 12}', 5),
        ('{"jsonrpc": "2.0", "id": null, "method": "echo"}', None),
        ('{"jsonrpc": "2.0", "id": 1.5, "method": "echo"}', None),
        ('{"jsonrpc": "2.0", "id": 6, "method": "echo", "params": 5}', 6),
    ],
)
async def test_invalid_envelope(router: RequestRouter, registry: SessionRegistry, raw: str, request_id: Any):
    session = await open_session(registry)

    with pytest.raises(InvalidEnvelope) as exc_info:
        await router.handle(session.id, raw)
    assert exc_info.value.code == -32600
    assert exc_info.value.request_id == request_id


@pytest.mark.anyio
async def test_unknown_method(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)

    with pytest.raises(UnknownMethod) as exc_info:
        await router.handle(session.id, body(id=9, method="unknown"))
    assert exc_info.value.code == -32601
    assert exc_info.value.request_id == 9
    assert session.pending == {}


@pytest.mark.anyio
async def test_invalid_params(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)

    response = await router.handle(session.id, body(id=1, method="add", params={"a": "x"}))

    assert isinstance(response, JSONRPCErrorResponse)
    assert response.id == 1
    assert response.error.code == INVALID_PARAMS


@pytest.mark.anyio
async def test_handler_exception_becomes_internal_error(
    router: RequestRouter, registry: SessionRegistry, caplog: pytest.LogCaptureFixture
):
    session = await open_session(registry)

    with caplog.at_level(logging.ERROR):
        response = await router.handle(session.id, body(id=1, method="fail"))

    assert response == JSONRPCErrorResponse(
        jsonrpc="2.0", id=1, error=ErrorData(code=INTERNAL_ERROR, message="boom")
    )
    assert "Handler for fail raised" in caplog.text
    assert session.pending == {}


@pytest.mark.anyio
async def test_handler_rpc_error_is_returned_verbatim(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)

    response = await router.handle(session.id, body(id=1, method="reject"))

    assert response == JSONRPCErrorResponse(
        jsonrpc="2.0", id=1, error=ErrorData(code=404, message="No such thing", data={"what": "thing"})
    )


@pytest.mark.anyio
async def test_non_object_result_is_internal_error(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)

    response = await router.handle(session.id, body(id=1, method="scalar"))

    assert isinstance(response, JSONRPCErrorResponse)
    assert response.error.code == INTERNAL_ERROR


class Opaque:
    """Something JSON has no representation for."""


@pytest.mark.anyio
async def test_unserializable_result_is_internal_error(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)

    @router.method("opaque")
    async def opaque(params: dict[str, Any] | None) -> dict[str, Any]:
        return {"x": Opaque()}

    response = await router.handle(session.id, body(id=1, method="opaque"))

    assert isinstance(response, JSONRPCErrorResponse)
    assert response.id == 1
    assert response.error.code == INTERNAL_ERROR
    assert session.pending == {}


@pytest.mark.anyio
async def test_unserializable_push_result_is_pushed_as_error(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)
    assert session.channel is not None

    @router.method("push/opaque", push=True)
    async def push_opaque(params: dict[str, Any] | None) -> dict[str, Any]:
        return {"x": Opaque()}

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            router.task_group = tg
            assert await router.handle(session.id, body(id=2, method="push/opaque")) is None
            event = await session.channel.receive_stream.receive()

    payload = json.loads(event.data)
    assert payload["id"] == 2
    assert payload["error"]["code"] == INTERNAL_ERROR
    assert session.is_active
    assert session.pending == {}


@pytest.mark.anyio
async def test_positional_params(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)

    echoed = await router.handle(session.id, body(id=1, method="echo", params=[1, 2]))
    assert isinstance(echoed, JSONRPCResultResponse)
    assert echoed.result["params"] == [1, 2]

    rejected = await router.handle(session.id, body(id=2, method="add", params=[2, 3]))
    assert isinstance(rejected, JSONRPCErrorResponse)
    assert rejected.error.code == INVALID_PARAMS


@pytest.mark.anyio
async def test_duplicate_pending_id_is_rejected(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)
    release = anyio.Event()
    responses: list[Any] = []

    @router.method("wait")
    async def wait(params: dict[str, Any] | None) -> dict[str, Any]:
        await release.wait()
        return {}

    async def first() -> None:
        responses.append(await router.handle(session.id, body(id=1, method="wait")))

    async with anyio.create_task_group() as tg:
        tg.start_soon(first)
        await anyio.wait_all_tasks_blocked()

        with pytest.raises(DuplicateRequestId):
            await router.handle(session.id, body(id=1, method="wait"))
        release.set()

    assert responses == [JSONRPCResultResponse(jsonrpc="2.0", id=1, result={})]

    # Once answered the id may be reused; this layer does not deduplicate.
    assert await router.handle(session.id, body(id=1, method="wait")) == responses[0]


@pytest.mark.anyio
async def test_session_closed_while_request_pending(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)
    release = anyio.Event()
    errors: list[Exception] = []

    @router.method("wait")
    async def wait(params: dict[str, Any] | None) -> dict[str, Any]:
        await release.wait()
        return {}

    async def request() -> None:
        try:
            await router.handle(session.id, body(id=1, method="wait"))
        except SessionClosed as exc:
            errors.append(exc)

    async with anyio.create_task_group() as tg:
        tg.start_soon(request)
        await anyio.wait_all_tasks_blocked()
        await registry.close(session.id, reason="client disconnected")
        release.set()

    assert len(errors) == 1
    assert errors[0].request_id == 1


@pytest.mark.anyio
async def test_push_style_method_answers_over_sse(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)
    assert session.channel is not None
    events: list[SSEEvent] = []

    async with anyio.create_task_group() as tg:
        router.task_group = tg
        result = await router.handle(session.id, body(id=5, method="push/echo", params={"x": 1}))
        assert result is None
        for _ in range(2):
            events.append(await session.channel.receive_stream.receive())

    assert [event.event for event in events] == ["message", "message"]
    assert json.loads(events[0].data) == {"jsonrpc": "2.0", "method": "progress", "params": {"step": 1}}
    assert json.loads(events[1].data) == {"jsonrpc": "2.0", "id": 5, "result": {"params": {"x": 1}}}
    assert session.pending == {}


@pytest.mark.anyio
async def test_push_style_without_task_group_runs_inline(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)
    assert session.channel is not None
    events: list[SSEEvent] = []

    async def consume() -> None:
        for _ in range(2):
            events.append(await session.channel.receive_stream.receive())  # type: ignore[union-attr]

    async with anyio.create_task_group() as tg:
        tg.start_soon(consume)
        assert await router.handle(session.id, body(id=6, method="push/echo")) is None

    assert json.loads(events[-1].data) == {"jsonrpc": "2.0", "id": 6, "result": {"params": None}}


@pytest.mark.anyio
async def test_push_to_closed_session_is_logged_not_raised(
    router: RequestRouter, registry: SessionRegistry, caplog: pytest.LogCaptureFixture
):
    session = await open_session(registry)
    release = anyio.Event()

    @router.method("push/wait", push=True)
    async def push_wait(params: dict[str, Any] | None) -> dict[str, Any]:
        await release.wait()
        return {}

    with caplog.at_level(logging.WARNING):
        async with anyio.create_task_group() as tg:
            router.task_group = tg
            assert await router.handle(session.id, body(id=1, method="push/wait")) is None
            await anyio.wait_all_tasks_blocked()
            await registry.close(session.id, reason="idle timeout")
            release.set()

    assert "Dropping response to request 1" in caplog.text


@pytest.mark.anyio
async def test_notification_is_dispatched_without_response(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)
    seen: list[Any] = []

    @router.method("notifications/hello")
    async def hello(params: dict[str, Any] | None) -> None:
        seen.append((params, router.request_context.request_id))

    assert await router.handle(session.id, body(method="notifications/hello", params={"a": 1})) is None
    assert await router.handle(session.id, body(method="notifications/unknown")) is None

    assert seen == [({"a": 1}, None)]


@pytest.mark.anyio
async def test_notification_handler_errors_are_swallowed(router: RequestRouter, registry: SessionRegistry):
    session = await open_session(registry)

    assert await router.handle(session.id, body(method="fail")) is None


@pytest.mark.anyio
async def test_request_touches_session():
    now = [0.0]
    registry = SessionRegistry(clock=lambda: now[0])
    router = RequestRouter(registry)

    @router.method("ping")
    async def ping(params: dict[str, Any] | None) -> dict[str, Any]:
        return {}

    session = await open_session(registry)
    now[0] = 30.0
    await router.handle(session.id, body(id=1, method="ping"))

    assert session.last_activity == 30.0


def test_request_context_outside_handler(router: RequestRouter):
    with pytest.raises(LookupError):
        router.request_context
