from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import anyio
import httpx
from anyio.streams.memory import MemoryObjectSendStream
from pydantic import BaseModel, ValidationError

from sse_rpc.shared.exceptions import RPCError
from sse_rpc.types import (
    JSONRPC_VERSION,
    LATEST_PROTOCOL_VERSION,
    REQUEST_TIMEOUT,
    STREAM_CLOSED,
    ErrorData,
    Implementation,
    InitializeRequestParams,
    InitializeResult,
    JSONRPCErrorResponse,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    JSONRPCResponseAdapter,
    RequestId,
    dump_message,
)

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT", bound=BaseModel)

MessageHandler = Callable[[JSONRPCRequest | JSONRPCNotification], Awaitable[None]]

DEFAULT_CLIENT_INFO = Implementation(name="sse-rpc-client", version="0.1.0")


class ClientSession:
    """
    Client side of one SSE session.

    Requests are POSTed to the endpoint announced by the server. A response
    arrives either as the body of the POST or, for push-style methods, later as a
    ``message`` event on the SSE stream; both are matched to the request by id.

    Args:
        http_client: The client that owns the SSE connection.
        endpoint_url: Absolute message URL from the ``endpoint`` event.
        read_timeout_seconds: How long to wait for a pushed response; None waits
            until the stream closes.
        message_handler: Receives server-initiated requests and notifications.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        endpoint_url: str,
        *,
        read_timeout_seconds: float | None = None,
        message_handler: MessageHandler | None = None,
    ):
        self.endpoint_url = endpoint_url
        self._http_client = http_client
        self._read_timeout_seconds = read_timeout_seconds
        self._message_handler = message_handler
        self._request_id = 0
        self._response_streams: dict[RequestId, MemoryObjectSendStream[JSONRPCResponse]] = {}
        self._closed = False
        self.server_info: InitializeResult | None = None

    async def initialize(
        self,
        client_info: Implementation = DEFAULT_CLIENT_INFO,
        capabilities: dict[str, Any] | None = None,
        protocol_version: str = LATEST_PROTOCOL_VERSION,
    ) -> InitializeResult:
        params = InitializeRequestParams(
            protocolVersion=protocol_version,
            capabilities=capabilities or {},
            clientInfo=client_info,
        )
        result = await self.send_request(
            "initialize",
            params.model_dump(mode="json", by_alias=True, exclude_none=True),
            result_type=InitializeResult,
        )
        await self.send_notification("notifications/initialized")
        self.server_info = result
        return result

    async def send_ping(self) -> dict[str, Any]:
        return await self.send_request("ping")

    async def send_request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        result_type: type[ResultT] | None = None,
    ) -> Any:
        """Send a request and wait for its response.

        Returns the result as a dict, or validated as ``result_type`` when given.

        Raises:
            RPCError: if the server answers with an error, or no answer arrives in time
            httpx.HTTPStatusError: if the server rejects the POST without a JSON-RPC body
        """
        if self._closed:
            raise RPCError(ErrorData(code=STREAM_CLOSED, message="The SSE stream is closed"))

        request_id = self._request_id
        self._request_id += 1
        request = JSONRPCRequest(jsonrpc=JSONRPC_VERSION, id=request_id, method=method, params=params)

        response_stream, response_stream_reader = anyio.create_memory_object_stream[JSONRPCResponse](1)
        self._response_streams[request_id] = response_stream
        try:
            http_response = await self._post(request)
            if http_response.status_code == httpx.codes.ACCEPTED:
                logger.debug("Request %r accepted, waiting for pushed response", request_id)
                with anyio.fail_after(self._read_timeout_seconds):
                    response = await response_stream_reader.receive()
            else:
                response = self._response_from_http(http_response)
        except TimeoutError:
            raise RPCError(
                ErrorData(
                    code=REQUEST_TIMEOUT,
                    message=(
                        f"Timed out while waiting for response to {method}. "
                        f"Waited {self._read_timeout_seconds} seconds."
                    ),
                )
            ) from None
        finally:
            self._response_streams.pop(request_id, None)
            await response_stream.aclose()
            await response_stream_reader.aclose()

        if isinstance(response, JSONRPCErrorResponse):
            raise RPCError(response.error)
        if result_type is not None:
            return result_type.model_validate(response.result)
        return response.result

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        notification = JSONRPCNotification(jsonrpc=JSONRPC_VERSION, method=method, params=params)
        response = await self._post(notification)
        response.raise_for_status()

    async def _post(self, message: JSONRPCRequest | JSONRPCNotification) -> httpx.Response:
        logger.debug("Sending client message: %s", message)
        return await self._http_client.post(
            self.endpoint_url,
            json=dump_message(message),
            headers={"Content-Type": "application/json"},
        )

    def _response_from_http(self, http_response: httpx.Response) -> JSONRPCResponse:
        try:
            return JSONRPCResponseAdapter.validate_json(http_response.content)
        except ValidationError:
            http_response.raise_for_status()
            raise

    async def _handle_incoming(self, data: str) -> None:
        """Dispatch one ``message`` event from the SSE stream."""
        server_message: JSONRPCRequest | JSONRPCNotification | None = None
        try:
            payload = json.loads(data)
            if not isinstance(payload, dict):
                raise ValueError("message is not a JSON object")
            if "method" in payload:
                model = JSONRPCRequest if "id" in payload else JSONRPCNotification
                server_message = model.model_validate(payload)
            else:
                response = JSONRPCResponseAdapter.validate_python(payload)
        except (ValueError, ValidationError) as exc:
            logger.error("Error parsing server message: %s", exc)
            return

        if server_message is not None:
            await self._dispatch_server_message(server_message)
            return

        stream = self._response_streams.get(response.id) if response.id is not None else None
        if stream is None:
            logger.warning("Received response for unknown request id %r", response.id)
            return
        try:
            stream.send_nowait(response)
        except (anyio.WouldBlock, anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.warning("Dropping duplicate or late response for request %r", response.id)

    async def _dispatch_server_message(self, message: JSONRPCRequest | JSONRPCNotification) -> None:
        if self._message_handler is None:
            logger.debug("Ignoring server message %s", message.method)
            return
        try:
            await self._message_handler(message)
        except Exception:
            logger.exception("Message handler failed for server message %s", message.method)

    def _close(self, reason: str) -> None:
        """Fail every request still waiting for a pushed response."""
        self._closed = True
        for request_id, stream in list(self._response_streams.items()):
            error = JSONRPCErrorResponse(
                jsonrpc=JSONRPC_VERSION,
                id=request_id,
                error=ErrorData(code=STREAM_CLOSED, message=reason),
            )
            try:
                stream.send_nowait(error)
            except (anyio.WouldBlock, anyio.BrokenResourceError, anyio.ClosedResourceError):
                pass
