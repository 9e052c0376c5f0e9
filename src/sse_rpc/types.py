"""Base models for the JSON-RPC 2.0 envelopes carried by the SSE transport."""

from typing import Annotated, Any, Final, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

JSONRPC_VERSION: Final[str] = "2.0"
LATEST_PROTOCOL_VERSION: Final[str] = "2024-11-05"

# Standard JSON-RPC error codes
PARSE_ERROR: Final[int] = -32700
INVALID_REQUEST: Final[int] = -32600
METHOD_NOT_FOUND: Final[int] = -32601
INVALID_PARAMS: Final[int] = -32602
INTERNAL_ERROR: Final[int] = -32603

# Implementation-defined server errors (-32000 to -32099)
SESSION_NOT_FOUND: Final[int] = -32001
SESSION_CLOSED: Final[int] = -32002
STREAM_CLOSED: Final[int] = -32003
RESOURCE_EXHAUSTED: Final[int] = -32004
REQUEST_TIMEOUT: Final[int] = -32005

# Strict so that "123" is never coerced into 123; the response id must keep the
# type of the request id.
RequestId = Annotated[int, Field(strict=True)] | str


class JSONRPCBase(BaseModel):
    """Base class for all JSON-RPC messages."""

    model_config = ConfigDict(extra="allow")

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION


class JSONRPCRequest(JSONRPCBase):
    """A request that expects a response."""

    id: RequestId
    method: str
    params: dict[str, Any] | list[Any] | None = None


class JSONRPCNotification(JSONRPCBase):
    """A notification which does not expect a response."""

    method: str
    params: dict[str, Any] | list[Any] | None = None


class ErrorData(BaseModel):
    """Error information in a JSON-RPC error response."""

    model_config = ConfigDict(extra="allow")

    code: int
    message: str
    data: Any | None = None


class JSONRPCResultResponse(JSONRPCBase):
    """A successful (non-error) response to a request."""

    id: RequestId
    result: dict[str, Any]


class JSONRPCErrorResponse(JSONRPCBase):
    """A response to a request that indicates an error occurred.

    The id is None when the request id could not be determined, e.g. for a
    parse error.
    """

    id: RequestId | None = None
    error: ErrorData


JSONRPCResponse = JSONRPCResultResponse | JSONRPCErrorResponse
JSONRPCMessage = JSONRPCRequest | JSONRPCNotification | JSONRPCResponse

JSONRPCResponseAdapter: TypeAdapter[JSONRPCResponse] = TypeAdapter(JSONRPCResponse)


def dump_message(message: JSONRPCMessage) -> dict[str, Any]:
    """Serialize a message for the wire.

    None-valued fields are dropped, except the id of an error response which
    JSON-RPC requires to be present (as null when unknown).
    """
    data = message.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(message, JSONRPCErrorResponse):
        data["id"] = message.id
    return data


class Implementation(BaseModel):
    """Name and version of a client or server implementation."""

    model_config = ConfigDict(extra="allow")

    name: str
    version: str


class InitializeRequestParams(BaseModel):
    """Parameters of the ``initialize`` request sent by the client."""

    model_config = ConfigDict(extra="allow")

    protocolVersion: str
    capabilities: dict[str, Any] = Field(default_factory=dict)
    clientInfo: Implementation | None = None


class InitializeResult(BaseModel):
    """Result returned by the server for ``initialize``."""

    model_config = ConfigDict(extra="allow")

    protocolVersion: str
    capabilities: dict[str, Any] = Field(default_factory=dict)
    serverInfo: Implementation
    instructions: str | None = None
