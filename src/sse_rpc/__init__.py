"""Session-scoped JSON-RPC 2.0 over Server-Sent Events.

A client opens an SSE stream, receives the session's message endpoint as the
first event and POSTs JSON-RPC requests to it. Responses come back in the POST
response, or over the stream for push-style methods.

## Example - serve

```python
from sse_rpc.server import RequestRouter, SessionRegistry, create_app

router = RequestRouter(SessionRegistry())

@router.method("add")
async def add(params):
    return {"sum": params["a"] + params["b"]}

app = create_app(router=router)
```

## Example - call

```python
from sse_rpc.client import sse_client

async with sse_client("http://localhost:8000/sse") as session:
    await session.initialize()
    result = await session.send_request("add", {"a": 1, "b": 2})
```
"""

from .client import ClientSession, sse_client
from .shared.exceptions import (
    DuplicateRequestId,
    HandlerError,
    InvalidEnvelope,
    ParseError,
    ResourceExhausted,
    RPCError,
    SessionAlreadyActive,
    SessionClosed,
    SessionNotFound,
    StreamClosed,
    TransportError,
    UnknownMethod,
)
from .types import (
    ErrorData,
    JSONRPCErrorResponse,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    JSONRPCResultResponse,
    RequestId,
)

__all__ = [
    "ClientSession",
    "DuplicateRequestId",
    "ErrorData",
    "HandlerError",
    "InvalidEnvelope",
    "JSONRPCErrorResponse",
    "JSONRPCMessage",
    "JSONRPCNotification",
    "JSONRPCRequest",
    "JSONRPCResponse",
    "JSONRPCResultResponse",
    "ParseError",
    "RPCError",
    "RequestId",
    "ResourceExhausted",
    "SessionAlreadyActive",
    "SessionClosed",
    "SessionNotFound",
    "StreamClosed",
    "TransportError",
    "UnknownMethod",
    "sse_client",
]
