from typing import Any

from sse_rpc.types import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    RESOURCE_EXHAUSTED,
    SESSION_CLOSED,
    SESSION_NOT_FOUND,
    STREAM_CLOSED,
    ErrorData,
    RequestId,
)


class RPCError(Exception):
    """Exception carrying a JSON-RPC error.

    Method handlers raise it to answer a request with a specific error code, and
    the client raises it when the remote peer returns an error response.

    Attributes:
        error: The ErrorData sent (or received) in the error response
    """

    error: ErrorData

    def __init__(self, error: ErrorData):
        super().__init__(error.message)
        self.error = error


class HandlerError(RPCError):
    """An unexpected exception raised by a method handler, reported as an internal error."""

    @classmethod
    def from_exception(cls, exc: BaseException) -> "HandlerError":
        error = cls(ErrorData(code=INTERNAL_ERROR, message=str(exc) or type(exc).__name__))
        error.__cause__ = exc
        return error


class TransportError(Exception):
    """Base class for errors raised by the session transport itself.

    Each subclass maps onto a JSON-RPC error code so that it can be reported to
    the client as an error envelope.
    """

    code: int = INTERNAL_ERROR
    default_message: str = "Transport error"

    def __init__(self, message: str | None = None, *, request_id: RequestId | None = None, data: Any = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.request_id = request_id
        self.data = data

    def to_error_data(self) -> ErrorData:
        return ErrorData(code=self.code, message=self.message, data=self.data)


class SessionNotFound(TransportError):
    code = SESSION_NOT_FOUND
    default_message = "Session not found"


class SessionAlreadyActive(TransportError):
    code = INVALID_REQUEST
    default_message = "Session already has an active stream"


class SessionClosed(TransportError):
    code = SESSION_CLOSED
    default_message = "Session closed"


class StreamClosed(TransportError):
    code = STREAM_CLOSED
    default_message = "Stream closed"


class ParseError(TransportError):
    code = PARSE_ERROR
    default_message = "Parse error"


class InvalidEnvelope(TransportError):
    code = INVALID_REQUEST
    default_message = "Invalid request"


class DuplicateRequestId(InvalidEnvelope):
    default_message = "Duplicate request id"


class UnknownMethod(TransportError):
    code = METHOD_NOT_FOUND
    default_message = "Method not found"


class ResourceExhausted(TransportError):
    code = RESOURCE_EXHAUSTED
    default_message = "Too many sessions"
