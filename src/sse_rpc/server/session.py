"""
Session state for the SSE transport.

A session ties one long-lived SSE stream to the POST requests a client sends to
the session's message endpoint. Its state only ever moves forward:

    PENDING_STREAM -> ACTIVE -> CLOSED

Sessions are created and closed through the SessionRegistry; the methods here
assume the caller holds the registry's view of the session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import anyio

from sse_rpc.shared.exceptions import DuplicateRequestId, SessionClosed
from sse_rpc.types import InitializeRequestParams, RequestId

if TYPE_CHECKING:
    from sse_rpc.server.sse import SSEChannel

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    PENDING_STREAM = "pending_stream"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class PendingRequest:
    """A request that has been accepted but not yet answered."""

    request_id: RequestId
    method: str
    received_at: float
    awaiting_response: bool = True
    failure: Exception | None = None


@dataclass(eq=False)
class Session:
    id: str
    created_at: float
    last_activity: float
    state: SessionState = SessionState.PENDING_STREAM
    channel: SSEChannel | None = None
    client_params: InitializeRequestParams | None = None
    pending: dict[RequestId, PendingRequest] = field(default_factory=dict)
    closed_reason: str | None = None
    lock: anyio.Lock = field(default_factory=anyio.Lock, repr=False)

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.CLOSED

    def touch(self, now: float) -> None:
        self.last_activity = max(self.last_activity, now)

    def mark_active(self) -> None:
        if self.state is not SessionState.PENDING_STREAM:
            raise RuntimeError(f"Session {self.id} cannot become active from state {self.state.value}")
        self.state = SessionState.ACTIVE

    def begin_request(self, request_id: RequestId, method: str, now: float) -> PendingRequest:
        """Record a request as pending.

        Raises:
            SessionClosed: if the session is already closed
            DuplicateRequestId: if a request with the same id is still pending
        """
        if self.is_closed:
            raise SessionClosed(request_id=request_id)
        if request_id in self.pending:
            raise DuplicateRequestId(
                f"Request id {request_id!r} is already pending in this session",
                request_id=request_id,
            )
        pending = PendingRequest(request_id=request_id, method=method, received_at=now)
        self.pending[request_id] = pending
        return pending

    def finish_request(self, pending: PendingRequest) -> None:
        pending.awaiting_response = False
        # Only drop the entry if it still belongs to this request.
        if self.pending.get(pending.request_id) is pending:
            del self.pending[pending.request_id]

    async def close(self, reason: str) -> None:
        """Close the session, its stream and fail every pending request.

        Callers must hold ``self.lock``.
        """
        if self.is_closed:
            return
        self.state = SessionState.CLOSED
        self.closed_reason = reason

        for pending in self.pending.values():
            pending.failure = SessionClosed(f"Session closed: {reason}", request_id=pending.request_id)
        self.pending.clear()

        if self.channel is not None:
            await self.channel.aclose()
        logger.info("Session %s closed (%s)", self.id, reason)
