"""
SSE channel and writer.

Every session owns one SSEChannel: a single-slot memory object stream whose
receiving end is consumed by an ``EventSourceResponse``. The response writes each
event as its own ASGI body chunk, so at most one event is ever waiting to be
flushed to the client.

Ordering: events are numbered and sent while holding the channel lock. anyio
locks are fair, so events pushed to one session reach the client in the order the
pushes were made. The ``endpoint`` event is always the first event on a stream;
other pushes wait until it has been sent.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final, Literal

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from sse_starlette import ServerSentEvent

from sse_rpc.shared.exceptions import SessionNotFound, StreamClosed
from sse_rpc.types import JSONRPCMessage, dump_message

if TYPE_CHECKING:
    from sse_rpc.server.registry import SessionRegistry

logger = logging.getLogger(__name__)

EventName = Literal["endpoint", "message"]

ENDPOINT_EVENT: Final[EventName] = "endpoint"
MESSAGE_EVENT: Final[EventName] = "message"


@dataclass(frozen=True)
class SSEEvent:
    """A single server-to-client event."""

    event: EventName
    data: str
    sequence: int

    def to_server_sent_event(self) -> ServerSentEvent:
        return ServerSentEvent(data=self.data, event=self.event, id=str(self.sequence))


class SSEChannel:
    """The outbound event stream of one session."""

    def __init__(self) -> None:
        self._send_stream: MemoryObjectSendStream[SSEEvent]
        self._receive_stream: MemoryObjectReceiveStream[SSEEvent]
        self._send_stream, self._receive_stream = anyio.create_memory_object_stream[SSEEvent](1)
        self._lock = anyio.Lock()
        self._announced = anyio.Event()
        self._last_sequence = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def announced(self) -> bool:
        return self._announced.is_set()

    async def announce(self, endpoint_url: str) -> SSEEvent:
        """Send the ``endpoint`` event. Must be the first event on the channel."""
        async with self._lock:
            if self._announced.is_set() or self._last_sequence:
                raise RuntimeError("The endpoint event has already been sent on this channel")
            event = await self._send_locked(ENDPOINT_EVENT, endpoint_url)
            self._announced.set()
        return event

    async def send(self, event: EventName, data: str) -> SSEEvent:
        if event == ENDPOINT_EVENT:
            return await self.announce(data)
        if self._closed:
            raise StreamClosed()
        # Closing the channel sets the event too, so this never waits forever.
        await self._announced.wait()
        async with self._lock:
            return await self._send_locked(event, data)

    async def _send_locked(self, event: EventName, data: str) -> SSEEvent:
        if self._closed:
            raise StreamClosed()
        sse_event = SSEEvent(event=event, data=data, sequence=self._last_sequence + 1)
        try:
            await self._send_stream.send(sse_event)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as exc:
            self._closed = True
            raise StreamClosed() from exc
        self._last_sequence = sse_event.sequence
        logger.debug("Queued SSE event #%d (%s)", sse_event.sequence, sse_event.event)
        return sse_event

    async def events(self) -> AsyncIterator[ServerSentEvent]:
        """Iterate the events in wire form until the channel is closed."""
        async with self._receive_stream:
            async for event in self._receive_stream:
                yield event.to_server_sent_event()

    @property
    def receive_stream(self) -> MemoryObjectReceiveStream[SSEEvent]:
        return self._receive_stream

    async def aclose(self) -> None:
        """Stop accepting events.

        Events already queued are still delivered; the consumer then sees the end
        of the stream.
        """
        self._closed = True
        self._announced.set()
        await self._send_stream.aclose()

    def close_receiver(self) -> None:
        """Drop the consumer side; pushes blocked on a full slot fail with StreamClosed."""
        self._receive_stream.close()


class SSEChannelWriter:
    """Pushes events to a session's SSE stream, looked up through the registry."""

    def __init__(self, registry: SessionRegistry):
        self.registry = registry

    async def push(self, session_id: str, event: EventName, data: str) -> SSEEvent:
        """Push one event to a session.

        Raises:
            StreamClosed: if the session, or its stream, no longer exists
        """
        try:
            session = self.registry.lookup(session_id)
        except SessionNotFound as exc:
            raise StreamClosed(f"No open stream for session {session_id}") from exc

        channel = session.channel
        if channel is None or channel.closed or session.is_closed:
            raise StreamClosed(f"No open stream for session {session_id}")

        try:
            sse_event = await channel.send(event, data)
        except StreamClosed:
            logger.warning("SSE stream for session %s is closed; closing session", session_id)
            await self.registry.close(session_id, reason="stream closed")
            raise

        session.touch(self.registry.clock())
        return sse_event

    async def push_message(self, session_id: str, message: JSONRPCMessage) -> SSEEvent:
        """Push a JSON-RPC envelope as a ``message`` event."""
        return await self.push(session_id, MESSAGE_EVENT, json.dumps(dump_message(message), separators=(",", ":")))
