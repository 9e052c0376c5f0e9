"""Session registry: the single source of truth for which sessions exist."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from uuid import uuid4

import anyio

from sse_rpc.server.session import Session, SessionState
from sse_rpc.server.sse import SSEChannel
from sse_rpc.shared.exceptions import ResourceExhausted, SessionAlreadyActive, SessionNotFound

logger = logging.getLogger(__name__)


def default_session_id() -> str:
    return uuid4().hex


class SessionRegistry:
    """
    Maps session ids to live sessions.

    Creation is serialized by a registry lock; everything that changes a single
    session (attaching a stream, closing) is serialized by that session's lock.
    Registry-wide sweeps work on a snapshot so they never hold the registry lock
    while closing streams.

    Args:
        max_sessions: Upper bound on live sessions; None means unbounded.
        session_id_factory: Produces new opaque session ids.
        clock: Monotonic time source used for activity timestamps.
    """

    def __init__(
        self,
        *,
        max_sessions: int | None = None,
        session_id_factory: Callable[[], str] = default_session_id,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_sessions = max_sessions
        self.clock = clock
        self._session_id_factory = session_id_factory
        self._sessions: dict[str, Session] = {}
        self._create_lock = anyio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    async def create(self) -> str:
        """Register a new session in the PENDING_STREAM state and return its id.

        Raises:
            ResourceExhausted: if ``max_sessions`` live sessions already exist
        """
        async with self._create_lock:
            if self.max_sessions is not None and len(self._sessions) >= self.max_sessions:
                logger.warning("Refusing new session: %d sessions already open", len(self._sessions))
                raise ResourceExhausted(f"Session limit of {self.max_sessions} reached")

            session_id = self._session_id_factory()
            while session_id in self._sessions:
                session_id = self._session_id_factory()

            now = self.clock()
            self._sessions[session_id] = Session(id=session_id, created_at=now, last_activity=now)

        logger.info("Created session %s", session_id)
        return session_id

    def lookup(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFound(f"Session {session_id} not found") from None

    async def attach_stream(self, session_id: str, channel: SSEChannel, *, replace: bool = False) -> None:
        """Attach the outbound SSE stream to a session.

        With ``replace=True`` an already attached, still open stream is closed and
        replaced; otherwise it is an error.

        Raises:
            SessionNotFound: if the session does not exist
            SessionAlreadyActive: if the session has an open stream and replace is False
        """
        session = self.lookup(session_id)
        async with session.lock:
            if session.is_closed:
                raise SessionNotFound(f"Session {session_id} not found")

            previous = session.channel
            if previous is not None and not previous.closed:
                if not replace:
                    raise SessionAlreadyActive(f"Session {session_id} already has an open stream")
                logger.info("Replacing SSE stream of session %s", session_id)
                await previous.aclose()

            session.channel = channel
            session.touch(self.clock())

    async def close(self, session_id: str, reason: str = "closed") -> bool:
        """Close and forget a session. Returns False if it was already gone."""
        session = self._sessions.get(session_id)
        if session is None:
            return False

        async with session.lock:
            await session.close(reason)
            if self._sessions.get(session_id) is session:
                del self._sessions[session_id]
        return True

    async def expire_idle(self, now: float, ttl: float) -> list[str]:
        """Close every session whose last activity is older than ``ttl`` seconds."""
        expired = [
            session.id
            for session in self.sessions()
            if session.state is not SessionState.CLOSED and now - session.last_activity > ttl
        ]
        for session_id in expired:
            logger.info("Session %s idle for more than %ss, expiring", session_id, ttl)
            await self.close(session_id, reason="idle timeout")
        return expired

    async def close_all(self, reason: str = "shutdown") -> None:
        for session in self.sessions():
            await self.close(session.id, reason=reason)
