import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import urljoin, urlparse

import anyio
import httpx
from anyio.abc import TaskStatus
from httpx_sse import aconnect_sse

from sse_rpc.client.session import ClientSession, MessageHandler
from sse_rpc.shared._httpx_utils import HttpClientFactory, create_http_client

logger = logging.getLogger(__name__)


def remove_request_params(url: str) -> str:
    return urljoin(url, urlparse(url).path)


def _same_origin(a: str, b: str) -> bool:
    parsed_a, parsed_b = urlparse(a), urlparse(b)
    return parsed_a.scheme == parsed_b.scheme and parsed_a.netloc == parsed_b.netloc


@asynccontextmanager
async def sse_client(
    url: str,
    headers: dict[str, Any] | None = None,
    timeout: float = 5,
    sse_read_timeout: float = 60 * 5,
    read_timeout_seconds: float | None = None,
    message_handler: MessageHandler | None = None,
    httpx_client_factory: HttpClientFactory = create_http_client,
) -> AsyncGenerator[ClientSession, None]:
    """
    Client transport for SSE.

    Opens the event stream at ``url``, waits for the ``endpoint`` event and yields
    a ClientSession that posts to the announced endpoint.

    `sse_read_timeout` determines how long (in seconds) the client will wait for a new
    event before disconnecting. All other HTTP operations are controlled by `timeout`.

    Args:
        url: SSE endpoint URL
        headers: Optional HTTP headers sent with every request
        timeout: HTTP request timeout in seconds
        sse_read_timeout: SSE read timeout in seconds
        read_timeout_seconds: How long a request waits for a pushed response
        message_handler: Receives server-initiated requests and notifications
        httpx_client_factory: Builds the underlying httpx client
    """
    async with anyio.create_task_group() as tg:
        logger.info("Connecting to SSE endpoint: %s", remove_request_params(url))
        async with httpx_client_factory(headers=headers, timeout=httpx.Timeout(timeout)) as client:
            async with aconnect_sse(
                client,
                "GET",
                url,
                timeout=httpx.Timeout(timeout, read=sse_read_timeout),
            ) as event_source:
                event_source.response.raise_for_status()
                logger.debug("SSE connection established")

                async def sse_reader(task_status: TaskStatus[ClientSession] = anyio.TASK_STATUS_IGNORED):
                    session: ClientSession | None = None
                    try:
                        async for sse in event_source.aiter_sse():
                            logger.debug("Received SSE event: %s", sse.event)
                            match sse.event:
                                case "endpoint":
                                    if session is not None:
                                        logger.warning("Ignoring repeated endpoint event")
                                        continue
                                    endpoint_url = urljoin(url, sse.data)
                                    if not _same_origin(url, endpoint_url):
                                        error_msg = f"Endpoint origin does not match connection origin: {endpoint_url}"
                                        logger.error(error_msg)
                                        raise ValueError(error_msg)
                                    logger.info("Received endpoint URL: %s", endpoint_url)
                                    session = ClientSession(
                                        client,
                                        endpoint_url,
                                        read_timeout_seconds=read_timeout_seconds,
                                        message_handler=message_handler,
                                    )
                                    task_status.started(session)
                                case "message":
                                    if session is None:
                                        raise ValueError("Received a message event before the endpoint event")
                                    await session._handle_incoming(sse.data)
                                case _:
                                    logger.warning("Unknown SSE event: %s", sse.event)
                        if session is None:
                            raise ValueError("SSE stream ended before the endpoint event")
                    finally:
                        if session is not None:
                            session._close("The SSE stream was closed by the server")

                session = await tg.start(sse_reader)
                try:
                    yield session
                finally:
                    tg.cancel_scope.cancel()
