"""Utilities for creating standardized httpx AsyncClient instances."""

from typing import Any, Protocol

import httpx

__all__ = ["HttpClientFactory", "create_http_client"]

DEFAULT_TIMEOUT = httpx.Timeout(30.0)


class HttpClientFactory(Protocol):
    def __call__(self, **kwargs: Any) -> httpx.AsyncClient: ...


def create_http_client(**kwargs: Any) -> httpx.AsyncClient:
    """Create an httpx AsyncClient with the defaults used by the SSE client.

    Redirects are always followed and requests time out after 30 seconds unless
    another ``timeout`` is given. Any other keyword argument is passed through to
    ``httpx.AsyncClient``.

    The returned client must be used as an async context manager.

    Examples:
        async with create_http_client(headers={"Authorization": "Bearer token"}) as client:
            response = await client.get("http://localhost:8000/sse")
    """
    kwargs["follow_redirects"] = True
    if kwargs.get("timeout") is None:
        kwargs["timeout"] = DEFAULT_TIMEOUT
    return httpx.AsyncClient(**kwargs)
