"""Request header validation for the SSE and message endpoints."""

import logging

from pydantic import BaseModel, Field
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)


class TransportSecuritySettings(BaseModel):
    """Protection against DNS rebinding attacks.

    A browser tricked into resolving an attacker's domain to a local address
    still sends the attacker's Host and Origin headers, so rejecting unexpected
    values keeps local servers out of reach.
    """

    enable_dns_rebinding_protection: bool = True

    allowed_hosts: list[str] = Field(default_factory=list)
    """Allowed Host header values. ``example.com:*`` allows any port."""

    allowed_origins: list[str] = Field(default_factory=list)
    """Allowed Origin header values. ``http://example.com:*`` allows any port."""


def _matches(value: str, allowed: list[str]) -> bool:
    if value in allowed:
        return True
    for pattern in allowed:
        if pattern.endswith(":*") and value.startswith(pattern[:-1]):
            return True
    return False


class TransportSecurityMiddleware:
    """Validates requests before they reach the transport."""

    def __init__(self, settings: TransportSecuritySettings | None = None):
        # Without explicit settings only the Content-Type of POSTs is checked.
        self.settings = settings or TransportSecuritySettings(enable_dns_rebinding_protection=False)

    def _validate_host(self, host: str | None) -> bool:
        if not host:
            logger.warning("Missing Host header in request")
            return False
        if _matches(host, self.settings.allowed_hosts):
            return True
        logger.warning("Invalid Host header: %s", host)
        return False

    def _validate_origin(self, origin: str | None) -> bool:
        # Same-origin requests may omit the Origin header.
        if not origin:
            return True
        if _matches(origin, self.settings.allowed_origins):
            return True
        logger.warning("Invalid Origin header: %s", origin)
        return False

    def _validate_content_type(self, content_type: str | None) -> bool:
        return content_type is not None and content_type.lower().startswith("application/json")

    async def validate_request(self, request: Request, is_post: bool = False) -> Response | None:
        """Return an error response if the request must be rejected, else None."""
        if is_post and not self._validate_content_type(request.headers.get("content-type")):
            return Response("Invalid Content-Type header", status_code=400)

        if not self.settings.enable_dns_rebinding_protection:
            return None

        if not self._validate_host(request.headers.get("host")):
            return Response("Invalid Host header", status_code=421)

        if not self._validate_origin(request.headers.get("origin")):
            return Response("Invalid Origin header", status_code=403)

        return None
