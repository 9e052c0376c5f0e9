from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from sse_rpc.server.transport_security import TransportSecuritySettings


class Settings(BaseSettings):
    """Server settings.

    All settings can be configured via environment variables with the prefix SSE_RPC_.
    For example, SSE_RPC_PORT=9000 will set port=9000 and
    SSE_RPC_TRANSPORT_SECURITY__ALLOWED_HOSTS='["localhost:*"]' sets a nested field.
    """

    model_config = SettingsConfigDict(
        env_prefix="SSE_RPC_",
        env_file=".env",
        env_nested_delimiter="__",
        nested_model_default_partial_update=True,
        extra="ignore",
    )

    # Server settings
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    server_name: str = "sse-rpc"
    server_version: str = "0.1.0"
    instructions: str | None = None

    # HTTP settings
    host: str = "127.0.0.1"
    port: int = 8000
    sse_path: str = "/sse"
    message_path: str = "/message"
    max_body_bytes: int = Field(default=4 * 1024 * 1024, gt=0)

    # Session settings
    session_idle_timeout: float | None = Field(default=30 * 60, gt=0)
    """Seconds without activity after which a session is closed. None disables expiry."""

    reap_interval: float = Field(default=30.0, gt=0)
    """Seconds between two sweeps for idle sessions."""

    max_sessions: int | None = Field(default=None, gt=0)

    ping_interval: int = Field(default=15, gt=0)
    """Seconds between keep-alive comments on idle SSE streams."""

    # Transport security settings (DNS rebinding protection)
    transport_security: TransportSecuritySettings | None = None
