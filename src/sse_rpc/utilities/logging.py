"""Logging utilities for sse-rpc."""

import logging
from typing import Literal

from rich.console import Console
from rich.logging import RichHandler


def get_logger(name: str) -> logging.Logger:
    """Get a logger nested under the sse_rpc namespace.

    Args:
        name: the name of the logger, usually ``__name__``

    Returns:
        a logger instance
    """
    if name != "sse_rpc" and not name.startswith("sse_rpc."):
        name = f"sse_rpc.{name}"
    return logging.getLogger(name)


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO",
) -> None:
    """Send log records to stderr through rich.

    Args:
        level: the log level to use
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )
    # uvicorn installs its own handlers; route its records through ours.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True
