"""Run the SSE JSON-RPC server: ``python -m sse_rpc``."""

import uvicorn

from sse_rpc.server.app import create_app
from sse_rpc.server.settings import Settings
from sse_rpc.utilities.logging import configure_logging, get_logger

logger = get_logger(__name__)


def main() -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    logger.info("Serving %s on http://%s:%d%s", settings.server_name, settings.host, settings.port, settings.sse_path)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
