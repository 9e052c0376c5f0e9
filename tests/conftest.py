import anyio
import pytest
import sse_starlette
from packaging import version


@pytest.fixture
def anyio_backend():
    return "asyncio"


SSE_STARLETTE_VERSION = version.parse(sse_starlette.__version__)
NEEDS_RESET = SSE_STARLETTE_VERSION < version.parse("3.0.0")


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    """Give every test a fresh sse-starlette exit event.

    Before 3.0, sse-starlette kept ``AppStatus.should_exit_event`` as a module
    level event bound to the first event loop that used it. Later versions keep
    it per context and need no reset.
    """
    if not NEEDS_RESET:
        yield
        return

    from sse_starlette.sse import AppStatus

    AppStatus.should_exit_event = anyio.Event()  # type: ignore[attr-defined]
    yield
    AppStatus.should_exit_event = anyio.Event()  # type: ignore[attr-defined]
