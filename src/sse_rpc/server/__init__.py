from .app import create_app
from .lifecycle import SessionLifecycleManager
from .registry import SessionRegistry
from .router import RequestContext, RequestRouter
from .session import Session, SessionState
from .settings import Settings
from .sse import SSEChannel, SSEChannelWriter, SSEEvent

__all__: list[str] = [
    "RequestContext",
    "RequestRouter",
    "SSEChannel",
    "SSEChannelWriter",
    "SSEEvent",
    "Session",
    "SessionLifecycleManager",
    "SessionRegistry",
    "SessionState",
    "Settings",
    "create_app",
]
