from .session import ClientSession
from .sse import sse_client

__all__ = ["ClientSession", "sse_client"]
