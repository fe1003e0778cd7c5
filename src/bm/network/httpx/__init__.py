from bm.network.httpx.executor import AsyncRequestExecutor
from bm.network.httpx.transport import HttpxTransport, PinnedAsyncHTTPTransport, PinningNetworkBackend

__all__ = ["AsyncRequestExecutor", "HttpxTransport", "PinnedAsyncHTTPTransport", "PinningNetworkBackend"]
