from bm.network.requests.executor import RequestExecutor
from bm.network.requests.transport import PinnedHTTPAdapter, RequestsTransport

__all__ = ["PinnedHTTPAdapter", "RequestExecutor", "RequestsTransport"]
