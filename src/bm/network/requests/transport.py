"""Sending encoded requests with requests, including certificate pinning."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import requests
from requests import Session
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool

from bm.network import DEFAULT_TIMEOUT
from bm.network._pipeline import network_error
from bm.network._user_agent import get_user_agent
from bm.network.models import EncodedRequest, RawResponse
from bm.network.pinning import CertificatePinner, CertificatePinningError, PinningPolicy

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 64 * 1024


class PinnedHTTPSConnection(HTTPSConnection):
    """HTTPS connection checking the server certificate against a pinner before any request bytes are sent.

    Subclassed per pinner by :func:`_pinned_pool_classes`, since urllib3 does not pass
    unknown keyword arguments through to its connections.
    """

    pinner: Optional[CertificatePinner] = None

    def connect(self):
        super().connect()
        if self.pinner is None:
            return
        host = getattr(self, "_tunnel_host", None) or self.host
        der = self.sock.getpeercert(binary_form=True)
        try:
            self.pinner.verify(host, der)
        except CertificatePinningError:
            self.close()
            raise


def _pinned_pool_classes(pinner: CertificatePinner) -> dict:
    connection_cls = type("PinnedHTTPSConnection", (PinnedHTTPSConnection,), {"pinner": pinner})
    pool_cls = type("PinnedHTTPSConnectionPool", (HTTPSConnectionPool,), {"ConnectionCls": connection_cls})
    return {"http": HTTPConnectionPool, "https": pool_cls}


class PinnedHTTPAdapter(HTTPAdapter):
    """Transport adapter trusting the pinned certificates and enforcing the pins of a :class:`PinningPolicy`."""

    def __init__(self, policy: PinningPolicy, **kwargs):
        # init_poolmanager runs inside HTTPAdapter.__init__
        self.pinner = CertificatePinner(policy)
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["ssl_context"] = self.pinner.create_ssl_context()
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = _pinned_pool_classes(self.pinner)


class RequestsResponse:
    """Response of one attempt. Content is read lazily when the request was streamed."""

    def __init__(self, request: EncodedRequest, response: requests.Response):
        self._request = request
        self._response = response

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self):
        return self._response.headers

    @property
    def url(self) -> str:
        return self._response.url

    def read(self) -> bytes:
        try:
            return self._response.content
        except requests.RequestException as e:
            raise network_error(self._request, e) from e

    def iter_bytes(self, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> Iterator[bytes]:
        try:
            yield from self._response.iter_content(chunk_size=chunk_size)
        except requests.RequestException as e:
            raise network_error(self._request, e) from e

    def to_raw(self) -> RawResponse:
        return RawResponse(status_code=self.status_code, headers=self.headers, content=self.read(), url=self.url)


def create_session(policy: Optional[PinningPolicy] = None, client_name: Optional[str] = None) -> Session:
    """Create a requests session for one pinning policy.

    No retrying adapter is mounted: a failed attempt is reported, not repeated.
    """
    session = requests.Session()
    session.headers["User-Agent"] = get_user_agent("requests", requests.__version__, client_name)
    if policy is not None and policy.is_enabled:
        session.mount("https://", PinnedHTTPAdapter(policy))
    return session


class RequestsTransport:
    """Sends :class:`EncodedRequest` objects, keeping one session per pinning policy.

    Sessions are created lazily and are safe to share between threads for sending.
    """

    def __init__(self, *, client_name: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT):
        self.client_name = client_name
        self.timeout = timeout
        self._sessions: Dict[Optional[PinningPolicy], Session] = {}
        self._lock = threading.Lock()

    def session_for(self, policy: Optional[PinningPolicy]) -> Session:
        key = policy if policy is not None and policy.is_enabled else None
        session = self._sessions.get(key)
        if session is None:
            with self._lock:
                session = self._sessions.get(key)
                if session is None:
                    logger.debug(f"Creating session for pinning policy {key}")
                    session = self._sessions[key] = create_session(key, self.client_name)
        return session

    @contextmanager
    def open(self, request: EncodedRequest, *, stream: bool = False) -> Iterator[RequestsResponse]:
        """Send ``request`` and yield its response; the connection is released on exit.

        Raises:
            APIError: NETWORK_ERROR when no response was received
        """
        session = self.session_for(request.tls_policy)
        try:
            response = session.request(
                request.method,
                request.url,
                headers=request.headers,
                data=request.content,
                timeout=self.timeout,
                stream=stream,
            )
        except requests.RequestException as e:
            raise network_error(request, e) from e
        try:
            yield RequestsResponse(request, response)
        finally:
            response.close()

    def send(self, request: EncodedRequest) -> RawResponse:
        with self.open(request) as response:
            return response.to_raw()

    def close(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
