"""Sending encoded requests with httpx, including certificate pinning."""

from __future__ import annotations

import logging
import ssl
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, Optional

import httpcore
import httpx

from bm.network import DEFAULT_TIMEOUT
from bm.network._pipeline import network_error
from bm.network._user_agent import get_user_agent
from bm.network.models import EncodedRequest, RawResponse
from bm.network.pinning import CertificatePinner, CertificatePinningError, PinningPolicy

logger = logging.getLogger(__name__)

DEFAULT_LIMITS = httpx.Limits(max_connections=100, max_keepalive_connections=20)


class PinningNetworkStream(httpcore.AsyncNetworkStream):
    """Checks the server certificate as soon as TLS is established on the wrapped stream."""

    def __init__(self, stream: httpcore.AsyncNetworkStream, pinner: CertificatePinner):
        self._stream = stream
        self._pinner = pinner

    async def read(self, max_bytes: int, timeout: Optional[float] = None) -> bytes:
        return await self._stream.read(max_bytes, timeout=timeout)

    async def write(self, buffer: bytes, timeout: Optional[float] = None) -> None:
        await self._stream.write(buffer, timeout=timeout)

    async def aclose(self) -> None:
        await self._stream.aclose()

    async def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> httpcore.AsyncNetworkStream:
        tls_stream = await self._stream.start_tls(ssl_context, server_hostname=server_hostname, timeout=timeout)
        ssl_object = tls_stream.get_extra_info("ssl_object")
        der = ssl_object.getpeercert(binary_form=True) if ssl_object is not None else None
        try:
            self._pinner.verify(server_hostname, der)
        except CertificatePinningError as e:
            await tls_stream.aclose()
            raise httpcore.ConnectError(str(e)) from e
        return PinningNetworkStream(tls_stream, self._pinner)

    def get_extra_info(self, info: str) -> Any:
        return self._stream.get_extra_info(info)


class PinningNetworkBackend(httpcore.AsyncNetworkBackend):
    def __init__(self, pinner: CertificatePinner, backend: Optional[httpcore.AsyncNetworkBackend] = None):
        self._pinner = pinner
        self._backend = backend or httpcore.AnyIOBackend()

    async def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: Optional[float] = None,
        local_address: Optional[str] = None,
        socket_options: Optional[Iterable] = None,
    ) -> httpcore.AsyncNetworkStream:
        stream = await self._backend.connect_tcp(
            host, port, timeout=timeout, local_address=local_address, socket_options=socket_options
        )
        return PinningNetworkStream(stream, self._pinner)

    async def connect_unix_socket(
        self,
        path: str,
        timeout: Optional[float] = None,
        socket_options: Optional[Iterable] = None,
    ) -> httpcore.AsyncNetworkStream:
        stream = await self._backend.connect_unix_socket(path, timeout=timeout, socket_options=socket_options)
        return PinningNetworkStream(stream, self._pinner)

    async def sleep(self, seconds: float) -> None:
        await self._backend.sleep(seconds)


class PinnedAsyncHTTPTransport(httpx.AsyncHTTPTransport):
    """httpx transport trusting the pinned certificates and enforcing the pins of a :class:`PinningPolicy`.

    Takes the connection options of ``httpx.AsyncHTTPTransport`` except proxies.
    """

    def __init__(
        self,
        policy: PinningPolicy,
        *,
        http1: bool = True,
        http2: bool = False,
        limits: httpx.Limits = DEFAULT_LIMITS,
        retries: int = 0,
        local_address: Optional[str] = None,
        socket_options: Optional[Iterable] = None,
    ):
        # super().__init__ is skipped, it would build a pool without the pinning backend
        self.pinner = CertificatePinner(policy)
        self._pool = httpcore.AsyncConnectionPool(
            ssl_context=self.pinner.create_ssl_context(),
            max_connections=limits.max_connections,
            max_keepalive_connections=limits.max_keepalive_connections,
            keepalive_expiry=limits.keepalive_expiry,
            http1=http1,
            http2=http2,
            retries=retries,
            local_address=local_address,
            socket_options=socket_options,
            network_backend=PinningNetworkBackend(self.pinner),
        )


class HttpxResponse:
    """Response of one attempt. Content is read lazily when the request was streamed."""

    def __init__(self, request: EncodedRequest, response: httpx.Response):
        self._request = request
        self._response = response

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    @property
    def url(self) -> str:
        return str(self._response.url)

    async def read(self) -> bytes:
        try:
            return await self._response.aread()
        except httpx.RequestError as e:
            raise network_error(self._request, e) from e

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.RequestError as e:
            raise network_error(self._request, e) from e

    async def to_raw(self) -> RawResponse:
        content = await self.read()
        return RawResponse(status_code=self.status_code, headers=self.headers, content=content, url=self.url)


class HttpxTransport:
    """Sends :class:`EncodedRequest` objects, keeping one ``httpx.AsyncClient`` per pinning policy."""

    def __init__(
        self,
        *,
        client_name: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the transport.

        Args:
            client_name: Name added to User-Agent.
            timeout: Timeout in seconds for connecting, reading and writing.
            transport: httpx transport used for every client instead of the default one,
                e.g. ``httpx.MockTransport`` in tests. Pinning is not applied to it.
        """
        self.client_name = client_name
        self.timeout = timeout
        self._transport = transport
        self._clients: Dict[Optional[PinningPolicy], httpx.AsyncClient] = {}

    def _create_client(self, policy: Optional[PinningPolicy]) -> httpx.AsyncClient:
        transport = self._transport
        if transport is None and policy is not None:
            transport = PinnedAsyncHTTPTransport(policy)
        return httpx.AsyncClient(
            headers={"User-Agent": get_user_agent("python-httpx", httpx.__version__, self.client_name)},
            timeout=self.timeout,
            follow_redirects=True,
            transport=transport,
        )

    def client_for(self, policy: Optional[PinningPolicy]) -> httpx.AsyncClient:
        key = policy if policy is not None and policy.is_enabled else None
        client = self._clients.get(key)
        if client is None:
            logger.debug(f"Creating client for pinning policy {key}")
            client = self._clients[key] = self._create_client(key)
        return client

    @asynccontextmanager
    async def open(self, request: EncodedRequest, *, stream: bool = False) -> AsyncIterator[HttpxResponse]:
        """Send ``request`` and yield its response; the connection is released on exit.

        Raises:
            APIError: NETWORK_ERROR when no response was received
        """
        client = self.client_for(request.tls_policy)
        http_request = client.build_request(
            request.method, request.url, headers=request.headers, content=request.content
        )
        try:
            response = await client.send(http_request, stream=stream)
        except httpx.RequestError as e:
            raise network_error(request, e) from e
        try:
            yield HttpxResponse(request, response)
        finally:
            await response.aclose()

    async def send(self, request: EncodedRequest) -> RawResponse:
        async with self.open(request) as response:
            return await response.to_raw()

    async def close(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()
