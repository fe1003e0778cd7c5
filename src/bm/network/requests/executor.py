"""Blocking request executor built on requests."""

from __future__ import annotations

import inspect
import logging
import os
from contextlib import ExitStack, contextmanager
from typing import TYPE_CHECKING, Any, Iterator, Optional, Union

if TYPE_CHECKING:
    from typing import Self

from bm.network import DEFAULT_ENV_CONFIG_FILE_PATH, DEFAULT_TIMEOUT
from bm.network._pipeline import (
    decode_response,
    download_path,
    http_error,
    network_response,
    resume_append,
    wrap_unexpected,
)
from bm.network.connectivity import AlwaysOnline, ConnectivityProbe
from bm.network.converters import ConverterRegistry
from bm.network.encoder import TaskEncoder
from bm.network.env_config import Environment, load_env_config, resolve_environment
from bm.network.errors import APIError, APIErrorType
from bm.network.logger import NetworkLogger
from bm.network.models import DownloadedFile, DownloadResumable, NetworkResponse, RequestDescriptor
from bm.network.refresh import RefreshCoordinator, TokenRefreshHandler, discard_awaitable
from bm.network.requests.transport import RequestsResponse, RequestsTransport
from bm.network.result import Failure, Result, Success
from bm.network.status import HTTPStatusCode

logger = logging.getLogger(__name__)


class RequestExecutor:
    """Runs request descriptors through encode, send, classify and decode.

    A 401 on a descriptor with ``is_authorized`` set triggers one token refresh
    through the refresh coordinator; when it succeeds the descriptor is encoded
    again, so fresh auth headers are read, and sent once more. A second failure is
    reported as ``HTTP_ERROR(NOT_AUTHORIZED)``.

    Executors sharing a :class:`RefreshCoordinator` share its single-flight refresh.

    Example:
        with RequestExecutor(converters=registry, refresh_handler=store_refresher) as executor:
            user = executor.perform(descriptor, User)
    """

    def __init__(
        self,
        *,
        transport: Optional[RequestsTransport] = None,
        converters: Optional[ConverterRegistry] = None,
        refresh_handler: Optional[TokenRefreshHandler] = None,
        refresh_coordinator: Optional[RefreshCoordinator] = None,
        connectivity: Optional[ConnectivityProbe] = None,
        network_logger: Optional[NetworkLogger] = None,
        client_name: Optional[str] = "auto",
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """Initialize the executor.

        Args:
            transport: Transport to send with. Created from client_name and timeout when omitted.
            converters: Registry used to decode responses. An empty registry when omitted.
            refresh_handler: Blocking handler called on 401 for authorized requests. Ignored when
                refresh_coordinator is given.
            refresh_coordinator: Coordinator to share between executors.
            connectivity: Blocking probe checked before every request. Defaults to always online.
            network_logger: Request/response logging. Defaults to DEBUG logging without a sink.
            client_name: Name added to User-Agent. Use "auto" for class name, None for no name.
            timeout: Transport timeout in seconds.
        """
        if client_name == "auto":
            client_name = self.__class__.__name__
        self._transport = transport or RequestsTransport(client_name=client_name, timeout=timeout)
        self._converters = converters if converters is not None else ConverterRegistry()
        if connectivity is not None and inspect.iscoroutinefunction(connectivity.is_online):
            raise TypeError(f"{type(connectivity).__name__} is an async probe, use AsyncRequestExecutor")
        self._refresh = refresh_coordinator or RefreshCoordinator(refresh_handler)
        self._connectivity = connectivity or AlwaysOnline()
        self._network_logger = network_logger or NetworkLogger()
        self._encoder = TaskEncoder()
        self.environment: Optional[Environment] = None

    @property
    def converters(self) -> ConverterRegistry:
        return self._converters

    @property
    def refresh_coordinator(self) -> RefreshCoordinator:
        return self._refresh

    @classmethod
    def from_env(
        cls,
        env: Optional[str] = None,
        *,
        env_config_path: Union[str, os.PathLike] = "",
        **kwargs,
    ) -> Self:
        """Create an executor for a named environment in the config file.

        The environment's base URL and pinning policy are applied to descriptors built
        with :meth:`Environment.descriptor`, available as ``executor.environment``.

        Args:
            env: Environment name. Defaults to the config's default_environment.
            env_config_path: Path to config file. Defaults to ~/.config/bm/network.json.
            **kwargs: Additional arguments passed to the constructor.
        """
        config_file_path = env_config_path or DEFAULT_ENV_CONFIG_FILE_PATH
        environment = resolve_environment(load_env_config(config_file_path), env)
        kwargs.setdefault("timeout", environment.timeout)
        executor = cls(**kwargs)
        executor.environment = environment
        return executor

    def _check_connectivity(self) -> None:
        online = self._connectivity.is_online()
        if inspect.isawaitable(online):
            discard_awaitable(online)
            raise TypeError("Connectivity probe returned an awaitable, use AsyncRequestExecutor")
        if not online:
            raise APIError(APIErrorType.NO_NETWORK)

    @contextmanager
    def _exchange(self, descriptor: RequestDescriptor, *, stream: bool = False) -> Iterator[RequestsResponse]:
        """Yield the successful response for ``descriptor``, refreshing the token at most once."""
        self._check_connectivity()
        refreshed = False
        while True:
            request = self._encoder.encode(descriptor)
            self._network_logger.log_request(request, description=descriptor.task_description)
            with ExitStack() as stack:
                try:
                    response = stack.enter_context(self._transport.open(request, stream=stream))
                except APIError as e:
                    self._network_logger.log_response(method=request.method, url=request.url, error=e)
                    raise
                category = HTTPStatusCode.from_code(response.status_code)
                if category is HTTPStatusCode.SUCCESS:
                    yield response
                    return
                status, body = response.status_code, response.read()
            self._network_logger.log_response(method=request.method, url=request.url, status_code=status, body=body)

            if refreshed:
                logger.warning(f"Request to {request.url} failed with {status} after token refresh")
                raise http_error(HTTPStatusCode.NOT_AUTHORIZED, status, body)
            if category is HTTPStatusCode.NOT_AUTHORIZED and descriptor.is_authorized:
                logger.debug(f"Got 401 for {request.url}, attempting token refresh")
                if not self._refresh.attempt_refresh():
                    raise http_error(HTTPStatusCode.NOT_AUTHORIZED, status, body)
                refreshed = True
                continue
            raise http_error(category, status, body)

    def perform_with_cookies(self, descriptor: RequestDescriptor, cls: Any = None) -> NetworkResponse:
        """Send ``descriptor`` and decode the response body to ``cls``, keeping status, headers and cookies.

        Raises:
            APIError: on any failure
        """
        try:
            with self._exchange(descriptor) as response:
                raw = response.to_raw()
            self._network_logger.log_response(
                method=descriptor.method.value, url=raw.url, status_code=raw.status_code, body=raw.content
            )
            return decode_response(self._converters, raw, cls)
        except Exception as e:
            raise wrap_unexpected(e)

    def perform(self, descriptor: RequestDescriptor, cls: Any = None) -> Any:
        return self.perform_with_cookies(descriptor, cls).data

    def perform_success(self, descriptor: RequestDescriptor) -> NetworkResponse[None]:
        """Send ``descriptor`` and ignore the response body."""
        try:
            with self._exchange(descriptor) as response:
                status_code, headers, url = response.status_code, response.headers, response.url
            self._network_logger.log_response(method=descriptor.method.value, url=url, status_code=status_code)
            return network_response(None, status_code, headers)
        except Exception as e:
            raise wrap_unexpected(e)

    def download(
        self, descriptor: RequestDescriptor, destination: Union[str, os.PathLike, None] = None
    ) -> DownloadedFile:
        """Stream the response body of ``descriptor`` to a local file.

        The file is only opened once the response status is a success. A
        :class:`DownloadResumable` task with an offset appends to the partial file when
        the server answers 206 Partial Content from that offset; a longer partial file is
        cut back to the offset first, and content that does not line up with the file
        fails with DATA_CONVERSION_FAILED.

        Args:
            descriptor: Request to download.
            destination: File or directory. Defaults to the system temp directory.
        """
        task = descriptor.task
        resume_offset = task.resume_offset if isinstance(task, DownloadResumable) else None
        try:
            path = download_path(descriptor.url, destination)
            with self._exchange(descriptor, stream=True) as response:
                resumed = resume_append(response.status_code, response.headers, resume_offset, path)
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("ab" if resumed else "wb") as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
                status_code, headers, url = response.status_code, response.headers, response.url
            self._network_logger.log_response(method=descriptor.method.value, url=url, status_code=status_code)
            logger.debug(f"Downloaded {url} to {path}")
            return DownloadedFile(path=path, remote_url=url, status_code=status_code, headers=headers, resumed=resumed)
        except Exception as e:
            raise wrap_unexpected(e)

    def perform_result(self, descriptor: RequestDescriptor, cls: Any = None) -> Result[Any, APIError]:
        try:
            return Success(self.perform(descriptor, cls))
        except APIError as e:
            return Failure(e)

    def perform_result_with_cookies(
        self, descriptor: RequestDescriptor, cls: Any = None
    ) -> Result[NetworkResponse, APIError]:
        try:
            return Success(self.perform_with_cookies(descriptor, cls))
        except APIError as e:
            return Failure(e)

    def perform_success_result(self, descriptor: RequestDescriptor) -> Result[NetworkResponse[None], APIError]:
        try:
            return Success(self.perform_success(descriptor))
        except APIError as e:
            return Failure(e)

    def download_result(
        self, descriptor: RequestDescriptor, destination: Union[str, os.PathLike, None] = None
    ) -> Result[DownloadedFile, APIError]:
        try:
            return Success(self.download(descriptor, destination))
        except APIError as e:
            return Failure(e)

    def close(self) -> None:
        self._transport.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
