"""Asynchronous request executor built on httpx."""

from __future__ import annotations

import inspect
import logging
import os
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncIterator, Optional, Union

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
from bm.network.httpx.transport import HttpxResponse, HttpxTransport
from bm.network.logger import NetworkLogger
from bm.network.models import DownloadedFile, DownloadResumable, NetworkResponse, RequestDescriptor
from bm.network.refresh import AsyncRefreshCoordinator, AsyncTokenRefreshHandler, TokenRefreshHandler
from bm.network.result import Failure, Result, Success
from bm.network.status import HTTPStatusCode

logger = logging.getLogger(__name__)


class AsyncRequestExecutor:
    """Async counterpart of :class:`bm.network.requests.RequestExecutor` with the same semantics.

    Concurrent 401s share one refresh through :class:`AsyncRefreshCoordinator`. The
    refresh runs as its own task, so cancelling one of the waiting requests does not
    cancel the refresh the others are waiting on.

    Example:
        async with AsyncRequestExecutor(converters=registry, refresh_handler=refresher) as executor:
            users = await executor.perform(descriptor, list[User])
    """

    def __init__(
        self,
        *,
        transport: Optional[HttpxTransport] = None,
        converters: Optional[ConverterRegistry] = None,
        refresh_handler: Union[AsyncTokenRefreshHandler, TokenRefreshHandler, None] = None,
        refresh_coordinator: Optional[AsyncRefreshCoordinator] = None,
        connectivity: Optional[ConnectivityProbe] = None,
        network_logger: Optional[NetworkLogger] = None,
        client_name: Optional[str] = "auto",
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if client_name == "auto":
            client_name = self.__class__.__name__
        self._transport = transport or HttpxTransport(client_name=client_name, timeout=timeout)
        self._converters = converters if converters is not None else ConverterRegistry()
        self._refresh = refresh_coordinator or AsyncRefreshCoordinator(refresh_handler)
        self._connectivity = connectivity or AlwaysOnline()
        self._network_logger = network_logger or NetworkLogger()
        self._encoder = TaskEncoder()
        self.environment: Optional[Environment] = None

    @property
    def converters(self) -> ConverterRegistry:
        return self._converters

    @property
    def refresh_coordinator(self) -> AsyncRefreshCoordinator:
        return self._refresh

    @classmethod
    def from_env(
        cls,
        env: Optional[str] = None,
        *,
        env_config_path: Union[str, os.PathLike] = "",
        **kwargs,
    ) -> "AsyncRequestExecutor":
        """Create an executor for a named environment in the config file.

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

    async def _check_connectivity(self) -> None:
        online = self._connectivity.is_online()
        if inspect.isawaitable(online):
            online = await online
        if not online:
            raise APIError(APIErrorType.NO_NETWORK)

    @asynccontextmanager
    async def _exchange(self, descriptor: RequestDescriptor, *, stream: bool = False) -> AsyncIterator[HttpxResponse]:
        await self._check_connectivity()
        refreshed = False
        while True:
            request = self._encoder.encode(descriptor)
            self._network_logger.log_request(request, description=descriptor.task_description)
            async with AsyncExitStack() as stack:
                try:
                    response = await stack.enter_async_context(self._transport.open(request, stream=stream))
                except APIError as e:
                    self._network_logger.log_response(method=request.method, url=request.url, error=e)
                    raise
                category = HTTPStatusCode.from_code(response.status_code)
                if category is HTTPStatusCode.SUCCESS:
                    yield response
                    return
                status, body = response.status_code, await response.read()
            self._network_logger.log_response(method=request.method, url=request.url, status_code=status, body=body)

            if refreshed:
                logger.warning(f"Request to {request.url} failed with {status} after token refresh")
                raise http_error(HTTPStatusCode.NOT_AUTHORIZED, status, body)
            if category is HTTPStatusCode.NOT_AUTHORIZED and descriptor.is_authorized:
                logger.debug(f"Got 401 for {request.url}, attempting token refresh")
                if not await self._refresh.attempt_refresh():
                    raise http_error(HTTPStatusCode.NOT_AUTHORIZED, status, body)
                refreshed = True
                continue
            raise http_error(category, status, body)

    async def perform_with_cookies(self, descriptor: RequestDescriptor, cls: Any = None) -> NetworkResponse:
        try:
            async with self._exchange(descriptor) as response:
                raw = await response.to_raw()
            self._network_logger.log_response(
                method=descriptor.method.value, url=raw.url, status_code=raw.status_code, body=raw.content
            )
            return decode_response(self._converters, raw, cls)
        except Exception as e:
            raise wrap_unexpected(e)

    async def perform(self, descriptor: RequestDescriptor, cls: Any = None) -> Any:
        response = await self.perform_with_cookies(descriptor, cls)
        return response.data

    async def perform_success(self, descriptor: RequestDescriptor) -> NetworkResponse[None]:
        try:
            async with self._exchange(descriptor) as response:
                status_code, headers, url = response.status_code, response.headers, response.url
            self._network_logger.log_response(method=descriptor.method.value, url=url, status_code=status_code)
            return network_response(None, status_code, headers)
        except Exception as e:
            raise wrap_unexpected(e)

    async def download(
        self, descriptor: RequestDescriptor, destination: Union[str, os.PathLike, None] = None
    ) -> DownloadedFile:
        """Stream the response body of ``descriptor`` to a local file, see :meth:`RequestExecutor.download`."""
        task = descriptor.task
        resume_offset = task.resume_offset if isinstance(task, DownloadResumable) else None
        try:
            path = download_path(descriptor.url, destination)
            async with self._exchange(descriptor, stream=True) as response:
                resumed = resume_append(response.status_code, response.headers, resume_offset, path)
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("ab" if resumed else "wb") as f:
                    async for chunk in response.iter_bytes():
                        f.write(chunk)
                status_code, headers, url = response.status_code, response.headers, response.url
            self._network_logger.log_response(method=descriptor.method.value, url=url, status_code=status_code)
            logger.debug(f"Downloaded {url} to {path}")
            return DownloadedFile(path=path, remote_url=url, status_code=status_code, headers=headers, resumed=resumed)
        except Exception as e:
            raise wrap_unexpected(e)

    async def perform_result(self, descriptor: RequestDescriptor, cls: Any = None) -> Result[Any, APIError]:
        try:
            return Success(await self.perform(descriptor, cls))
        except APIError as e:
            return Failure(e)

    async def perform_result_with_cookies(
        self, descriptor: RequestDescriptor, cls: Any = None
    ) -> Result[NetworkResponse, APIError]:
        try:
            return Success(await self.perform_with_cookies(descriptor, cls))
        except APIError as e:
            return Failure(e)

    async def perform_success_result(self, descriptor: RequestDescriptor) -> Result[NetworkResponse[None], APIError]:
        try:
            return Success(await self.perform_success(descriptor))
        except APIError as e:
            return Failure(e)

    async def download_result(
        self, descriptor: RequestDescriptor, destination: Union[str, os.PathLike, None] = None
    ) -> Result[DownloadedFile, APIError]:
        try:
            return Success(await self.download(descriptor, destination))
        except APIError as e:
            return Failure(e)

    async def close(self) -> None:
        await self._transport.close()

    async def __aenter__(self) -> "AsyncRequestExecutor":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
