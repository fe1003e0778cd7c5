"""Connectivity pre-checks.

A probe is only consulted before a request is sent; connectivity is not enforced
while the request is in flight.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import AsyncIterator, Awaitable, Protocol, Union, runtime_checkable

logger = logging.getLogger(__name__)

# Public DNS resolvers reachable without a DNS lookup
DEFAULT_PROBE_HOST = "1.1.1.1"
DEFAULT_PROBE_PORT = 53


@runtime_checkable
class ConnectivityProbe(Protocol):
    def is_online(self) -> Union[bool, Awaitable[bool]]:
        raise NotImplementedError


class AlwaysOnline:
    """Probe for environments where the check is unwanted, e.g. servers and tests."""

    def is_online(self) -> bool:
        return True


class SocketConnectivityProbe:
    """Reports online when a TCP connection to ``host:port`` can be opened."""

    def __init__(self, host: str = DEFAULT_PROBE_HOST, port: int = DEFAULT_PROBE_PORT, timeout: float = 3.0):
        self.host = host
        self.port = port
        self.timeout = timeout

    def is_online(self) -> bool:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout):
                return True
        except OSError as e:
            logger.debug(f"Connectivity probe to {self.host}:{self.port} failed: {e}")
            return False


class AsyncSocketConnectivityProbe(SocketConnectivityProbe):
    async def is_online(self) -> bool:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(self.host, self.port), timeout=self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Connectivity probe to {self.host}:{self.port} failed: {e}")
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Closing connectivity probe connection failed: {e}")
        return True

    async def changes(self, interval: float = 5.0) -> AsyncIterator[bool]:
        """Yield the current state, then every change of it, polling each ``interval`` seconds."""
        last = None
        while True:
            online = await self.is_online()
            if online != last:
                last = online
                yield online
            await asyncio.sleep(interval)
