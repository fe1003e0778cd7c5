"""Single-flight token refresh.

When several requests see a 401 at the same time only one of them refreshes the
token; the others wait for that refresh and share its outcome. Once a refresh has
finished the coordinator is idle again, so a later expiry triggers a new refresh.

:class:`RefreshCoordinator` is for threaded callers, :class:`AsyncRefreshCoordinator`
for coroutines running on one event loop.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from concurrent.futures import Future
from typing import Any, Awaitable, Callable, Optional, Protocol, Union, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class TokenRefreshHandler(Protocol):
    """Supplied by the application. Persists a new token and reports success.

    Request descriptors must read their auth headers from wherever the handler
    stores the token, so a retried request sends the new one.
    """

    def refresh(self) -> bool:
        raise NotImplementedError


@runtime_checkable
class AsyncTokenRefreshHandler(Protocol):
    async def refresh(self) -> bool:
        raise NotImplementedError


RefreshCallable = Callable[[], Union[bool, Awaitable[bool]]]


def _as_callable(handler: Any) -> Optional[RefreshCallable]:
    if handler is None:
        return None
    refresh = getattr(handler, "refresh", None)
    if callable(refresh):
        return refresh
    if callable(handler):
        return handler
    raise TypeError(f"Token refresh handler must be callable or have a refresh() method, got {type(handler).__name__}")


def _as_blocking_callable(handler: Any) -> Optional[Callable[[], bool]]:
    refresh = _as_callable(handler)
    if refresh is not None and inspect.iscoroutinefunction(refresh):
        raise TypeError("Async token refresh handlers need an AsyncRefreshCoordinator")
    return refresh


def discard_awaitable(outcome: Any) -> None:
    """Close a coroutine that will never be awaited."""
    close = getattr(outcome, "close", None)
    if callable(close):
        close()


class RefreshCoordinator:
    """Thread-safe single-flight refresh.

    The Idle -> InFlight claim happens under a lock; waiters block on the future
    of the refresh in flight.
    """

    def __init__(self, handler: Union[TokenRefreshHandler, Callable[[], bool], None] = None):
        self._lock = threading.Lock()
        self._refresh: Optional[RefreshCallable] = _as_blocking_callable(handler)
        self._pending: Optional[Future] = None

    def register(self, handler: Union[TokenRefreshHandler, Callable[[], bool]]) -> None:
        with self._lock:
            self._refresh = _as_blocking_callable(handler)

    def clear(self) -> None:
        with self._lock:
            self._refresh = None

    @property
    def in_flight(self) -> bool:
        return self._pending is not None

    def attempt_refresh(self) -> bool:
        """Refresh the token, or join the refresh already running. Returns whether it succeeded."""
        with self._lock:
            refresh = self._refresh
            if refresh is None:
                return False
            pending = self._pending
            is_owner = pending is None
            if is_owner:
                pending = self._pending = Future()

        if not is_owner:
            logger.debug("Token refresh already in flight, waiting for its result")
            return pending.result()

        result = False
        try:
            outcome = refresh()
            if inspect.isawaitable(outcome):
                discard_awaitable(outcome)
                raise TypeError("Token refresh handler returned an awaitable, use an AsyncRefreshCoordinator")
            result = bool(outcome)
        except Exception as e:
            logger.warning(f"Token refresh failed: {e!r}")
        finally:
            with self._lock:
                self._pending = None
            pending.set_result(result)
        logger.debug(f"Token refresh finished, success={result}")
        return result


class AsyncRefreshCoordinator:
    """Single-flight refresh for one event loop.

    The refresh runs as its own task. Callers await it through ``asyncio.shield``,
    so a cancelled caller never cancels a refresh other callers are waiting on.
    Observing Idle and claiming InFlight happen without an await in between.
    """

    def __init__(self, handler: Union[AsyncTokenRefreshHandler, TokenRefreshHandler, RefreshCallable, None] = None):
        self._refresh: Optional[RefreshCallable] = _as_callable(handler)
        self._pending: Optional[asyncio.Task] = None

    def register(self, handler: Union[AsyncTokenRefreshHandler, TokenRefreshHandler, RefreshCallable]) -> None:
        self._refresh = _as_callable(handler)

    def clear(self) -> None:
        self._refresh = None

    @property
    def in_flight(self) -> bool:
        return self._pending is not None

    async def attempt_refresh(self) -> bool:
        refresh = self._refresh
        if refresh is None:
            return False
        pending = self._pending
        if pending is None:
            pending = self._pending = asyncio.ensure_future(self._run(refresh))
        else:
            logger.debug("Token refresh already in flight, waiting for its result")
        return await asyncio.shield(pending)

    async def _run(self, refresh: RefreshCallable) -> bool:
        result = False
        try:
            outcome = refresh()
            if inspect.isawaitable(outcome):
                outcome = await outcome
            result = bool(outcome)
        except Exception as e:
            logger.warning(f"Token refresh failed: {e!r}")
        finally:
            self._pending = None
        logger.debug(f"Token refresh finished, success={result}")
        return result
