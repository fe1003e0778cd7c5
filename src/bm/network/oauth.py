"""Token refresh handlers backed by authlib.

A :class:`TokenStore` holds the current token and renders it as auth headers; pass
its bound :meth:`TokenStore.auth_headers` as ``RequestDescriptor.auth_headers`` so
each attempt reads the latest token. The refreshers fetch new tokens with the
OAuth2 client credentials grant, preferring the refresh grant while a refresh
token is stored, and report the outcome as a bool the way the refresh
coordinators expect.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional

import httpx
import requests
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.integrations.requests_client import OAuth2Session

logger = logging.getLogger(__name__)

# Tokens are considered expired this many seconds before their actual expiry,
# to avoid using a token that expires mid-request.
EXPIRY_MARGIN_SECONDS = 30

DEFAULT_TOKEN_ENDPOINT_AUTH_METHOD = "client_secret_post"


class TokenStore:
    """Thread-safe holder of an OAuth2 token dict."""

    def __init__(self, token: Optional[dict] = None, *, on_token_updated: Optional[Callable[[dict], None]] = None):
        self._lock = threading.Lock()
        self._token = dict(token) if token else None
        self._on_token_updated = on_token_updated

    @property
    def token(self) -> Optional[dict]:
        with self._lock:
            return dict(self._token) if self._token else None

    @property
    def access_token(self) -> Optional[str]:
        token = self.token
        return token.get("access_token") if token else None

    @property
    def refresh_token(self) -> Optional[str]:
        token = self.token
        return token.get("refresh_token") if token else None

    def is_valid(self) -> bool:
        token = self.token
        if not token or not token.get("access_token"):
            return False
        expires_at = token.get("expires_at")
        if expires_at is None:
            return True
        return time.time() < (expires_at - EXPIRY_MARGIN_SECONDS)

    def update(self, token: dict) -> None:
        with self._lock:
            self._token = dict(token)
        if self._on_token_updated is not None:
            self._on_token_updated(dict(token))

    def clear(self) -> None:
        with self._lock:
            self._token = None

    def auth_headers(self) -> Dict[str, str]:
        access_token = self.access_token
        if not access_token:
            return {}
        return {"Authorization": f"Bearer {access_token}"}


def _log_new_token(token: dict) -> None:
    logger.info(f"Got new token, with ttl={token.get('expires_in')} and expires_at={token.get('expires_at')}")


class ClientCredentialsRefresher:
    """Refresh handler for :class:`bm.network.refresh.RefreshCoordinator` using ``OAuth2Session``."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        token_endpoint: str,
        store: Optional[TokenStore] = None,
        scope: Optional[str] = None,
        token_endpoint_auth_method: str = DEFAULT_TOKEN_ENDPOINT_AUTH_METHOD,
    ):
        self.token_endpoint = token_endpoint
        self.store = store or TokenStore()
        self.oauth_session = OAuth2Session(
            client_id=client_id,
            client_secret=client_secret,
            scope=scope,
            token_endpoint_auth_method=token_endpoint_auth_method,
        )

    def _fetch(self) -> dict:
        refresh_token = self.store.refresh_token
        if refresh_token:
            try:
                return self.oauth_session.refresh_token(self.token_endpoint, refresh_token=refresh_token)
            except AuthlibBaseError as e:
                logger.info(f"Refresh grant rejected ({e.error}), fetching a new token")
        return self.oauth_session.fetch_token(self.token_endpoint, grant_type="client_credentials")

    def refresh(self) -> bool:
        try:
            token = self._fetch()
        except (AuthlibBaseError, requests.RequestException, ValueError) as e:
            logger.warning(f"Could not refresh token from {self.token_endpoint}: {e}")
            return False
        self.store.update(token)
        _log_new_token(token)
        return True

    def close(self) -> None:
        self.oauth_session.close()


class AsyncClientCredentialsRefresher:
    """Refresh handler for :class:`bm.network.refresh.AsyncRefreshCoordinator` using ``AsyncOAuth2Client``."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        token_endpoint: str,
        store: Optional[TokenStore] = None,
        scope: Optional[str] = None,
        token_endpoint_auth_method: str = DEFAULT_TOKEN_ENDPOINT_AUTH_METHOD,
    ):
        self.token_endpoint = token_endpoint
        self.store = store or TokenStore()
        self.oauth_client = AsyncOAuth2Client(
            client_id=client_id,
            client_secret=client_secret,
            scope=scope,
            token_endpoint_auth_method=token_endpoint_auth_method,
        )

    async def _fetch(self) -> dict:
        refresh_token = self.store.refresh_token
        if refresh_token:
            try:
                return await self.oauth_client.refresh_token(self.token_endpoint, refresh_token=refresh_token)
            except AuthlibBaseError as e:
                logger.info(f"Refresh grant rejected ({e.error}), fetching a new token")
        return await self.oauth_client.fetch_token(self.token_endpoint, grant_type="client_credentials")

    async def refresh(self) -> bool:
        try:
            token = await self._fetch()
        except (AuthlibBaseError, httpx.HTTPError, ValueError) as e:
            logger.warning(f"Could not refresh token from {self.token_endpoint}: {e}")
            return False
        self.store.update(token)
        _log_new_token(token)
        return True

    async def aclose(self) -> None:
        await self.oauth_client.aclose()
