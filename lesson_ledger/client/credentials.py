"""Token providers: explicit credential objects handed to each API client."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from .exceptions import ApiError, ConnectionFailure, SessionExpiredError

logger = logging.getLogger(__name__)


class TokenProvider(ABC):
    @abstractmethod
    async def get_token(self) -> str:
        """Current access token."""

    @abstractmethod
    async def refresh(self) -> str:
        """Obtain a fresh access token, or raise SessionExpiredError."""


class StaticTokenProvider(TokenProvider):
    """Fixed token, e.g. for scripts. It cannot be refreshed."""

    def __init__(self, access_token: str) -> None:
        self._access_token = access_token

    async def get_token(self) -> str:
        return self._access_token

    async def refresh(self) -> str:
        raise SessionExpiredError("Static access token cannot be refreshed")


class RefreshingTokenProvider(TokenProvider):
    """Exchanges a refresh token at the identity provider's token endpoint."""

    def __init__(
        self,
        auth_url: str,
        api_key: str,
        refresh_token: str,
        access_token: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._auth_url = auth_url.rstrip("/")
        self._api_key = api_key
        self._refresh_token = refresh_token
        self._access_token = access_token
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=10.0)
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "RefreshingTokenProvider":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def get_token(self) -> str:
        if self._access_token:
            return self._access_token
        return await self.refresh()

    async def refresh(self) -> str:
        stale = self._access_token
        async with self._lock:
            # Someone else refreshed while we waited for the lock.
            if self._access_token and self._access_token != stale:
                return self._access_token
            try:
                response = await self._http.post(
                    f"{self._auth_url}/token",
                    params={"grant_type": "refresh_token"},
                    json={"refresh_token": self._refresh_token},
                    headers={"apikey": self._api_key},
                )
            except httpx.HTTPError as e:
                raise ConnectionFailure(f"Token refresh failed: {e}") from e
            if response.status_code in (400, 401, 403):
                self._access_token = None
                logger.warning("refresh token rejected (%s)", response.status_code)
                raise SessionExpiredError("Session expired, please sign in again")
            if response.is_error:
                raise ApiError(response.status_code, response.text)
            try:
                data = response.json()
                access_token = data["access_token"]
            except (ValueError, KeyError, TypeError) as e:
                raise ApiError(response.status_code, f"Unexpected token response: {e}") from e
            self._access_token = access_token
            self._refresh_token = data.get("refresh_token") or self._refresh_token
            logger.info("access token refreshed")
            return self._access_token
