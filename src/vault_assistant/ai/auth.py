"""Bearer-token providers for the Code Assist transport.

Token acquisition (the browser consent flow) happens elsewhere; this module
only checks validity and refreshes an expired access token once.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Protocol, runtime_checkable

import httpx

from .errors import AuthError

LOGGER = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
EXPIRY_SKEW_SECONDS = 60.0
DEFAULT_TOKEN_LIFETIME = 3600

__all__ = [
    "AuthProvider",
    "OAuthCredentials",
    "OAuthTokenProvider",
    "StaticTokenProvider",
    "is_expired",
]


def is_expired(expires_at: float | None, *, now: float | None = None) -> bool:
    """Return ``True`` when the token expires within the skew window."""

    if expires_at is None:
        return False
    current = time.time() if now is None else now
    return current >= expires_at - EXPIRY_SKEW_SECONDS


@runtime_checkable
class AuthProvider(Protocol):
    async def access_token(self) -> str:
        ...

    def is_expired(self, expires_at: float | None) -> bool:
        ...


@dataclass(slots=True, frozen=True)
class OAuthCredentials:
    access_token: str
    refresh_token: str | None = None
    expires_at: float | None = None
    client_id: str | None = None
    client_secret: str | None = None


class StaticTokenProvider:
    """Provider wrapping a fixed token, mostly useful for tests and scripts."""

    def __init__(self, token: str) -> None:
        self._token = token

    async def access_token(self) -> str:
        if not self._token:
            raise AuthError("No access token configured")
        return self._token

    def is_expired(self, expires_at: float | None) -> bool:
        return is_expired(expires_at)


RefreshListener = Callable[[OAuthCredentials], Awaitable[None] | None]


class OAuthTokenProvider:
    """Returns a valid access token, refreshing it when it is about to expire."""

    def __init__(
        self,
        credentials: OAuthCredentials,
        *,
        http_client: httpx.AsyncClient | None = None,
        token_url: str = TOKEN_URL,
        on_refresh: RefreshListener | None = None,
    ) -> None:
        self._credentials = credentials
        self._http = http_client
        self._token_url = token_url
        self._on_refresh = on_refresh

    @property
    def credentials(self) -> OAuthCredentials:
        return self._credentials

    def is_expired(self, expires_at: float | None) -> bool:
        return is_expired(expires_at)

    async def access_token(self) -> str:
        creds = self._credentials
        if not creds.access_token:
            raise AuthError("OAuth not authenticated; sign in first")
        if not self.is_expired(creds.expires_at):
            return creds.access_token
        if not creds.refresh_token:
            raise AuthError("OAuth token expired and no refresh token is available")
        LOGGER.debug("Access token expired, refreshing")
        self._credentials = await self._refresh(creds)
        if self._on_refresh is not None:
            result = self._on_refresh(self._credentials)
            if result is not None:
                await result
        return self._credentials.access_token

    async def _refresh(self, creds: OAuthCredentials) -> OAuthCredentials:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": creds.refresh_token or "",
        }
        if creds.client_id:
            data["client_id"] = creds.client_id
        if creds.client_secret:
            data["client_secret"] = creds.client_secret

        client = self._http or httpx.AsyncClient(timeout=30.0)
        try:
            response = await client.post(self._token_url, data=data)
        except httpx.HTTPError as exc:
            raise AuthError(f"Token refresh failed: {exc}") from exc
        finally:
            if self._http is None:
                await client.aclose()

        if response.status_code >= 400:
            raise AuthError(f"Token refresh rejected (HTTP {response.status_code}): {response.text}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError("Token refresh returned a non-JSON body") from exc
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise AuthError("Token refresh response did not include an access token")

        expires_in = payload.get("expires_in") or DEFAULT_TOKEN_LIFETIME
        LOGGER.info("OAuth access token refreshed")
        return replace(
            creds,
            access_token=str(token),
            refresh_token=payload.get("refresh_token") or creds.refresh_token,
            expires_at=time.time() + float(expires_in),
        )
