"""OAuth access-token providers for the storage backends.

Both providers use the refresh-token grant:
1. POST the refresh token to the provider's token endpoint
2. Cache the returned access token until shortly before it expires
3. Refresh again on expiry or after ``invalidate()`` (e.g. on HTTP 401)

Credentials are kept in memory only.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from mediarelay.errors import TokenExpiry

logger = logging.getLogger(__name__)

# Refresh this many seconds before the reported expiry.
EXPIRY_MARGIN_SECONDS = 60


class TokenProvider(ABC):
    """Caches an access token and refreshes it on demand."""

    backend: str = "backend"

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(timeout=20.0)
        self._access_token: Optional[str] = None
        self._expires_at: float = 0.0
        self._lock = asyncio.Lock()

    def _is_valid(self) -> bool:
        return self._access_token is not None and time.monotonic() < self._expires_at

    async def get_token(self) -> str:
        """Return a valid access token, refreshing if needed.

        Raises:
            TokenExpiry: If the refresh failed.
        """
        if self._is_valid():
            return self._access_token
        async with self._lock:
            if self._is_valid():
                return self._access_token
            token, expires_in = await self._refresh()
            self._access_token = token
            self._expires_at = time.monotonic() + max(0, expires_in - EXPIRY_MARGIN_SECONDS)
            logger.debug("[%s] Access token refreshed (expires_in=%ss)", self.backend, expires_in)
            return token

    def invalidate(self) -> None:
        self._access_token = None
        self._expires_at = 0.0

    async def _post_token_request(self, url: str, data: dict) -> dict:
        try:
            resp = await self._client.post(url, data=data)
        except httpx.HTTPError as e:
            raise TokenExpiry(f"token endpoint unreachable: {e}", self.backend) from e
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if "access_token" not in payload:
            error_desc = payload.get("error_description") or payload.get("error") or resp.status_code
            raise TokenExpiry(f"token refresh failed: {error_desc}", self.backend)
        return payload

    @abstractmethod
    async def _refresh(self) -> tuple:
        """Return ``(access_token, expires_in_seconds)``."""


class GoogleTokenProvider(TokenProvider):
    """Google OAuth 2.0 refresh-token grant."""

    backend = "google"
    TOKEN_URL = "https://oauth2.googleapis.com/token"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        access_token: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(client)
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self._static_token = access_token

    async def _refresh(self) -> tuple:
        if not self.refresh_token:
            if self._static_token:
                # No way to refresh; trust the configured token for an hour.
                return self._static_token, 3600
            raise TokenExpiry("no refresh token configured", self.backend)
        data = await self._post_token_request(
            self.TOKEN_URL,
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
                "grant_type": "refresh_token",
            },
        )
        return data["access_token"], int(data.get("expires_in", 3600))


class MicrosoftTokenProvider(TokenProvider):
    """Microsoft identity platform refresh-token grant for Graph."""

    backend = "onedrive"
    TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
    SCOPES = "Files.ReadWrite User.Read offline_access"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        tenant_id: str = "common",
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(client)
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.tenant_id = tenant_id or "common"

    async def _refresh(self) -> tuple:
        if not self.refresh_token:
            raise TokenExpiry("no refresh token configured", self.backend)
        data = await self._post_token_request(
            self.TOKEN_URL.format(tenant=self.tenant_id),
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": self.refresh_token,
                "scope": self.SCOPES,
            },
        )
        # Microsoft rotates refresh tokens; keep the newest one for this process.
        if data.get("refresh_token"):
            self.refresh_token = data["refresh_token"]
        return data["access_token"], int(data.get("expires_in", 3600))
