"""HubSpot OAuth 2.0 token handling.

Implements the authorization-code flow and refresh-token rotation against
``https://api.hubapi.com/oauth/v1``.  Tokens are held in memory on the
provider instance; a restart requires re-authorisation unless tokens are
restored with :meth:`HubSpotOAuthTokenProvider.set_tokens`.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog
from pydantic import BaseModel

from consentflow.errors import ExternalServiceError, NotAuthenticated, ValidationError

logger = structlog.get_logger(__name__)

_AUTHORIZE_URL = "https://app.hubspot.com/oauth/authorize"
_TOKEN_PATH = "/oauth/v1/token"
# Refresh when the access token has less than this long to live.
_EXPIRY_BUFFER = timedelta(minutes=5)


class OAuthTokens(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    expires_at: datetime


class StaticTokenProvider:
    """Serves a fixed private-app access token."""

    __slots__ = ("_token",)

    def __init__(self, token: str) -> None:
        self._token = token

    async def get_valid_access_token(self) -> str:
        if not self._token:
            raise NotAuthenticated("No HubSpot access token configured")
        return self._token


class HubSpotOAuthTokenProvider:
    """OAuth 2.0 client for a HubSpot public app.

    Parameters
    ----------
    client_id, client_secret, redirect_uri, scopes:
        App credentials as registered with HubSpot.
    base_url:
        API host; overridable for tests.
    client:
        Optional pre-built :class:`httpx.AsyncClient` (tests inject one
        backed by :class:`httpx.MockTransport`).
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: list[str],
        *,
        base_url: str = "https://api.hubapi.com",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._scopes = scopes
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=30.0)
        self._tokens: OAuthTokens | None = None
        self._refresh_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Token state
    # ------------------------------------------------------------------

    @property
    def tokens(self) -> OAuthTokens | None:
        return self._tokens

    @property
    def is_authenticated(self) -> bool:
        return self._tokens is not None

    def set_tokens(self, tokens: OAuthTokens) -> None:
        self._tokens = tokens

    def clear_tokens(self) -> None:
        self._tokens = None
        logger.info("oauth.tokens_cleared")

    # ------------------------------------------------------------------
    # Authorization-code flow
    # ------------------------------------------------------------------

    def _require_config(self) -> None:
        if not self._client_id:
            raise ValidationError("HUBSPOT_CLIENT_ID", "environment variable is required for OAuth")
        if not self._client_secret:
            raise ValidationError("HUBSPOT_CLIENT_SECRET", "environment variable is required for OAuth")

    def authorization_url(self, state: str | None = None) -> str:
        self._require_config()
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "scope": " ".join(self._scopes),
        }
        if state:
            params["state"] = state
        return f"{_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> OAuthTokens:
        self._require_config()
        self._tokens = await self._request_tokens(
            {
                "grant_type": "authorization_code",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "redirect_uri": self._redirect_uri,
                "code": code,
            }
        )
        logger.info("oauth.code_exchanged", expires_at=self._tokens.expires_at.isoformat())
        return self._tokens

    async def refresh(self, refresh_token: str | None = None) -> OAuthTokens:
        self._require_config()
        token = refresh_token or (self._tokens.refresh_token if self._tokens else None)
        if not token:
            raise NotAuthenticated("No refresh token available")
        self._tokens = await self._request_tokens(
            {
                "grant_type": "refresh_token",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": token,
            }
        )
        logger.info("oauth.token_refreshed", expires_at=self._tokens.expires_at.isoformat())
        return self._tokens

    async def get_valid_access_token(self) -> str:
        """Return an access token, refreshing it shortly before expiry."""
        if self._tokens is None:
            raise NotAuthenticated("Not authenticated. Complete the OAuth flow first.")
        async with self._refresh_lock:
            if self._tokens.expires_at - datetime.now(UTC) < _EXPIRY_BUFFER:
                await self.refresh()
        return self._tokens.access_token

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request_tokens(self, form: dict[str, str]) -> OAuthTokens:
        try:
            response = await self._client.post(
                _TOKEN_PATH,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.TransportError as exc:
            logger.warning("oauth.token_request_failed", grant_type=form["grant_type"], exc_info=True)
            raise ExternalServiceError(f"OAuth token request failed: {exc}") from exc

        if response.status_code in (400, 401):
            logger.warning("oauth.token_rejected", status=response.status_code, grant_type=form["grant_type"])
            raise NotAuthenticated(f"HubSpot rejected the {form['grant_type']} grant")
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"OAuth token endpoint returned {response.status_code}",
                status_code=response.status_code,
            )
        return self._parse(response.json())

    @staticmethod
    def _parse(payload: dict[str, Any]) -> OAuthTokens:
        expires_in = int(payload["expires_in"])
        return OAuthTokens(
            access_token=payload["access_token"],
            refresh_token=payload["refresh_token"],
            expires_in=expires_in,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
        )
