"""HubSpot OAuth endpoints.

``/authorize`` and ``/callback`` are browser-driven and unauthenticated;
the ``state`` parameter issued by ``/authorize`` must come back on the
callback.  ``/status`` and ``/logout`` require the admin API key.

When ``HUBSPOT_ACCESS_TOKEN`` (a private-app token) is configured the
OAuth flow is not used for CRM calls, but the endpoints still work.
"""

from __future__ import annotations

import secrets
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from consentflow.crm.oauth import HubSpotOAuthTokenProvider
from consentflow.errors import ValidationError
from consentflow.middleware.auth import require_admin_api_key

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/oauth", tags=["oauth"])


class OAuthCallbackResponse(BaseModel):
    status: str
    expires_at: datetime


class OAuthStatusResponse(BaseModel):
    mode: str
    authenticated: bool
    expires_at: datetime | None = None


def _get_provider(request: Request) -> HubSpotOAuthTokenProvider:
    provider = getattr(request.app.state, "oauth_provider", None)
    if provider is None:
        raise HTTPException(status_code=503, detail="OAuth provider not initialised.")
    return provider


def _pending_states(request: Request) -> set[str]:
    return request.app.state.oauth_states


@router.get("/authorize")
async def authorize(request: Request) -> RedirectResponse:
    """Redirect the browser to HubSpot's consent screen."""
    provider = _get_provider(request)
    state = secrets.token_urlsafe(24)
    url = provider.authorization_url(state)
    _pending_states(request).add(state)
    logger.info("oauth.authorize_redirect")
    return RedirectResponse(url, status_code=302)


@router.get("/callback", response_model=OAuthCallbackResponse)
async def callback(
    request: Request,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
) -> OAuthCallbackResponse:
    """Exchange the authorization code HubSpot redirected back with."""
    if error:
        logger.warning("oauth.callback_error", error=error)
        raise ValidationError("error", f"authorization was denied: {error}")
    if not code:
        raise ValidationError("code", "authorization code is missing")

    pending = _pending_states(request)
    if state is None or state not in pending:
        logger.warning("oauth.callback_state_mismatch")
        raise ValidationError("state", "unknown or missing OAuth state")
    pending.discard(state)

    tokens = await _get_provider(request).exchange_code(code)
    return OAuthCallbackResponse(status="authenticated", expires_at=tokens.expires_at)


@router.get("/status", response_model=OAuthStatusResponse, dependencies=[Depends(require_admin_api_key)])
async def status(request: Request) -> OAuthStatusResponse:
    if request.app.state.settings.hubspot_access_token:
        return OAuthStatusResponse(mode="private_app", authenticated=True)
    provider = _get_provider(request)
    tokens = provider.tokens
    return OAuthStatusResponse(
        mode="oauth",
        authenticated=provider.is_authenticated,
        expires_at=tokens.expires_at if tokens else None,
    )


@router.post("/logout", response_model=OAuthStatusResponse, dependencies=[Depends(require_admin_api_key)])
async def logout(request: Request) -> OAuthStatusResponse:
    """Forget the stored OAuth tokens."""
    _get_provider(request).clear_tokens()
    return OAuthStatusResponse(mode="oauth", authenticated=False)
