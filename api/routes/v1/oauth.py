"""
api/routes/v1/oauth.py -- OAuth sign-in endpoints.

Routes:
  GET  /api/v1/auth/{provider}            -- redirect to the provider's consent screen
  GET  /api/v1/auth/{provider}/callback   -- provider redirects back here
  POST /api/v1/auth/{provider}/refresh    -- refresh the stored provider access token (requires auth)
  GET  /api/v1/auth/{provider}/success    -- verify a token handed to the frontend

The CSRF state itself lives server-side (auth/state_store.py). The browser
only carries the flow id, in an httpOnly cookie set on the redirect and
deleted on the callback.

The callback never answers with an error status: every outcome is a redirect
to FRONTEND_URL/auth/{provider}/callback with either ?token= or ?error=.

Route registration order: this router is included after the auth router, so
GET /auth/me, /auth/profile and /auth/providers are matched before the
/auth/{provider} pattern.
"""

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from api.limiter import limiter
from api.models import OAuthSuccessResponse, TokenRefreshResponse
from auth.dependencies import client_info, get_current_user
from auth.errors import AuthenticationRequiredError, AuthServiceError, NoRefreshTokenError, UserNotFoundError
from auth.federation import OAuthFlow
from auth.models import User
from auth.tokens import create_access_token, decode_access_token
from core.config import get_settings

logger = logging.getLogger("todomaster.auth.oauth")

_settings = get_settings()

FLOW_COOKIE = "oauth_flow"

router = APIRouter()


@router.get("/auth/{provider}")
@limiter.limit(_settings.auth_rate_limit)
async def oauth_redirect(request: Request, provider: str) -> RedirectResponse:
    """Start a sign-in: remember a fresh CSRF state and redirect to the provider.

    Unknown or unconfigured providers answer 404 provider_not_found.
    """
    flow: OAuthFlow = request.app.state.oauth_flow
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    url, flow_id = await flow.begin(provider, redirect_uri)

    resp = RedirectResponse(url, status_code=302)
    resp.set_cookie(
        FLOW_COOKIE,
        value=flow_id,
        httponly=True,
        # lax: the cookie must ride along on the provider's top-level redirect back.
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=flow.states.ttl,
    )
    return resp


@router.get("/auth/{provider}/callback", name="oauth_callback")
@limiter.limit(_settings.auth_rate_limit)
async def oauth_callback(
    request: Request,
    provider: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
) -> RedirectResponse:
    """Finish a sign-in and hand the frontend a token or an error message."""
    flow: OAuthFlow = request.app.state.oauth_flow
    target = f"{_settings.frontend_url.rstrip('/')}/auth/{provider}/callback"

    try:
        user = await flow.complete(
            provider,
            flow_id=request.cookies.get(FLOW_COOKIE),
            received_state=state,
            code=code,
            redirect_uri=str(request.url_for("oauth_callback", provider=provider)),
            client=client_info(request),
            provider_error=error,
        )
    except AuthServiceError as exc:
        logger.info("OAuth sign-in via %s rejected: %s", provider, exc.code)
        resp = RedirectResponse(f"{target}?{urlencode({'error': exc.message})}", status_code=302)
    else:
        token = create_access_token(user.id)
        resp = RedirectResponse(f"{target}?{urlencode({'token': token})}", status_code=302)
        resp.headers["Cache-Control"] = "no-store"  # [M5]

    resp.delete_cookie(FLOW_COOKIE)
    return resp


@router.post("/auth/{provider}/refresh", response_model=TokenRefreshResponse)
async def refresh_provider_token(
    request: Request,
    provider: str,
    current_user: User = Depends(get_current_user),
) -> TokenRefreshResponse:
    """Make sure the stored provider access token is usable.

    An unexpired token is reported as-is; otherwise the stored refresh token
    is exchanged for a new access token.
    """
    if current_user.oauth_provider != provider:
        raise NoRefreshTokenError()
    flow: OAuthFlow = request.app.state.oauth_flow
    expires_in = await flow.refresh_tokens(current_user)
    return TokenRefreshResponse(message="Token refreshed successfully", expires_in=expires_in)


@router.get("/auth/{provider}/success", response_model=OAuthSuccessResponse)
def oauth_success(request: Request, provider: str, token: Optional[str] = None) -> OAuthSuccessResponse:
    """Check a token the frontend received from the callback redirect."""
    if not token:
        raise AuthenticationRequiredError("No token provided")
    user_id = decode_access_token(token)
    if request.app.state.user_store.get_by_id(user_id) is None:
        raise UserNotFoundError()
    return OAuthSuccessResponse(message="Authentication successful", token=token, user_id=user_id)
