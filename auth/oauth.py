"""
auth/oauth.py -- Identity provider interface and the authlib-backed Google provider.

The federation flow (auth/federation.py) only talks to IdentityProvider. Each
concrete provider hides its protocol details -- endpoints, extra
authorization parameters, profile normalization -- behind three calls:

  authorization_url(redirect_uri, state)  -> URL of the consent screen
  exchange_code(code, redirect_uri)       -> ProviderGrant (profile + tokens)
  refresh(refresh_token)                  -> ProviderTokens

Adding a provider means adding a subclass and registering it in
build_providers(); the callback state machine does not change.

CSRF state is NOT delegated to authlib's session handling. We pass our own
state value into the authorization URL and verify it ourselves in the
federation flow, so mismatches can be recorded as security events.

Security notes:
  [H1] The provider's email_verified claim is surfaced on ProviderProfile.
       The federation flow refuses to link or create accounts from
       unverified emails -- an unverified address could be a victim's email
       added by an attacker.

Layer rule: no imports from api/ or security/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone

from authlib.integrations.starlette_client import OAuth

from core.config import Settings

logger = logging.getLogger("todomaster.auth.oauth")

GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"


# ---------------------------------------------------------------------------
# Provider-neutral results
# ---------------------------------------------------------------------------


@dataclass
class ProviderProfile:
    """Normalized identity returned by a provider after code exchange."""

    subject: str  # provider's stable user ID
    email: str
    email_verified: bool
    name: str
    avatar: str | None = None


@dataclass
class ProviderTokens:
    access_token: str
    refresh_token: str | None = None  # only on offline-access consent or rotation
    expires_at: datetime | None = None


@dataclass
class ProviderGrant:
    profile: ProviderProfile
    tokens: ProviderTokens


def tokens_from_response(token: dict) -> ProviderTokens:
    """Build ProviderTokens from an OAuth2 token endpoint response.

    Prefers the absolute expires_at that authlib computes; falls back to
    expires_in relative to now.
    """
    expires_at: datetime | None = None
    if token.get("expires_at"):
        expires_at = datetime.fromtimestamp(float(token["expires_at"]), tz=timezone.utc)
    elif token.get("expires_in"):
        expires_at = datetime.fromtimestamp(time.time() + float(token["expires_in"]), tz=timezone.utc)
    return ProviderTokens(
        access_token=token["access_token"],
        refresh_token=token.get("refresh_token"),
        expires_at=expires_at,
    )


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class IdentityProvider(ABC):
    name: str
    label: str

    @abstractmethod
    async def authorization_url(self, redirect_uri: str, state: str) -> str:
        """Return the consent-screen URL carrying our CSRF state."""

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> ProviderGrant:
        """Trade an authorization code for an identity profile and tokens.

        Raises ValueError when the provider's response lacks a usable identity.
        Transport and protocol errors propagate as raised by the client library.
        """

    @abstractmethod
    async def refresh(self, refresh_token: str) -> ProviderTokens:
        """Exchange a refresh token for a new access token."""


# ---------------------------------------------------------------------------
# Google
# ---------------------------------------------------------------------------


class GoogleProvider(IdentityProvider):
    """Google OAuth 2.0 / OIDC via an authlib Starlette client.

    access_type=offline asks for a refresh token; prompt=consent forces the
    consent screen so Google issues a refresh token even for users who have
    granted access before.
    """

    name = "google"
    label = "Google"

    def __init__(self, client) -> None:
        self.client = client

    async def authorization_url(self, redirect_uri: str, state: str) -> str:
        rv = await self.client.create_authorization_url(
            redirect_uri,
            state=state,
            access_type="offline",
            prompt="consent",
        )
        return rv["url"]

    async def exchange_code(self, code: str, redirect_uri: str) -> ProviderGrant:
        token = await self.client.fetch_access_token(code=code, redirect_uri=redirect_uri)
        userinfo = await self.client.userinfo(token=token)
        return ProviderGrant(profile=_google_profile(userinfo), tokens=tokens_from_response(token))

    async def refresh(self, refresh_token: str) -> ProviderTokens:
        token = await self.client.fetch_access_token(grant_type="refresh_token", refresh_token=refresh_token)
        return tokens_from_response(token)


def _google_profile(userinfo: dict) -> ProviderProfile:
    """Normalize Google's OIDC userinfo claims.

    Raises ValueError if sub or email is missing -- the caller treats that as
    a failed sign-in.
    """
    subject = userinfo.get("sub")
    email = userinfo.get("email")
    if not subject or not email:
        raise ValueError("google OAuth: missing email or sub claim in userinfo")
    return ProviderProfile(
        subject=str(subject),
        email=email,
        email_verified=bool(userinfo.get("email_verified", False)),
        name=userinfo.get("name") or email.split("@")[0],
        avatar=userinfo.get("picture"),
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def build_providers(settings: Settings, oauth: OAuth | None = None) -> dict[str, IdentityProvider]:
    """Register every configured provider and return them keyed by name.

    Only providers with both client ID and secret configured are registered.
    With none configured the OAuth routes answer 404 and a startup notice is
    logged.
    """
    oauth = oauth or OAuth()
    providers: dict[str, IdentityProvider] = {}

    if settings.google_enabled:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url=GOOGLE_DISCOVERY_URL,
            client_kwargs={"scope": "openid email profile"},
        )
        providers["google"] = GoogleProvider(oauth.create_client("google"))
        logger.info("Google OAuth provider registered")
    else:
        logger.info("Google OAuth not configured - GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET not provided")

    return providers
