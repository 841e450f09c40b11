"""
auth/federation.py -- OAuth federation flow: redirect, callback, token refresh.

State machine per sign-in:

    REDIRECT_ISSUED -> CALLBACK_RECEIVED -> CSRF_REJECTED
                                         -> PROVIDER_AUTH_REJECTED
                                         -> LINKED

begin()     generates a 32-byte hex CSRF state, stores it server-side under a
            fresh flow id (returned to the route, which sets it as a cookie)
            and asks the provider for its consent-screen URL.
complete()  consumes the stored state (single use, whatever the outcome),
            compares it with the `state` query parameter, exchanges the code
            with a bounded timeout, resolves the account, stores provider
            tokens and returns the signed-in User.

Account resolution, first match wins:
  1. provider subject already linked   -> stamp last_login
  2. account with the same email       -> link the provider identity,
                                          mark email verified, update avatar
  3. no match                          -> create an OAuth-only account

Every failure raises an AuthServiceError subclass; the callback route turns
all of them into a redirect with ?error=. CSRF mismatches and unverified
provider emails are recorded with the SecurityMonitor first.

The flow runs on the event loop, so database and security-log work goes
through asyncio.to_thread; only provider HTTP calls are awaited directly.

Layer rule: no imports from api/. security/ is imported for event recording.
"""

from __future__ import annotations

import asyncio
import logging
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone

from auth.errors import CsrfRejectedError, NoRefreshTokenError, ProviderAuthError, ProviderNotFoundError
from auth.models import User
from auth.oauth import IdentityProvider, ProviderProfile, ProviderTokens
from auth.state_store import OAuthStateStore
from auth.store import UserStore
from security.models import EventType
from security.monitor import SecurityMonitor

logger = logging.getLogger("todomaster.auth.oauth")


@dataclass
class ClientInfo:
    """Who is on the other end of the request, for security events."""

    ip: str | None = None
    user_agent: str | None = None


class OAuthFlow:
    def __init__(
        self,
        store: UserStore,
        states: OAuthStateStore,
        monitor: SecurityMonitor,
        providers: dict[str, IdentityProvider],
        timeout_seconds: float = 10.0,
    ) -> None:
        self.store = store
        self.states = states
        self.monitor = monitor
        self.providers = providers
        self.timeout_seconds = timeout_seconds

    def provider(self, name: str) -> IdentityProvider:
        try:
            return self.providers[name]
        except KeyError:
            raise ProviderNotFoundError() from None

    # ------------------------------------------------------------------
    # Step 1: redirect
    # ------------------------------------------------------------------

    async def begin(self, provider_name: str, redirect_uri: str) -> tuple[str, str]:
        """Return (authorization_url, flow_id) for a new sign-in attempt."""
        provider = self.provider(provider_name)
        state = secrets.token_hex(32)
        flow_id = await asyncio.to_thread(self.states.issue, provider.name, state)
        try:
            url = await asyncio.wait_for(provider.authorization_url(redirect_uri, state), self.timeout_seconds)
        except Exception as exc:
            # Discovery document fetch failed or timed out.
            await asyncio.to_thread(self.states.consume, flow_id)
            logger.exception("Could not build %s authorization URL", provider.name)
            raise ProviderAuthError() from exc
        return url, flow_id

    # ------------------------------------------------------------------
    # Step 2-6: callback
    # ------------------------------------------------------------------

    async def complete(
        self,
        provider_name: str,
        flow_id: str | None,
        received_state: str | None,
        code: str | None,
        redirect_uri: str,
        client: ClientInfo,
        provider_error: str | None = None,
    ) -> User:
        provider = self.provider(provider_name)

        # Consume first: the stored state is gone whatever happens next.
        expected_state = await asyncio.to_thread(self.states.consume, flow_id, provider.name)
        if not expected_state or not received_state or not secrets.compare_digest(expected_state, received_state):
            await asyncio.to_thread(
                self.monitor.emit,
                EventType.csrf_attempt,
                ip=client.ip,
                user_agent=client.user_agent,
                provider=provider.name,
                expected_state=expected_state,
                received_state=received_state,
            )
            logger.warning("OAuth state mismatch from %s (provider=%s)", client.ip, provider.name)
            raise CsrfRejectedError()

        if provider_error or not code:
            # User declined consent, or the provider sent us back without a code.
            logger.info("OAuth callback without code from %s: %s", provider.name, provider_error)
            raise ProviderAuthError()

        try:
            grant = await asyncio.wait_for(provider.exchange_code(code, redirect_uri), self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning("OAuth code exchange with %s timed out after %.1fs", provider.name, self.timeout_seconds)
            raise ProviderAuthError() from exc
        except Exception as exc:
            logger.exception("OAuth code exchange failed for provider %r", provider.name)
            raise ProviderAuthError() from exc

        profile = grant.profile
        if not profile.email_verified:  # [H1]
            await asyncio.to_thread(
                self.monitor.emit,
                EventType.oauth_suspicious,
                ip=client.ip,
                user_agent=client.user_agent,
                provider=provider.name,
                reason="unverified_email",
                email=profile.email,
            )
            raise ProviderAuthError()

        return await asyncio.to_thread(self._sign_in, provider.name, profile, grant.tokens)

    def _sign_in(self, provider_name: str, profile: ProviderProfile, tokens: ProviderTokens | None) -> User:
        user = self.resolve_account(provider_name, profile)
        self._store_tokens(user.id, tokens)
        return self.store.get_by_id(user.id) or user

    def resolve_account(self, provider_name: str, profile: ProviderProfile, now: datetime | None = None) -> User:
        """Find, link, or create the account for a verified provider identity."""
        now = now or datetime.now(timezone.utc)

        user = self.store.get_by_oauth(provider_name, profile.subject)
        if user is not None:
            self.store.update_last_login(user.id, now)
            return user

        user = self.store.get_by_email(profile.email)
        if user is not None:
            if user.oauth_subject is not None:
                # Email matches an account already linked to another identity.
                # Refuse to re-point an existing link.
                self.monitor.emit(
                    EventType.oauth_suspicious,
                    provider=provider_name,
                    reason="subject_mismatch",
                    email=profile.email,
                )
                raise ProviderAuthError()
            self.store.link_oauth(user.id, provider_name, profile.subject, avatar=profile.avatar, now=now)
            logger.info("Linked %s identity to existing account id=%s", provider_name, user.id)
            return self.store.get_by_id(user.id)

        user_id = self.store.create_user(
            User(
                email=profile.email,
                name=profile.name,
                avatar=profile.avatar,
                is_email_verified=True,
                oauth_provider=provider_name,
                oauth_subject=profile.subject,
                last_login=now,
            )
        )
        logger.info("Created account id=%s from %s sign-in", user_id, provider_name)
        return self.store.get_by_id(user_id)

    def _store_tokens(self, user_id: int, tokens: ProviderTokens | None) -> None:
        if tokens is None or not tokens.access_token:
            return
        self.store.update_oauth_tokens(user_id, tokens.access_token, tokens.refresh_token, tokens.expires_at)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh_tokens(self, user: User, now: datetime | None = None) -> int:
        """Make sure the user's provider access token is fresh; return seconds until it expires.

        An unexpired token is reported without calling the provider. A rotated
        refresh token replaces the stored one.
        """
        now = now or datetime.now(timezone.utc)
        if user.oauth_access_token and user.oauth_token_expiry and user.oauth_token_expiry > now:
            return math.floor((user.oauth_token_expiry - now).total_seconds())

        if not user.oauth_refresh_token:
            raise NoRefreshTokenError()

        provider = self.provider(user.oauth_provider or "")
        try:
            tokens = await asyncio.wait_for(provider.refresh(user.oauth_refresh_token), self.timeout_seconds)
        except Exception as exc:
            logger.exception("Token refresh with %s failed for user id=%s", provider.name, user.id)
            raise ProviderAuthError("Failed to refresh access token") from exc

        await asyncio.to_thread(self._store_tokens, user.id, tokens)
        if tokens.expires_at is None:
            return 0
        return max(0, math.floor((tokens.expires_at - now).total_seconds()))
