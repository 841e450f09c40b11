"""Unit tests for auth/federation.py -- OAuth sign-in flow against FakeProvider.

Covers:
- begin(): 64-hex-char state carried in the authorization URL, stored under a flow id
- CSRF: mismatched, missing or replayed state -> CsrfRejectedError and exactly
  one csrf_attempt event; the provider is never called
- Provider failures (declined consent, exchange error, timeout, unverified email)
- Account resolution precedence: subject -> email link -> create
- Provider token storage and refresh_tokens() paths
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from auth.errors import CsrfRejectedError, NoRefreshTokenError, ProviderAuthError, ProviderNotFoundError
from auth.federation import ClientInfo
from auth.models import User
from auth.oauth import ProviderTokens
from security.models import EventType

REDIRECT_URI = "http://testserver/api/v1/auth/google/callback"
CLIENT = ClientInfo(ip="10.0.0.5", user_agent="pytest")


@pytest.fixture
def flow(flow_factory):
    return flow_factory()


def _begin(flow) -> tuple[str, str]:
    """Return (state, flow_id) for a fresh sign-in."""
    url, flow_id = asyncio.run(flow.begin("google", REDIRECT_URI))
    state = parse_qs(urlparse(url).query)["state"][0]
    return state, flow_id


def _complete(flow, flow_id, state, code="auth-code", error=None) -> User:
    return asyncio.run(
        flow.complete("google", flow_id, state, code, REDIRECT_URI, CLIENT, provider_error=error)
    )


def _events(monitor, event_type):
    return [e for e in monitor.events if e.type is event_type]


class TestBegin:
    def test_state_is_32_random_bytes(self, flow):
        state, flow_id = _begin(flow)
        assert len(state) == 64
        int(state, 16)
        assert flow_id

    def test_each_begin_gets_a_new_state(self, flow):
        assert _begin(flow)[0] != _begin(flow)[0]

    def test_unknown_provider(self, flow):
        with pytest.raises(ProviderNotFoundError):
            asyncio.run(flow.begin("github", REDIRECT_URI))


class TestCsrf:
    def test_mismatch_rejected_with_one_event(self, flow, monitor, fake_provider):
        _state, flow_id = _begin(flow)
        with pytest.raises(CsrfRejectedError):
            _complete(flow, flow_id, "0" * 64)

        events = _events(monitor, EventType.csrf_attempt)
        assert len(events) == 1
        assert events[0].details["ip"] == "10.0.0.5"
        assert events[0].details["user_agent"] == "pytest"
        assert events[0].details["received_state"] == "0" * 64
        assert fake_provider.exchange_calls == 0

    def test_mismatch_consumes_the_stored_state(self, flow):
        state, flow_id = _begin(flow)
        with pytest.raises(CsrfRejectedError):
            _complete(flow, flow_id, "wrong")
        with pytest.raises(CsrfRejectedError):
            _complete(flow, flow_id, state)

    def test_state_is_single_use(self, flow, monitor):
        state, flow_id = _begin(flow)
        _complete(flow, flow_id, state)
        with pytest.raises(CsrfRejectedError):
            _complete(flow, flow_id, state)
        assert len(_events(monitor, EventType.csrf_attempt)) == 1

    @pytest.mark.parametrize("use_flow_id, use_state", [(False, True), (True, False)])
    def test_missing_side_rejected(self, flow, use_flow_id, use_state):
        state, flow_id = _begin(flow)
        with pytest.raises(CsrfRejectedError):
            _complete(flow, flow_id if use_flow_id else None, state if use_state else None)


class TestProviderFailures:
    def test_declined_consent(self, flow, fake_provider):
        state, flow_id = _begin(flow)
        with pytest.raises(ProviderAuthError):
            _complete(flow, flow_id, state, code=None, error="access_denied")
        assert fake_provider.exchange_calls == 0

    def test_exchange_error(self, flow, fake_provider):
        fake_provider.exchange_error = RuntimeError("token endpoint returned 500")
        state, flow_id = _begin(flow)
        with pytest.raises(ProviderAuthError):
            _complete(flow, flow_id, state)

    def test_exchange_timeout(self, flow_factory, fake_provider):
        flow = flow_factory(timeout_seconds=0.05)
        fake_provider.exchange_delay = 1.0
        state, flow_id = _begin(flow)
        with pytest.raises(ProviderAuthError):
            _complete(flow, flow_id, state)

    def test_unverified_email(self, flow, store, monitor, fake_provider):
        fake_provider.profile.email_verified = False
        state, flow_id = _begin(flow)
        with pytest.raises(ProviderAuthError):
            _complete(flow, flow_id, state)

        (event,) = _events(monitor, EventType.oauth_suspicious)
        assert event.details["reason"] == "unverified_email"
        assert store.get_by_email("gina@example.com") is None


class TestAccountResolution:
    def test_creates_verified_passwordless_account(self, flow, store):
        state, flow_id = _begin(flow)
        user = _complete(flow, flow_id, state)

        assert user.email == "gina@example.com"
        assert user.name == "Gina"
        assert user.hashed_password is None
        assert user.is_email_verified is True
        assert user.oauth_provider == "google"
        assert user.oauth_subject == "google-sub-123"
        assert user.oauth_access_token == "access-1"
        assert user.oauth_refresh_token == "refresh-1"
        assert user.last_login is not None

    def test_returning_user_matched_by_subject(self, flow, store, fake_provider):
        state, flow_id = _begin(flow)
        first = _complete(flow, flow_id, state)

        # Email changed at the provider: the subject still identifies the account.
        fake_provider.profile.email = "gina.new@example.com"
        state, flow_id = _begin(flow)
        second = _complete(flow, flow_id, state)
        assert second.id == first.id
        assert store.get_by_email("gina.new@example.com") is None

    def test_links_existing_password_account_by_email(self, flow, store):
        uid = store.create_user(User(email="Gina@Example.com", name="Gina P", hashed_password="$2b$12$hash"))
        state, flow_id = _begin(flow)
        user = _complete(flow, flow_id, state)

        assert user.id == uid
        assert user.hashed_password == "$2b$12$hash"
        assert user.oauth_subject == "google-sub-123"
        assert user.is_email_verified is True
        assert user.avatar == "https://img.example.com/gina.png"

    def test_refuses_to_relink_account_with_other_identity(self, flow, store, monitor):
        store.create_user(
            User(email="gina@example.com", name="Gina", oauth_provider="google", oauth_subject="someone-else")
        )
        state, flow_id = _begin(flow)
        with pytest.raises(ProviderAuthError):
            _complete(flow, flow_id, state)
        assert _events(monitor, EventType.oauth_suspicious)[0].details["reason"] == "subject_mismatch"


class TestRefresh:
    def _linked_user(self, flow, store, **tokens) -> User:
        uid = store.create_user(
            User(email="gina@example.com", name="Gina", oauth_provider="google", oauth_subject="google-sub-123")
        )
        if tokens:
            store.update_oauth_tokens(uid, tokens["access"], tokens.get("refresh"), tokens["expiry"])
        return store.get_by_id(uid)

    def test_unexpired_token_skips_provider(self, flow, store, fake_provider):
        now = datetime.now(timezone.utc)
        user = self._linked_user(flow, store, access="a", refresh="r", expiry=now + timedelta(minutes=30))
        expires_in = asyncio.run(flow.refresh_tokens(user, now=now))
        assert 1790 <= expires_in <= 1800
        assert fake_provider.refresh_calls == 0

    def test_expired_token_is_refreshed(self, flow, store, fake_provider):
        now = datetime.now(timezone.utc)
        user = self._linked_user(flow, store, access="a", refresh="r", expiry=now - timedelta(minutes=1))
        fake_provider.refreshed = ProviderTokens(access_token="fresh", refresh_token=None, expires_at=now + timedelta(hours=1))

        assert asyncio.run(flow.refresh_tokens(user, now=now)) == 3600
        stored = store.get_by_id(user.id)
        assert stored.oauth_access_token == "fresh"
        assert stored.oauth_refresh_token == "r"
        assert fake_provider.refresh_calls == 1

    def test_no_refresh_token(self, flow, store):
        user = self._linked_user(flow, store)
        with pytest.raises(NoRefreshTokenError):
            asyncio.run(flow.refresh_tokens(user))

    def test_provider_failure(self, flow, store, fake_provider):
        now = datetime.now(timezone.utc)
        user = self._linked_user(flow, store, access="a", refresh="r", expiry=now - timedelta(minutes=1))
        fake_provider.refresh_error = RuntimeError("invalid_grant")
        with pytest.raises(ProviderAuthError):
            asyncio.run(flow.refresh_tokens(user, now=now))


class TestEventLoop:
    def test_store_and_monitor_work_runs_off_the_loop_thread(self, flow, store, monitor, monkeypatch):
        loop_threads = set()
        worker_threads = []

        def recording(method):
            def wrapper(*args, **kwargs):
                worker_threads.append(threading.get_ident())
                return method(*args, **kwargs)

            return wrapper

        monkeypatch.setattr(store, "create_user", recording(store.create_user))
        monkeypatch.setattr(flow.states, "consume", recording(flow.states.consume))
        monkeypatch.setattr(monitor, "emit", recording(monitor.emit))

        async def sign_in(flow_id, state):
            loop_threads.add(threading.get_ident())
            await flow.complete("google", flow_id, state, "auth-code", REDIRECT_URI, CLIENT)

        state, flow_id = _begin(flow)
        asyncio.run(sign_in(flow_id, state))
        with pytest.raises(CsrfRejectedError):
            asyncio.run(sign_in(None, "f" * 64))

        assert len(worker_threads) == 4  # consume + create_user, consume + emit
        assert loop_threads.isdisjoint(worker_threads)
