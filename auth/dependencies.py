"""
auth/dependencies.py -- FastAPI Depends() helpers: the protected-route gate and
request client info.

get_current_user() is the per-request gate that runs ahead of every protected
handler (the auth routes here, and the task/category/notification routes that
consume the User it returns):

    no Authorization: Bearer header   -> 401 authentication_required
    token malformed / bad signature   -> 401 invalid_token
    token expired                     -> 401 token_expired
    user id no longer exists          -> 401 user_not_found
    account currently locked          -> 423 account_locked (+ retry_after)
    otherwise                         -> User, also attached to request.state.user

A valid token does not get a locked account through: the lock applies to
every session, not just to new password logins.

Errors are raised as AuthServiceError subclasses; api/main.py maps them to the
standard error envelope.

Layer rule: may import from fastapi (Request) because this module is part of
the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import Request

from auth.errors import AccountLockedError, AuthenticationRequiredError, UserNotFoundError
from auth.federation import ClientInfo
from auth.lockout import LockoutPolicy, LockoutState
from auth.models import User
from auth.tokens import decode_access_token


def bearer_token(request: Request) -> str | None:
    """Return the token from `Authorization: Bearer <token>`, or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def client_info(request: Request) -> ClientInfo:
    """Source IP and user agent of the request, for security events."""
    return ClientInfo(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )


def get_current_user(request: Request) -> User:
    """Require a valid bearer token for an existing, unlocked account.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise AuthenticationRequiredError()

    user_id = decode_access_token(token)  # raises InvalidTokenError / TokenExpiredError

    user = request.app.state.user_store.get_by_id(user_id)
    if user is None:
        raise UserNotFoundError()

    policy: LockoutPolicy = request.app.state.lockout_policy
    state = LockoutState.of(user)
    now = datetime.now(timezone.utc)
    if policy.is_locked(state, now):
        raise AccountLockedError(
            "Account is temporarily locked. Please try again later.",
            retry_after=policy.retry_after_seconds(state, now),
        )

    request.state.user = user
    return user
