"""
api/routes/v1/auth.py -- Account registration, login and profile REST endpoints.

Routes:
  POST   /api/v1/auth/register         -- create account; 201 + token
  POST   /api/v1/auth/login            -- password login; token
  GET    /api/v1/auth/me               -- current user (requires auth)
  GET    /api/v1/auth/profile          -- alias of /auth/me
  PUT    /api/v1/auth/profile          -- update name, email, preferences
  PUT    /api/v1/auth/change-password  -- verify current password, set new one
  DELETE /api/v1/auth/account          -- delete account and all of its tasks
  GET    /api/v1/auth/providers        -- enabled OAuth providers (public)

Handlers are plain `def`: bcrypt is CPU-bound, and FastAPI runs sync handlers
in its threadpool so hashing never blocks the event loop.

Security:
  [H2] register and login are rate-limited per IP (AUTH_RATE_LIMIT).
  [C1] Unknown emails still pay one bcrypt comparison (burn_password_check),
       so response time does not reveal whether an email is registered.
  [M5] Cache-Control: no-store on every response that carries a token.
  Locked accounts are rejected before the password check.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import (
    AuthResponse,
    ChangePasswordRequest,
    LoginRequest,
    MessageResponse,
    OAuthProviderInfo,
    ProfileUpdateRequest,
    ProfileUpdateResponse,
    RegisterRequest,
    UserEnvelope,
    UserResponse,
)
from auth.dependencies import client_info, get_current_user
from auth.errors import (
    AccountLockedError,
    CurrentPasswordIncorrectError,
    DuplicateEmailError,
    InvalidCredentialsError,
)
from auth.lockout import LockoutPolicy, LockoutState
from auth.models import User
from auth.store import UserStore
from auth.tokens import burn_password_check, create_access_token, hash_password, verify_password
from core.config import get_settings
from security.models import EventType
from security.monitor import SecurityMonitor

logger = logging.getLogger("todomaster.auth")

_settings = get_settings()

# Auth policy:
# - POST   /api/v1/auth/register:        public, rate-limited
# - POST   /api/v1/auth/login:           public, rate-limited
# - GET    /api/v1/auth/providers:       public -- login page renders OAuth buttons from it
# - everything else:                     requires auth (get_current_user)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
@limiter.limit(_settings.auth_rate_limit)  # [H2]
def register(request: Request, response: Response, body: RegisterRequest) -> AuthResponse:
    """Create a password account and sign it in."""
    user_store: UserStore = request.app.state.user_store

    if user_store.get_by_email(body.email) is not None:
        raise DuplicateEmailError()

    # create_user() also raises DuplicateEmailError if a concurrent request won the race.
    user_id = user_store.create_user(
        User(email=body.email, name=body.name, hashed_password=hash_password(body.password))
    )
    user = user_store.get_by_id(user_id)
    logger.info("Registered account id=%s", user_id)

    response.headers["Cache-Control"] = "no-store"  # [M5]
    return AuthResponse(
        message="User registered successfully",
        token=create_access_token(user_id),
        user=UserResponse.from_user(user),
    )


@router.post("/auth/login", response_model=AuthResponse)
@limiter.limit(_settings.auth_rate_limit)  # [H2]
def login(request: Request, response: Response, body: LoginRequest) -> AuthResponse:
    """Authenticate with email and password.

    Unknown email and wrong password answer with the same 400
    invalid_credentials. The failure that crosses the lockout threshold, and
    every attempt while the lock holds, answers 423 with retry_after.
    """
    user_store: UserStore = request.app.state.user_store
    monitor: SecurityMonitor = request.app.state.monitor
    policy: LockoutPolicy = request.app.state.lockout_policy
    client = client_info(request)
    now = datetime.now(timezone.utc)

    user = user_store.get_by_email(body.email)
    if user is None:
        burn_password_check(body.password)  # [C1]
        monitor.emit(
            EventType.failed_login,
            ip=client.ip,
            user_agent=client.user_agent,
            email=body.email,
            reason="unknown_email",
        )
        raise InvalidCredentialsError()

    state = LockoutState.of(user)
    if policy.is_locked(state, now):
        raise AccountLockedError(retry_after=policy.retry_after_seconds(state, now))

    if not verify_password(body.password, user.hashed_password):
        failed = policy.on_failed_login(state, now)
        user_store.apply_lockout_state(user.id, failed.state)
        monitor.emit(
            EventType.failed_login,
            ip=client.ip,
            user_agent=client.user_agent,
            email=user.email,
            reason="invalid_password",
            attempts=failed.state.login_attempts,
        )
        if failed.locked_now:
            monitor.emit(EventType.account_locked, ip=client.ip, email=user.email)
            logger.warning("Account id=%s locked after %d failed attempts", user.id, failed.state.login_attempts)
            raise AccountLockedError(retry_after=policy.retry_after_seconds(failed.state, now))
        raise InvalidCredentialsError()

    user_store.record_successful_login(user.id, now)
    user = user_store.get_by_id(user.id)

    response.headers["Cache-Control"] = "no-store"  # [M5]
    return AuthResponse(
        message="Login successful",
        token=create_access_token(user.id),
        user=UserResponse.from_user(user),
    )


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty when none are set up."""
    providers = request.app.state.oauth_flow.providers
    return [OAuthProviderInfo(name=p.name, label=p.label) for p in providers.values()]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserEnvelope)
def me(current_user: User = Depends(get_current_user)) -> UserEnvelope:
    return UserEnvelope(user=UserResponse.from_user(current_user))


@router.get("/auth/profile", response_model=UserEnvelope)
def get_profile(current_user: User = Depends(get_current_user)) -> UserEnvelope:
    return UserEnvelope(user=UserResponse.from_user(current_user))


@router.put("/auth/profile", response_model=ProfileUpdateResponse)
def update_profile(
    request: Request,
    body: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
) -> ProfileUpdateResponse:
    """Update name, email and/or preferences.

    A new email must not belong to another account, and changing it clears
    is_email_verified. Preferences are merged into the stored ones, so a
    client can send a single notification flag.
    """
    user_store: UserStore = request.app.state.user_store
    updates: dict = {}

    if body.name is not None:
        updates["name"] = body.name

    if body.email is not None and body.email != current_user.email:
        existing = user_store.get_by_email(body.email)
        if existing is not None and existing.id != current_user.id:
            raise DuplicateEmailError("Email already taken")
        updates["email"] = body.email
        updates["is_email_verified"] = False

    if body.preferences is not None:
        updates["preferences"] = _merge_preferences(current_user.preferences, body.preferences.model_dump(mode="json"))

    if updates:
        user_store.update_profile(current_user.id, **updates)

    return ProfileUpdateResponse(
        message="Profile updated successfully",
        user=UserResponse.from_user(user_store.get_by_id(current_user.id)),
    )


@router.put("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """Replace the password after verifying the current one.

    OAuth-only accounts have no current password and always get 400.
    """
    if not verify_password(body.current_password, current_user.hashed_password):
        raise CurrentPasswordIncorrectError()

    request.app.state.user_store.set_password(current_user.id, hash_password(body.new_password))
    logger.info("Password changed for account id=%s", current_user.id)
    return MessageResponse(message="Password changed successfully")


@router.delete("/auth/account", response_model=MessageResponse)
def delete_account(request: Request, current_user: User = Depends(get_current_user)) -> MessageResponse:
    """Delete the account together with every task it owns."""
    tasks_deleted = request.app.state.user_store.delete_user(current_user.id)
    logger.info("Deleted account id=%s (%d tasks)", current_user.id, tasks_deleted)
    return MessageResponse(message="Account deleted successfully")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _merge_preferences(current: dict, patch: dict) -> dict:
    merged = dict(current)
    if patch.get("theme") is not None:
        merged["theme"] = patch["theme"]
    notifications = patch.get("notifications")
    if notifications:
        merged_notifications = dict(merged.get("notifications") or {})
        merged_notifications.update({k: v for k, v in notifications.items() if v is not None})
        merged["notifications"] = merged_notifications
    return merged
