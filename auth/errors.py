"""
auth/errors.py -- Domain exceptions for the authentication subsystem.

Each exception carries the HTTP status, a stable machine-readable code and a
user-facing message. Route handlers and the federation flow raise these; the
single exception handler in api/main.py turns them into the standard error
envelope. auth/ itself never builds HTTP responses from them.

Message policy:
  Credential failures are deliberately generic (no account enumeration).
  Lockout, CSRF and provider failures are specific so the user knows what
  happened and whether retrying makes sense.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthServiceError(Exception):
    """Base class for auth-layer errors mapped to HTTP responses."""

    status_code: int = 400
    code: str = "bad_request"
    message: str = "Request could not be processed."

    def __init__(self, message: str | None = None, *, retry_after: int | None = None) -> None:
        super().__init__(message or self.message)
        if message is not None:
            self.message = message
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Client input errors (400)
# ---------------------------------------------------------------------------


class InvalidCredentialsError(AuthServiceError):
    # Same response for unknown email and wrong password -- see login().
    status_code = 400
    code = "invalid_credentials"
    message = "Invalid credentials"


class DuplicateEmailError(AuthServiceError):
    status_code = 400
    code = "duplicate_email"
    message = "User already exists with this email"


class CurrentPasswordIncorrectError(AuthServiceError):
    status_code = 400
    code = "current_password_incorrect"
    message = "Current password is incorrect"


class NoRefreshTokenError(AuthServiceError):
    status_code = 400
    code = "no_refresh_token"
    message = "No refresh token available. Please sign in with Google again."


# ---------------------------------------------------------------------------
# Authentication errors (401)
# ---------------------------------------------------------------------------


class AuthenticationRequiredError(AuthServiceError):
    status_code = 401
    code = "authentication_required"
    message = "Access denied. No token provided."


class InvalidTokenError(AuthServiceError):
    status_code = 401
    code = "invalid_token"
    message = "Invalid token."


class TokenExpiredError(AuthServiceError):
    status_code = 401
    code = "token_expired"
    message = "Token expired."


class UserNotFoundError(AuthServiceError):
    status_code = 401
    code = "user_not_found"
    message = "Invalid token. User not found."


# ---------------------------------------------------------------------------
# Account locked (423)
# ---------------------------------------------------------------------------


class AccountLockedError(AuthServiceError):
    """Carries retry_after (seconds) so clients can schedule the next attempt."""

    status_code = 423
    code = "account_locked"
    message = "Account is temporarily locked due to too many failed login attempts."


# ---------------------------------------------------------------------------
# OAuth federation
# ---------------------------------------------------------------------------


class ProviderNotFoundError(AuthServiceError):
    status_code = 404
    code = "provider_not_found"
    message = "Identity provider is not configured."


class CsrfRejectedError(AuthServiceError):
    status_code = 400
    code = "csrf_rejected"
    message = "Security verification failed. Please try signing in again."


class ProviderAuthError(AuthServiceError):
    status_code = 502
    code = "provider_auth_failed"
    message = "Authentication failed"
