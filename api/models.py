"""
API request and response models for TodoMaster REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

UserResponse is the ONLY way a user leaves the API. It whitelists public
fields, so password hashes, provider tokens and lockout counters cannot leak
by accident -- they are simply not part of the model.
"""

import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
# At least one lowercase letter, one uppercase letter and one digit.
_PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")


def _normalize_email(value: str) -> str:
    value = str(value).strip().lower()
    if not _EMAIL_RE.match(value) or len(value) > 254:
        raise ValueError("Please provide a valid email")
    return value


def _check_password_strength(value: str) -> str:
    if not _PASSWORD_RE.match(value):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase letter, and one number"
        )
    return value


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ThemeEnum(str, Enum):
    light = "light"
    dark = "dark"
    system = "system"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register. Passwords are taken verbatim."""

    email: str = Field(max_length=254)
    password: str = Field(min_length=6, max_length=128)
    name: str = Field(min_length=2, max_length=50)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _check_password_strength(value)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(max_length=254)
    password: str = Field(min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)


class ChangePasswordRequest(BaseModel):
    """Request body for PUT /api/v1/auth/change-password."""

    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=6, max_length=128)

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _check_password_strength(value)


class NotificationPreferences(BaseModel):
    email: Optional[bool] = None
    push: Optional[bool] = None
    weekly: Optional[bool] = None


class PreferencesUpdate(BaseModel):
    theme: Optional[ThemeEnum] = None
    notifications: Optional[NotificationPreferences] = None


class ProfileUpdateRequest(BaseModel):
    """Request body for PUT /api/v1/auth/profile. Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    email: Optional[str] = Field(default=None, max_length=254)
    preferences: Optional[PreferencesUpdate] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_email(value) if value is not None else None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public projection of a user account."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    avatar: Optional[str] = None
    preferences: dict
    is_email_verified: bool
    oauth_provider: Optional[str] = None
    last_login: Optional[str] = None
    created_at: str = ""

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            avatar=user.avatar,
            preferences=user.preferences,
            is_email_verified=user.is_email_verified,
            oauth_provider=user.oauth_provider,
            last_login=user.last_login.isoformat() if user.last_login else None,
            created_at=user.created_at or "",
        )


class AuthResponse(BaseModel):
    """Response for register and login: a bearer token plus the public user."""

    model_config = ConfigDict(frozen=True)

    message: str
    token: str
    user: UserResponse


class UserEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse


class ProfileUpdateResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    user: UserResponse


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class TokenRefreshResponse(BaseModel):
    """Response for POST /api/v1/auth/google/refresh."""

    model_config = ConfigDict(frozen=True)

    message: str
    expires_in: int


class OAuthSuccessResponse(BaseModel):
    """Response for GET /api/v1/auth/google/success."""

    model_config = ConfigDict(frozen=True)

    message: str
    token: str
    user_id: int


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    retry_after: Optional[int] = None


class ErrorResponse(BaseModel):
    """Standard error envelope returned by every error path."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
