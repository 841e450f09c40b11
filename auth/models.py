"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). The lockout rules live
in auth/lockout.py, persistence in auth/store.py, and the public projection in
api/models.UserResponse -- dataclasses own domain shape; stores and routes do
the work.

Layer rule: no imports from api/ or security/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


def default_preferences() -> dict:
    return {
        "theme": "system",
        "notifications": {"email": True, "push": False, "weekly": True},
    }


@dataclass
class User:
    """Represents an account in TodoMaster.

    email is stored lower-cased; the store normalizes on every write and lookup
    so uniqueness is case-insensitive.

    hashed_password is None for OAuth-only users (they have no local password).
    oauth_provider / oauth_subject are None until the user signs in through an
    identity provider, at which point link_oauth() fills them in. The provider
    token fields are only populated after offline-access consent.

    Lockout fields (login_attempts, lock_until, last_failed_login) are written
    exclusively through UserStore.apply_lockout_state() and
    record_successful_login(). There is deliberately no is_locked column:
    locked-ness is derived from lock_until and the current time.
    """

    email: str
    name: str
    id: int | None = None
    hashed_password: str | None = None  # None = OAuth-only user
    avatar: str | None = None
    preferences: dict = field(default_factory=default_preferences)
    is_email_verified: bool = False
    oauth_provider: str | None = None  # "google"
    oauth_subject: str | None = None  # provider's stable user ID
    oauth_access_token: str | None = None
    oauth_refresh_token: str | None = None
    oauth_token_expiry: datetime | None = None
    login_attempts: int = 0
    lock_until: datetime | None = None
    last_failed_login: datetime | None = None
    last_login: datetime | None = None
    created_at: str | None = None
    updated_at: str | None = None
