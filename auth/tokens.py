"""
auth/tokens.py -- JWT and password hashing utilities.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       sub/user_id, iat and exp. Verification distinguishes an expired token
       (TokenExpiredError) from a malformed or tampered one
       (InvalidTokenError) so the middleware can answer with different
       messages. Both are 401s.

  Passwords: bcrypt with a fixed cost factor of 12. The _DUMMY_HASH constant
       enables timing equalization in the login handler so response time does
       not reveal whether an email is registered [C1].

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup: dev mode (DEBUG=true) auto-generates a
       random key with a warning; production mode refuses to start without one.

Layer rule: no imports from api/ or security/. Import from core/ is allowed --
core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import InvalidTokenError, TokenExpiredError
from core.config import get_settings

logger = logging.getLogger("todomaster.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# Fixed cost factor. Raising it slows every login; lowering it weakens stored
# hashes. Changing it does not invalidate existing hashes (the cost is encoded
# in each hash string).
BCRYPT_ROUNDS = 12

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
#
# Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
# wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
# rejects with an explicit error.
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the given plaintext password.

    Every call draws a fresh salt, so hashing the same password twice yields
    two different strings that both verify. The API layer caps password length
    at 128 characters; bcrypt only looks at the first 72 bytes.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Returns False (never raises) when there is no hash -- an OAuth-only account
    attempting a password login -- or when the stored value is not a bcrypt hash.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("todomaster_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt comparison against the dummy hash and discard the result [C1]."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, expire_seconds: int = 0) -> str:
    """Encode a signed JWT for the given user.

    Args:
        user_id:        Database ID of the user, carried as both `sub` (string,
                        per RFC 7519) and `user_id` (int, for convenience).
        expire_seconds: Token lifetime in seconds. If 0 (default), uses
                        Settings.token_expire_seconds (7 days).
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "user_id": user_id,
        "iat": now,
        "exp": now + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> int:
    """Verify a JWT and return the user ID it was issued for.

    Raises:
        TokenExpiredError: the signature is valid but exp has passed.
        InvalidTokenError: bad signature, malformed token, or missing claims.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise TokenExpiredError() from exc
    except JWTError as exc:
        raise InvalidTokenError() from exc

    user_id = payload.get("user_id")
    if not isinstance(user_id, int) or payload.get("sub") != str(user_id):
        raise InvalidTokenError()
    return user_id
