"""
auth/store.py -- SQLAlchemy Core persistence layer for user accounts.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user is the mapper. Route, dependency and
federation code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Emails are lower-cased and stripped on every write and lookup, so the
  UNIQUE constraint on users.email gives case-insensitive uniqueness.

  UNIQUE(oauth_provider, oauth_subject) is a real constraint: SQL treats NULLs
  as distinct, which is exactly the sparse semantics we want -- any number of
  password-only accounts, but one account per provider identity.

Write discipline:
  apply_lockout_state() and record_successful_login() touch only the lockout
  and login-tracking columns, so a concurrent password change or profile
  update is never overwritten by a stale lockout write.
  update_oauth_tokens() touches only the provider token columns.

Timestamps are stored as ISO 8601 text (UTC) and mapped back to aware
datetimes.

Tasks:
  The task routes live outside this service, but account deletion must remove
  a user's tasks. The store declares the tasks table so delete_user() can
  cascade inside one transaction.

Layer rule: no imports from api/ or security/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateEmailError
from auth.lockout import LockoutState
from auth.models import User, default_preferences

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users_table = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # always lower-case
    Column("name", String(100), nullable=False),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("avatar", Text),
    Column("preferences", Text),  # JSON blob
    Column("is_email_verified", Boolean, nullable=False, default=False),
    Column("oauth_provider", String(30)),
    Column("oauth_subject", String(255)),
    Column("oauth_access_token", Text),
    Column("oauth_refresh_token", Text),
    Column("oauth_token_expiry", String(40)),
    Column("login_attempts", Integer, nullable=False, default=0),
    Column("lock_until", String(40)),
    Column("last_failed_login", String(40)),
    Column("last_login", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    UniqueConstraint("oauth_provider", "oauth_subject", name="uq_users_oauth_identity"),
)

# Owned by the task routes; declared here for the deletion cascade only.
tasks_table = Table(
    "tasks",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("title", String(100), nullable=False),
    Column("created_at", String(40), nullable=False),
)

_UPDATABLE_PROFILE_FIELDS = {"name", "email", "avatar", "preferences", "is_email_verified"}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new SQLite connection.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore("sqlite:///todomaster.db")
        uid = store.create_user(User(email="a@x.com", name="A", hashed_password=hash_password("Secret1")))
        user = store.get_by_email("A@X.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                users_table.select().where(users_table.c.email == normalize_email(email))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users_table.select().where(users_table.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_oauth(self, provider: str, subject: str) -> User | None:
        """Look up a user by (oauth_provider, oauth_subject) pair."""
        with self.engine.connect() as conn:
            row = conn.execute(
                users_table.select().where(
                    (users_table.c.oauth_provider == provider) & (users_table.c.oauth_subject == subject)
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        The caller hashes the password before building the User; the store
        never sees plaintext.

        Raises:
            DuplicateEmailError: the (normalized) email is already registered.
                Also raised when a concurrent request inserted the same email
                between the caller's existence check and this insert.
        """
        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    users_table.insert().values(
                        email=normalize_email(user.email),
                        name=user.name,
                        hashed_password=user.hashed_password,
                        avatar=user.avatar,
                        preferences=json.dumps(user.preferences or default_preferences()),
                        is_email_verified=user.is_email_verified,
                        oauth_provider=user.oauth_provider,
                        oauth_subject=user.oauth_subject,
                        oauth_access_token=user.oauth_access_token,
                        oauth_refresh_token=user.oauth_refresh_token,
                        oauth_token_expiry=_to_iso(user.oauth_token_expiry),
                        login_attempts=0,
                        last_login=_to_iso(user.last_login),
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError as exc:
            raise DuplicateEmailError() from exc
        return result.inserted_primary_key[0]

    def update_profile(self, user_id: int, **fields) -> bool:
        """Update profile fields (name, email, avatar, preferences, is_email_verified).

        Unknown field names raise ValueError -- fail fast rather than silently
        writing to columns owned by another component.

        Returns True if a row was updated, False if user_id was not found.
        Raises DuplicateEmailError if a new email collides with another account.
        """
        unknown = set(fields) - _UPDATABLE_PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Unknown profile fields: {unknown!r}")
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        if "preferences" in fields:
            fields["preferences"] = json.dumps(fields["preferences"])
        fields["updated_at"] = _now_iso()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(users_table.update().where(users_table.c.id == user_id).values(**fields))
        except IntegrityError as exc:
            raise DuplicateEmailError("Email already taken") from exc
        return result.rowcount > 0

    def set_password(self, user_id: int, hashed_password: str) -> bool:
        """Replace the stored password hash."""
        with self.engine.begin() as conn:
            result = conn.execute(
                users_table.update()
                .where(users_table.c.id == user_id)
                .values(hashed_password=hashed_password, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def apply_lockout_state(self, user_id: int, state: LockoutState) -> None:
        """Persist a lockout transition. Only the lockout columns are written."""
        with self.engine.begin() as conn:
            conn.execute(
                users_table.update()
                .where(users_table.c.id == user_id)
                .values(
                    login_attempts=state.login_attempts,
                    lock_until=_to_iso(state.lock_until),
                    last_failed_login=_to_iso(state.last_failed_login),
                )
            )

    def record_successful_login(self, user_id: int, now: datetime) -> None:
        """Clear failure counters and stamp last_login."""
        with self.engine.begin() as conn:
            conn.execute(
                users_table.update()
                .where(users_table.c.id == user_id)
                .values(login_attempts=0, lock_until=None, last_failed_login=None, last_login=_to_iso(now))
            )

    def update_last_login(self, user_id: int, now: datetime) -> None:
        """Stamp last_login without touching the lockout counters (OAuth sign-ins)."""
        with self.engine.begin() as conn:
            conn.execute(users_table.update().where(users_table.c.id == user_id).values(last_login=_to_iso(now)))

    def link_oauth(
        self,
        user_id: int,
        provider: str,
        subject: str,
        avatar: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Associate a provider identity with an existing account.

        The provider has verified the email, so the account's email is marked
        verified as part of the link.
        """
        values: dict = {
            "oauth_provider": provider,
            "oauth_subject": subject,
            "is_email_verified": True,
            "last_login": _to_iso(now or datetime.now(timezone.utc)),
            "updated_at": _now_iso(),
        }
        if avatar:
            values["avatar"] = avatar
        with self.engine.begin() as conn:
            conn.execute(users_table.update().where(users_table.c.id == user_id).values(**values))

    def update_oauth_tokens(
        self,
        user_id: int,
        access_token: str,
        refresh_token: str | None,
        expiry: datetime | None,
    ) -> None:
        """Store provider tokens. The refresh token is only overwritten when a new one is given."""
        values: dict = {"oauth_access_token": access_token, "oauth_token_expiry": _to_iso(expiry)}
        if refresh_token:
            values["oauth_refresh_token"] = refresh_token
        with self.engine.begin() as conn:
            conn.execute(users_table.update().where(users_table.c.id == user_id).values(**values))

    def delete_user(self, user_id: int) -> int:
        """Delete a user and all of their tasks. Returns the number of tasks removed.

        Both deletes run in one transaction, tasks first: either everything is
        gone or nothing is.
        """
        with self.engine.begin() as conn:
            tasks_deleted = conn.execute(tasks_table.delete().where(tasks_table.c.user_id == user_id)).rowcount
            conn.execute(users_table.delete().where(users_table.c.id == user_id))
        return tasks_deleted

    def clear_expired_locks(self, now: datetime | None = None) -> int:
        """Reset counters on accounts whose lock has already lapsed.

        Maintenance operation (python main.py clear-locks). Login would reset
        these lazily anyway; this keeps the table tidy. Returns rows updated.
        """
        now_iso = _to_iso(now or datetime.now(timezone.utc))
        with self.engine.begin() as conn:
            result = conn.execute(
                users_table.update()
                .where(users_table.c.lock_until.is_not(None) & (users_table.c.lock_until < now_iso))
                .values(login_attempts=0, lock_until=None)
            )
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        avatar=row.avatar,
        preferences=json.loads(row.preferences) if row.preferences else default_preferences(),
        is_email_verified=bool(row.is_email_verified),
        oauth_provider=row.oauth_provider,
        oauth_subject=row.oauth_subject,
        oauth_access_token=row.oauth_access_token,
        oauth_refresh_token=row.oauth_refresh_token,
        oauth_token_expiry=_from_iso(row.oauth_token_expiry),
        login_attempts=row.login_attempts or 0,
        lock_until=_from_iso(row.lock_until),
        last_failed_login=_from_iso(row.last_failed_login),
        last_login=_from_iso(row.last_login),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
