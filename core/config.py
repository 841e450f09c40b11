"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for TodoMaster happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. SECRET_KEY and DATABASE_URL are both
      mandatory in production; dev mode (DEBUG=true) fills them in with a
      warning.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing
       relies on key entropy -- a short key weakens every issued token.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY or
       DATABASE_URL is a hard startup failure. These are configuration errors,
       not something the running process can recover from.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or security/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("todomaster.config")

_DEV_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'todomaster_dev.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `secret_key` reads from SECRET_KEY, `lockout_threshold` from
    LOCKOUT_THRESHOLD.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either fills a dev value or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = ""

    # ------------------------------------------------------------------
    # Tokens and lockout
    # ------------------------------------------------------------------

    # 7 days, matching the frontend's "stay signed in" expectation.
    token_expire_seconds: int = 7 * 24 * 60 * 60
    lockout_threshold: int = 5
    lockout_duration_seconds: int = 2 * 60 * 60

    # ------------------------------------------------------------------
    # OAuth (optional -- empty string means the provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    frontend_url: str = "http://localhost:3001"
    oauth_state_ttl_seconds: int = 600
    oauth_timeout_seconds: float = 10.0
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Security monitor
    # ------------------------------------------------------------------

    security_log_dir: str = "logs"
    security_report_interval_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    auth_rate_limit: str = "50 per 15 minutes"
    allowed_origins: list[str] = [
        "http://localhost:3000",
        "http://localhost:3001",
        "http://localhost:5173",
    ]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_required(self) -> "Settings":
        """Enforce SECRET_KEY and DATABASE_URL policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate a random key and fall back to a
            local SQLite file, each with a warning. Tokens will not survive a
            restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if either
            value is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Issued tokens will not survive a restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")

        if not self.database_url:
            if self.debug:
                self.database_url = _DEV_DB_URL
                logger.warning("DATABASE_URL not set -- using local SQLite database %s", _DEV_DB_URL)
            else:
                raise ValueError("DATABASE_URL is required in production mode.")

        if self.lockout_threshold < 1:
            raise ValueError("LOCKOUT_THRESHOLD must be at least 1.")
        return self

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
