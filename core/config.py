"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for JYDoc happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. session_idle_timeout -> SESSION_IDLE_TIMEOUT).

  @model_validator(mode="after"): cross-field validation once every field is
      resolved. Used for the DEBUG-conditional SECRET_KEY rule and to pin the
      single-session policy.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session keys are
       HMAC-SHA256(SECRET_KEY, token); a short key weakens that mapping.

  [M7] In production mode a missing SECRET_KEY is a hard startup failure.
       A random per-process key would orphan every stored session on restart.

Layer rule: core/ is the kernel. This module may not import from api/, auth/
or sessions/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("jydoc.config")

_DATA_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = f"sqlite:///{_DATA_DIR / 'auth' / 'jydoc_auth.db'}"
    session_db_path: str = str(_DATA_DIR / "sessions" / "jydoc_sessions.db")
    # Busy timeout for every SQLite connection. Exceeding it raises
    # StoreUnavailable instead of blocking the request.
    store_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Credential policy
    # ------------------------------------------------------------------

    username_min_length: int = 3
    username_max_length: int = 20
    password_min_length: int = 6
    # bcrypt only looks at the first 72 bytes.
    password_max_length: int = Field(default=72, le=72)
    password_complexity_regex: str = r"(?s)^(?=.*[A-Za-z])(?=.*\d).+$"
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Authorities
    # ------------------------------------------------------------------

    default_authority_name: str = "ROLE_USER"
    admin_authority_name: str = "ROLE_ADMIN"
    bootstrap_authorities: list[str] = ["ROLE_USER", "ROLE_ADMIN", "ROLE_MODERATOR"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_idle_timeout: int = Field(default=1800, gt=0)
    max_active_sessions_per_identity: int = 1
    session_cookie_name: str = "session_token"
    secure_cookies: bool = False
    session_purge_interval: int = 600

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start without one.
        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not survive a restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_session_policy(self) -> "Settings":
        """Only the single-session policy is supported."""
        if self.max_active_sessions_per_identity != 1:
            raise ValueError("MAX_ACTIVE_SESSIONS_PER_IDENTITY is fixed at 1.")
        if self.password_min_length < 1 or self.password_min_length > self.password_max_length:
            raise ValueError("PASSWORD_MIN_LENGTH must be between 1 and PASSWORD_MAX_LENGTH.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or build Settings(...) directly
    and pass it to the services.
    """
    return Settings()
