"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for authcore happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning, production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and the
  session-token digest both rely on key entropy.

  PREVIOUS_SECRET_KEYS holds retired signing keys as a JSON list, e.g.
      [{"kid": "k1", "secret": "...", "retired_at": 1767225600}]
  Tokens signed with a retired key verify until retired_at + KEY_OVERLAP_SECONDS.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authcore.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'authcore.db'}"


class RetiredKey(BaseModel):
    """A signing key that has been rotated out but may still verify tokens."""

    kid: str
    secret: str
    retired_at: float


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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
    db_url: str = _DEFAULT_DB_URL
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    secret_key_id: str = "primary"
    previous_secret_keys: list[RetiredKey] = []
    key_overlap_seconds: int = 24 * 3600

    # ------------------------------------------------------------------
    # Token and session lifetimes
    # ------------------------------------------------------------------

    # Upper bound on how long a role change or revocation can lag for a
    # stateless access token.
    access_token_ttl_seconds: int = 900
    refresh_token_ttl_seconds: int = 7 * 24 * 3600
    session_ttl_seconds: int = 7 * 24 * 3600
    clock_skew_leeway_seconds: int = 5

    # ------------------------------------------------------------------
    # Password hashing and worker pools
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    hash_workers: int = 4
    io_workers: int = 16
    storage_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_max_attempts: int = 5
    login_window_seconds: int = 300
    rate_limit_max_keys: int = 10_000
    # Coarse per-IP flood guard enforced by slowapi in front of the route.
    login_http_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Cookies, registration and housekeeping
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_cookie_name: str = "session"
    self_registration_enabled: bool = True
    # Roles granted to self-registered accounts. Clients never pick their roles.
    default_roles: list[str] = ["viewer"]
    sweep_interval_seconds: int = 15 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions and tokens will not survive restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters, including
            retired keys kept for rotation.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        for retired in self.previous_secret_keys:
            if len(retired.secret) < 32:
                raise ValueError(f"Retired key {retired.kid!r} must be at least 32 characters.")
            if retired.kid == self.secret_key_id:
                raise ValueError(f"Retired key id {retired.kid!r} collides with SECRET_KEY_ID.")
        if self.bcrypt_rounds < 4 or self.bcrypt_rounds > 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        if self.login_max_attempts < 1 or self.login_window_seconds < 1:
            raise ValueError("LOGIN_MAX_ATTEMPTS and LOGIN_WINDOW_SECONDS must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly, except tests that need a specific configuration.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
