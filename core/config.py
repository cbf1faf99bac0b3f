"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Turnstile happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  Explicit injection: the token codec and the auth service receive a Settings
      instance at construction. They never read process state at call time,
      so tests can build their own Settings(...) without touching the env.

  @model_validator(mode="after"): cross-field validation of the two signing
      secrets once every field has been resolved.

Security notes:
  [S1] Access and refresh tokens are signed with two different secrets. A
       leaked access-signing key cannot mint refresh tokens, and vice versa.
       Equal secrets are rejected at startup.

  [S2] Secrets shorter than 32 chars are rejected outright.

  [S3] In production mode (DEBUG not set or false), a missing secret is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("turnstile.config")

_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `access_secret_key` reads from ACCESS_SECRET_KEY.
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
    database_url: str = "sqlite:///turnstile.db"
    # Upper bound on one request's unit of work; checked before each store call.
    transaction_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Token signing -- empty string means "not configured"
    # ------------------------------------------------------------------

    access_secret_key: str = ""
    refresh_secret_key: str = ""
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 60 * 60

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Background jobs
    # ------------------------------------------------------------------

    session_sweep_interval_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_keys(self) -> "Settings":
        """Enforce the signing-secret policy [S1][S2][S3].

        Dev mode (DEBUG=true): each missing secret is replaced by its own
            random value, with a warning. Tokens do not survive a restart.

        Production mode: refuse to start if either secret is missing.
        """
        for field in ("access_secret_key", "refresh_secret_key"):
            if getattr(self, field):
                continue
            if self.debug:
                setattr(self, field, secrets.token_hex(32))
                logger.warning(
                    "Using auto-generated %s. Issued tokens will not survive a restart.", field.upper()
                )
            else:
                raise ValueError(
                    f"{field.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )

        if len(self.access_secret_key) < _MIN_SECRET_LENGTH or len(self.refresh_secret_key) < _MIN_SECRET_LENGTH:
            raise ValueError(f"Signing secrets must be at least {_MIN_SECRET_LENGTH} characters.")
        if self.access_secret_key == self.refresh_secret_key:
            raise ValueError("ACCESS_SECRET_KEY and REFRESH_SECRET_KEY must be different.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
