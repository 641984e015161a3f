"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for ClinicGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): cross-field validation once every field is
      resolved. Implements the DEBUG-conditional SECRET_KEY rule and the
      bootstrap-admin completeness rule.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the HMAC over session tokens both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key in production would silently log
       every user out on each restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("clinicgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'clinicgate_auth.db'}"


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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Bearer tokens and session rows
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # Bearer tokens are short-lived; there is no refresh chaining.
    token_expire_seconds: int = 3600
    # Session rows outlive the bearer token (7 days) so the device list stays
    # meaningful across re-logins.
    session_expire_seconds: int = 7 * 24 * 3600
    # When true, a bearer token is accepted only while the session row it was
    # minted with still exists.
    enforce_session_rows: bool = False
    session_purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------

    invite_expire_days: int = 7
    invite_email_cooldown_seconds: int = 300

    # ------------------------------------------------------------------
    # Bootstrap admin (optional -- all three or none)
    # ------------------------------------------------------------------

    admin_username: str = ""
    admin_email: str = ""
    admin_password: str = ""

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
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
    def validate_lifetimes(self) -> "Settings":
        """Reject zero or negative lifetimes; every expiry is computed from these."""
        for name in ("token_expire_seconds", "session_expire_seconds", "invite_expire_days"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be a positive integer.")
        if self.invite_email_cooldown_seconds < 0:
            raise ValueError("INVITE_EMAIL_COOLDOWN_SECONDS must not be negative.")
        return self

    @model_validator(mode="after")
    def validate_bootstrap_admin(self) -> "Settings":
        """ADMIN_USERNAME, ADMIN_EMAIL and ADMIN_PASSWORD are set together or not at all."""
        provided = [bool(self.admin_username), bool(self.admin_email), bool(self.admin_password)]
        if any(provided) and not all(provided):
            raise ValueError("ADMIN_USERNAME, ADMIN_EMAIL and ADMIN_PASSWORD must be set together.")
        return self

    @property
    def bootstrap_admin_configured(self) -> bool:
        return bool(self.admin_username and self.admin_email and self.admin_password)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
