"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for identity-core happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates missing signing secrets with a warning,
      production mode refuses to start without them.

Security notes:
  [S1] One signing secret per token purpose. A leaked access-token secret must
       not let an attacker forge password-reset or email-verification tokens,
       so the validator also rejects a secret reused across purposes.

  [S2] Secrets shorter than 32 chars are rejected outright. HS256 signing
       relies on key entropy -- a short key weakens every token.

  [S3] bcrypt cost below 10 is rejected. The work factor is a deployment
       decision, never a per-call one.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("identitycore.config")

# Field names of the per-purpose signing secrets, in TokenPurpose order.
SECRET_FIELDS = (
    "access_token_secret",
    "refresh_token_secret",
    "password_reset_token_secret",
    "email_verification_token_secret",
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings(debug=True) can be instantiated in
    test environments without a real .env file.
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
    database_url: str = "sqlite:///identitycore.db"
    # Base URL of the front end; reset and verification links point here.
    app_base_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Token signing -- empty string means "not configured" [S1]
    # ------------------------------------------------------------------

    access_token_secret: str = ""
    refresh_token_secret: str = ""
    password_reset_token_secret: str = ""
    email_verification_token_secret: str = ""

    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 3600
    password_reset_token_expire_seconds: int = 3600
    email_verification_token_expire_seconds: int = 24 * 3600

    # ------------------------------------------------------------------
    # Credentials and audit
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    # True: an audit write failure is logged and the request still succeeds.
    # False: the failure aborts the request with 503.
    audit_fail_open: bool = True

    # ------------------------------------------------------------------
    # HTTP adapter
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-secret and work-factor policy [S1][S2][S3].

        Dev mode (DEBUG=true): auto-generate each missing secret with a
            warning. Tokens will not survive a restart.

        Production mode: refuse to start if any secret is missing.
        """
        for name in SECRET_FIELDS:
            if getattr(self, name):
                continue
            if not self.debug:
                raise ValueError(
                    f"{name.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, name, secrets.token_hex(32))
            logger.warning("Using auto-generated %s. Tokens will not persist across restarts.", name.upper())

        values = [getattr(self, name) for name in SECRET_FIELDS]
        if any(len(v) < 32 for v in values):
            raise ValueError("Token signing secrets must be at least 32 characters.")
        if len(set(values)) != len(values):
            raise ValueError("Each token purpose needs its own signing secret.")
        if self.bcrypt_rounds < 10:
            raise ValueError("BCRYPT_ROUNDS must be at least 10.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
