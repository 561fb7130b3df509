"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for keyfob happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead.

Values come from the environment (and an optional .env file) through
pydantic-settings; field names map to upper-case variables, so
access_token_expire_seconds is ACCESS_TOKEN_EXPIRE_SECONDS. get_settings()
caches one instance per process.

The signing secret is read here and handed to TokenMinter by the api/main.py
lifespan. Nothing in auth/ reads settings at import time.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT HS256 signing
       relies on key entropy -- a short key weakens every token we issue.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. Downstream validators share this key, so a random
       one would silently break every resource server.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger("keyfob.config")

MIN_SECRET_LENGTH = 32

# Access tokens live exactly one hour. Resource servers assume this value.
ACCESS_TOKEN_TTL_SECONDS = 3600

DEFAULT_ALLOWED_ROLES = ["admin", "dispatcher", "booker", "driver"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.

    List fields (ALLOWED_ROLES, ALLOWED_CLIENT_IDS) accept a comma-separated
    string, e.g. ALLOWED_ROLES=admin,driver.
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
    database_url: str = "sqlite:///keyfob_auth.db"

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = ACCESS_TOKEN_TTL_SECONDS
    # 0 = refresh tokens never expire; they live until redeemed or restart.
    refresh_token_expire_seconds: int = 0
    # "memory" keeps refresh tokens in-process (lost on restart);
    # "sql" persists them in database_url.
    refresh_store: Literal["memory", "sql"] = "memory"
    purge_interval_seconds: int = 15 * 60
    default_scope: str = "api offline_access"
    # Empty list disables the client_id check on the token endpoint.
    allowed_client_ids: Annotated[list[str], NoDecode] = []

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    allowed_roles: Annotated[list[str], NoDecode] = list(DEFAULT_ALLOWED_ROLES)

    # ------------------------------------------------------------------
    # Lockout (enforced by the identity store, read by the authenticator)
    # ------------------------------------------------------------------

    max_failed_attempts: int = 5
    lockout_seconds: int = 15 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("allowed_roles", "allowed_client_ids", mode="before")
    @classmethod
    def split_csv(cls, value):
        """Accept "a,b,c" from the environment as well as a real list."""
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("allowed_roles")
    @classmethod
    def normalize_roles(cls, value: list[str]) -> list[str]:
        """Role names are case-insensitive; the canonical form is lower-case."""
        seen: list[str] = []
        for role in value:
            canonical = role.strip().lower()
            if canonical and canonical not in seen:
                seen.append(canonical)
        return seen

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

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
        if len(self.secret_key) < MIN_SECRET_LENGTH:
            raise ValueError(f"SECRET_KEY must be at least {MIN_SECRET_LENGTH} characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Process-wide Settings. Tests that change the environment call
    get_settings.cache_clear() first.
    """
    return Settings()
