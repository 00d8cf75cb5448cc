"""
core/config.py -- Centralized service configuration via pydantic-settings.

All environment variable reads for the identity service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Only the composition roots (api/main.py lifespan and the CLI in main.py) call
get_settings(). The auth components receive the values they need through
their constructors, so the signing secret never becomes ambient global state
inside auth/ and every component can be built in isolation by tests.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Access-token
       signing (HS256) and refresh-token hashing (HMAC-SHA256) both rely on
       key entropy -- a short key weakens both.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random per-process key would invalidate every
       access token and every stored refresh token on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("identity.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'identity.db'}"


class Settings(BaseSettings):
    """Service settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Field names map to upper-cased
    environment variables (secret_key -> SECRET_KEY).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    service_name: str = "identity-service"
    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Session lifetimes
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 3600
    # Hardening switch: a replayed refresh token revokes every live session
    # of its owner. Off by default -- a logout followed by a stale retry from
    # another tab would otherwise sign the user out everywhere.
    revoke_sessions_on_reuse: bool = False

    # ------------------------------------------------------------------
    # Federated login (Google ID tokens by default)
    # ------------------------------------------------------------------

    # Empty string disables federated login.
    google_client_id: str = ""
    federated_issuers: list[str] = ["https://accounts.google.com", "accounts.google.com"]
    federated_jwks_url: str = "https://www.googleapis.com/oauth2/v3/certs"
    federated_jwks_ttl_seconds: int = 3600

    # ------------------------------------------------------------------
    # HTTP delivery
    # ------------------------------------------------------------------

    # Empty string disables the X-Internal-API-Key guard.
    internal_api_key: str = ""
    secure_cookies: bool = False
    login_rate_limit: str = "10/minute"
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start without one.
        Both modes: reject keys shorter than 32 characters.
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
    def validate_lifetimes(self) -> "Settings":
        """Access tokens must expire before the refresh tokens that renew them."""
        if self.access_token_expire_seconds <= 0 or self.refresh_token_expire_seconds <= 0:
            raise ValueError("Token lifetimes must be positive.")
        if self.access_token_expire_seconds >= self.refresh_token_expire_seconds:
            raise ValueError("ACCESS_TOKEN_EXPIRE_SECONDS must be shorter than REFRESH_TOKEN_EXPIRE_SECONDS.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
