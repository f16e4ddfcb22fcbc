"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AuthGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. provider_url -> PROVIDER_URL).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates a SECRET_KEY with a warning, production
      mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It signs the
       server-side session cookie that carries the PKCE verifier between
       /login/oauth/{provider} and /auth/callback.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")


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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = "sqlite:///authgate.db"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Identity provider (GoTrue-style REST API)
    # ------------------------------------------------------------------

    provider_url: str = ""
    provider_anon_key: str = ""
    # Service credential: bypasses row-level rules on the provider side and
    # authorizes the admin user lookup. Server-side only.
    provider_service_key: str = ""
    # HS256 secret the provider signs its JWTs with. Used only to verify
    # service credentials presented to the identity webhook.
    provider_jwt_secret: str = ""
    provider_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Auth flows
    # ------------------------------------------------------------------

    site_url: str = "http://localhost:8000"
    oauth_providers: list[str] = ["google", "github"]
    enable_email_login: bool = True
    password_min_length: int = 8
    secure_cookies: bool = False
    # Lifetime of the token cookies. The provider decides when the access
    # token itself expires; the refresh token keeps the browser signed in.
    session_max_age_seconds: int = 7 * 24 * 60 * 60
    elevated_roles: list[str] = ["service_role"]
    reset_password_path: str = "/auth/reset-password"

    # ------------------------------------------------------------------
    # OAuth callback landing
    # ------------------------------------------------------------------

    callback_path: str = "/auth/callback"
    callback_success_redirect: str = "/"
    callback_failure_redirect: str = "/login"
    # Seconds the outcome stays visible before the browser navigates away.
    callback_success_delay: float = 1.5
    callback_failure_delay: float = 3.0

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "5/minute"
    rate_limit_storage_uri: str = "memory://"

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def callback_url(self) -> str:
        """Absolute redirect target handed to the provider for OAuth and e-mail links."""
        return f"{self.site_url.rstrip('/')}{self.callback_path}"

    @property
    def reset_password_url(self) -> str:
        return f"{self.site_url.rstrip('/')}{self.reset_password_path}"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            OAuth flows in flight during a restart will fail their PKCE
            exchange and fall back to session lookup -- acceptable locally.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Pending OAuth sign-ins will not survive a restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


def validate_provider_config(settings: Settings) -> list[str]:
    """Return the names of required identity provider settings that are empty.

    The API starts without them (tests and local UI work do not need a live
    provider) but lifespan logs a warning so a misconfigured deployment is
    obvious in the first lines of output.
    """
    required = {
        "PROVIDER_URL": settings.provider_url,
        "PROVIDER_ANON_KEY": settings.provider_anon_key,
        "PROVIDER_SERVICE_KEY": settings.provider_service_key,
    }
    return [name for name, value in required.items() if not value]


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
