"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionGate happen here. No module should
call os.getenv() or os.environ.get() directly, and nothing under auth/
calls get_settings() itself: the API layer and the CLI read the
Settings object once and pass it (or the individual secrets) into the
TokenService, EncryptionService, DevicePairingFlow and SessionJanitor
constructors.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. refresh_secret_key -> REFRESH_SECRET_KEY).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates missing secrets with a warning,
      production mode refuses to start without them.

Security notes:
  [M6] Signing keys shorter than 32 chars are rejected outright.
  [M7] In production mode a missing secret is a hard startup failure.
  [K1] Access and refresh tokens must be signed with distinct keys. A
       configuration that reuses one key for both is rejected at startup.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessiongate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'sessiongate.db'}"

_MIN_KEY_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true).
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
    database_url: str = _DEFAULT_DB_URL
    app_base_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Secrets. Empty string is the sentinel for "not configured"; the
    # validator below either generates a dev value or raises.
    # ------------------------------------------------------------------

    secret_key: str = ""
    refresh_secret_key: str = ""
    encryption_key: str = ""
    # Empty means the maintenance endpoint accepts unauthenticated sweeps.
    internal_api_secret: str = ""

    # ------------------------------------------------------------------
    # Token and session lifetimes
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 3600
    refresh_token_expire_seconds: int = 30 * 24 * 3600
    rotate_refresh_tokens: bool = False
    pairing_code_ttl_seconds: int = 300
    session_retention_days: int = 30
    sweep_interval_seconds: int = 6 * 3600

    # ------------------------------------------------------------------
    # HTTP boundary
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    login_rate_limit: str = "10/minute"
    rate_limit_storage_uri: str = "memory://"
    # JSON list in the environment, e.g. ALLOWED_HOSTS='["api.example.com"]'
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the secret policy [M6][M7][K1].

        Dev mode (DEBUG=true): each missing secret is auto-generated with a
            warning. Tokens and stored ciphertext will not survive a restart.

        Production mode: refuse to start if any secret is missing.
        """
        for name in ("secret_key", "refresh_secret_key", "encryption_key"):
            if getattr(self, name):
                continue
            env_name = name.upper()
            if not self.debug:
                raise ValueError(
                    f"{env_name} is required in production mode. "
                    f"Set {env_name} in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, name, secrets.token_hex(32))
            logger.warning(
                "WARNING: Using auto-generated %s. " "Values signed or encrypted with it will not persist across restarts.",
                env_name,
            )

        if len(self.secret_key) < _MIN_KEY_LENGTH:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if len(self.refresh_secret_key) < _MIN_KEY_LENGTH:
            raise ValueError("REFRESH_SECRET_KEY must be at least 32 characters.")
        if self.secret_key == self.refresh_secret_key:
            raise ValueError("SECRET_KEY and REFRESH_SECRET_KEY must be different.")

        self.app_base_url = self.app_base_url.rstrip("/")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    Called only from the api/ layer (app wiring, per-request cookie and rate-limit
    options) and the main.py CLI; auth/ receives values through constructors.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
