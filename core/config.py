"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for gatekeeper happen here. No module should
call os.getenv() or os.environ.get() directly. The application factory takes
a Settings instance and hands the relevant values to each component at
construction time, so components never reach for configuration themselves.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Only the
      process entry points (asgi.py, main.py) call it; tests build Settings(...)
      directly and pass it in.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_secret_key -> ACCESS_SECRET_KEY).

  @model_validator(mode="after"): Cross-field validation of the two signing
      keys. Dev mode generates missing keys with a warning, production mode
      refuses to start without them.

Security notes:
  Keys shorter than 32 chars are rejected outright. HS256 signing relies on
  key entropy -- a short key weakens every token of that class.

  The access and refresh keys must differ. Compromise of one key must not
  let an attacker forge the other token class.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, admission/, or audit/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatekeeper.config")

_MIN_KEY_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true, or with both
    keys passed explicitly).
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
    log_level: str = "INFO"
    version: str = "1.0.0"

    # ------------------------------------------------------------------
    # Token signing
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The validator
    # below either generates a dev key or raises, so callers never see "".
    access_secret_key: str = ""
    refresh_secret_key: str = ""
    token_issuer: str = "gatekeeper"
    token_audience: str = "gatekeeper-operators"
    access_token_expire_seconds: int = Field(default=15 * 60, gt=0)
    refresh_token_expire_seconds: int = Field(default=7 * 24 * 60 * 60, gt=0)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    # bcrypt accepts 4..31. Tests drop this to 4 to keep the suite fast.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    operator_role: str = "admin"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///gatekeeper.db"
    database_timeout_seconds: float = Field(default=30.0, gt=0)
    # 0 disables the background sweep (tests, one-shot CLI runs).
    token_sweep_interval_seconds: int = Field(default=60 * 60, ge=0)

    # ------------------------------------------------------------------
    # Admission control
    # ------------------------------------------------------------------

    general_rate_limit: str = "100 per 15 minutes"
    auth_rate_limit: str = "10 per 15 minutes"
    operator_rate_limit: str = "200 per 15 minutes"
    auth_slowdown_after: int = Field(default=3, ge=0)
    auth_slowdown_step_ms: int = Field(default=500, ge=0)
    auth_slowdown_max_ms: int = Field(default=20_000, ge=0)
    # Counters are ephemeral: memory:// loses them on restart (accepted).
    rate_limit_storage_uri: str = "memory://"
    # Peers whose X-Forwarded-For / X-Real-IP headers are believed.
    trusted_proxies: list[str] = Field(default_factory=lambda: ["127.0.0.1", "::1"])

    # ------------------------------------------------------------------
    # Session hardening
    # ------------------------------------------------------------------

    # When true, presenting an already-rotated refresh token revokes every
    # session of its owner (theft signal). Off by default.
    refresh_reuse_revokes_all: bool = False

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    # Host header allowlist for TrustedHostMiddleware. "*" accepts any host.
    allowed_hosts: list[str] = Field(default_factory=lambda: ["*"])

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_keys(self) -> "Settings":
        """Enforce the signing key policy.

        Dev mode (DEBUG=true): auto-generate any missing key with a warning.
            Tokens will not survive a restart -- acceptable for local dev.

        Production mode: refuse to start if either key is missing.

        Both modes: reject keys shorter than 32 characters and reject a
            configuration where both token classes share one key.
        """
        for field in ("access_secret_key", "refresh_secret_key"):
            if getattr(self, field):
                continue
            if not self.debug:
                raise ValueError(
                    f"{field.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, field, secrets.token_hex(32))
            logger.warning("Using auto-generated %s. Tokens will not persist across restarts.", field.upper())

        if len(self.access_secret_key) < _MIN_KEY_LENGTH or len(self.refresh_secret_key) < _MIN_KEY_LENGTH:
            raise ValueError(f"Signing keys must be at least {_MIN_KEY_LENGTH} characters.")
        if self.access_secret_key == self.refresh_secret_key:
            raise ValueError("ACCESS_SECRET_KEY and REFRESH_SECRET_KEY must be different.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings instance for entry points.

    In tests: build Settings(...) directly, or call get_settings.cache_clear()
    between test cases if you need to inject different environment variables.
    """
    return Settings()
