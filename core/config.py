"""
core/config.py -- authguard settings, read once from the environment.

Every tunable in the service lives on Settings: token lifetimes, lockout
policy, code TTLs, suspicion scoring, SMTP, the audit queue and the first-run
superadmin. Values come from environment variables (SECRET_KEY, LOCKOUT_MINUTES,
...) or a .env file in the working directory; pydantic-settings handles the
name mapping and type coercion.

get_settings() caches one Settings instance for the process. Services take a
Settings argument instead of calling it themselves wherever a test may need
different values.

Startup checks (model validators):
  SECRET_KEY  signs every JWT. Missing in DEBUG mode -> a random dev key and a
              warning; missing otherwise -> refuse to start; fewer than 32
              characters -> refuse to start.
  MFA codes   must live between 5 and 10 minutes.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
devices/, audit/, or notify/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authguard.config")


class Settings(BaseSettings):
    """Every field has a default, so Settings(debug=True) works with an empty environment."""

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
    app_name: str = "authguard"
    database_url: str = "sqlite:///authguard.db"

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # Access tokens are stateless (no revocation list), so the TTL bounds the
    # compromise window. Keep it short.
    access_token_expire_seconds: int = 900
    refresh_token_expire_seconds: int = 7 * 24 * 3600

    # ------------------------------------------------------------------
    # Lockout and one-time codes
    # ------------------------------------------------------------------

    lockout_threshold: int = 5
    lockout_minutes: int = 15
    mfa_code_ttl_seconds: int = 300
    reset_code_ttl_seconds: int = 900
    verification_code_ttl_seconds: int = 24 * 3600

    # ------------------------------------------------------------------
    # Suspicious-login scoring
    # ------------------------------------------------------------------

    suspicion_window: int = 5
    suspicion_threshold: int = 50

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    rate_limit_enabled: bool = True

    # ------------------------------------------------------------------
    # Outbound mail (empty smtp_host = log-only dev mode)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = ""
    mail_from_name: str = "authguard"

    # ------------------------------------------------------------------
    # Audit handoff
    # ------------------------------------------------------------------

    audit_queue_size: int = 1000
    audit_max_retries: int = 3
    audit_retry_backoff_seconds: float = 0.5

    # ------------------------------------------------------------------
    # First-run bootstrap (all three must be set to take effect)
    # ------------------------------------------------------------------

    bootstrap_superadmin_email: str = ""
    bootstrap_superadmin_username: str = ""
    bootstrap_superadmin_password: str = ""

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
        """Generate a dev key under DEBUG, otherwise require one of at least 32 characters."""
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
    def validate_code_lifetimes(self) -> "Settings":
        """MFA codes live between 5 and 10 minutes; everything else must be positive."""
        if not 300 <= self.mfa_code_ttl_seconds <= 600:
            raise ValueError("MFA_CODE_TTL_SECONDS must be between 300 and 600.")
        if self.lockout_threshold < 1 or self.lockout_minutes < 1:
            raise ValueError("Lockout threshold and duration must be positive.")
        return self

    @property
    def bootstrap_enabled(self) -> bool:
        return bool(
            self.bootstrap_superadmin_email and self.bootstrap_superadmin_username and self.bootstrap_superadmin_password
        )


@lru_cache
def get_settings() -> Settings:
    """Process-wide Settings. Tests that change the environment must call get_settings.cache_clear()."""
    return Settings()
