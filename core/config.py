"""
core/config.py -- Centralized configuration for the Whisper identity core via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead, or accept a
Settings instance as a constructor argument.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, two_factor_encryption_key ->
      TWO_FACTOR_ENCRYPTION_KEY).

  @model_validator(mode="after"): Cross-field validation once all fields are
      resolved. Dev mode generates missing keys with a warning; production
      mode refuses to start without them.

Security notes:
  SECRET_KEY signs access tokens. TWO_FACTOR_ENCRYPTION_KEY is hashed into the
  AES-256-GCM key that protects TOTP seeds at rest. Both must be at least 32
  characters. They are deliberately separate so rotating one does not break
  the other.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("whisper.config")

_MIN_KEY_LENGTH = 32


class Settings(BaseSettings):
    """Identity core settings loaded from environment variables and .env file.

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
    # Empty string is the sentinel for "not configured" for both keys.
    secret_key: str = ""
    two_factor_encryption_key: str = ""
    database_url: str = "sqlite:///whisper_identity.db"

    # ------------------------------------------------------------------
    # Credentials and sessions
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 900
    # bcrypt work factor. 12 is the production floor; tests drop to 4.
    bcrypt_rounds: int = Field(default=12, ge=4, le=16)
    refresh_token_days: int = Field(default=7, ge=1)
    email_token_minutes: int = Field(default=10, ge=1)

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    max_login_attempts: int = Field(default=5, ge=1)
    lockout_minutes: int = Field(default=15, ge=1)

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    totp_issuer: str = "Whisper"

    # ------------------------------------------------------------------
    # Outbound collaborators (empty string disables the transport)
    # ------------------------------------------------------------------

    mail_gateway_url: str = ""
    mail_api_key: str = ""
    mail_from: str = "Whisper <no-reply@whisper.app>"
    # URL template containing "{ip}", e.g. "https://ipapi.co/{ip}/json/"
    geo_lookup_url: str = ""
    app_base_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # HTTP boundary
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_keys(self) -> "Settings":
        """Enforce the key policy for SECRET_KEY and TWO_FACTOR_ENCRYPTION_KEY.

        Dev mode (DEBUG=true): auto-generate any missing key with a warning.
            Sessions and enrolled 2FA seeds will not survive a restart.

        Production mode: refuse to start if either key is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        for field_name in ("secret_key", "two_factor_encryption_key"):
            value = getattr(self, field_name)
            env_name = field_name.upper()
            if not value:
                if self.debug:
                    setattr(self, field_name, secrets.token_hex(32))
                    logger.warning("WARNING: Using auto-generated %s. Data keyed on it will not persist.", env_name)
                else:
                    raise ValueError(
                        f"{env_name} is required in production mode. "
                        f"Set {env_name} in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(getattr(self, field_name)) < _MIN_KEY_LENGTH:
                raise ValueError(f"{env_name} must be at least {_MIN_KEY_LENGTH} characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: construct Settings(...) directly and pass it where needed, or
    call get_settings.cache_clear() after changing environment variables.
    """
    return Settings()
