"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads for Gatehouse happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or accept a Settings instance from the caller.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): field names map to env var names
      (e.g. access_token_ttl_seconds -> ACCESS_TOKEN_TTL_SECONDS).

  @model_validator(mode="after"): cross-field validation once every field is
      resolved (SECRET_KEY policy, signing key list, guard parameters).

The surface is fixed and enumerated. Nothing here is reconfigured while the
process is serving requests; a change means a restart.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected. It keys the HMAC used for
       refresh/reset token hashes and seeds the default signing key.

  [M7] Outside DEBUG mode a missing SECRET_KEY is a hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")


class Settings(BaseSettings):
    """Gatehouse settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in tests with
    only DEBUG=true (or an explicit secret_key) set.
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
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    database_url: str = "sqlite:///gatehouse.db"
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Signing keys
    # ------------------------------------------------------------------

    # "kid:secret,kid:secret", oldest first. The last entry signs new tokens.
    # Empty means a single key derived from SECRET_KEY.
    signing_keys: str = ""
    trusted_previous_keys: int = Field(default=2, ge=0)

    # ------------------------------------------------------------------
    # Token lifetimes
    # ------------------------------------------------------------------

    access_token_ttl_seconds: int = Field(default=300, gt=0)
    refresh_token_ttl_seconds: int = Field(default=14 * 24 * 3600, gt=0)
    clock_skew_seconds: int = Field(default=5, ge=0)

    # ------------------------------------------------------------------
    # Password hashing
    # ------------------------------------------------------------------

    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Brute-force guard
    # ------------------------------------------------------------------

    guard_max_attempts: int = Field(default=5, gt=0)
    guard_window_seconds: int = Field(default=900, gt=0)
    guard_base_lockout_seconds: int = Field(default=60, gt=0)
    guard_max_lockout_seconds: int = Field(default=3600, gt=0)
    guard_lockout_period_seconds: int = Field(default=24 * 3600, gt=0)
    # Global cap per principal across every origin.
    guard_principal_max_attempts: int = Field(default=20, gt=0)

    # ------------------------------------------------------------------
    # MFA and password reset
    # ------------------------------------------------------------------

    mfa_code_ttl_seconds: int = Field(default=300, gt=0)
    mfa_max_attempts: int = Field(default=3, gt=0)
    reset_token_ttl_seconds: int = Field(default=900, gt=0)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    storage_timeout_seconds: float = Field(default=5.0, gt=0)
    issuance_retry_attempts: int = Field(default=3, ge=1)
    issuance_retry_backoff_seconds: float = Field(default=0.05, ge=0)
    session_retention_seconds: int = Field(default=7 * 24 * 3600, ge=0)
    purge_interval_seconds: int = Field(default=6 * 3600, gt=0)

    # ------------------------------------------------------------------
    # RBAC
    # ------------------------------------------------------------------

    role_cache_size: int = Field(default=256, gt=0)
    # 0 reads the catalog version on every check, so role edits apply at once.
    role_catalog_refresh_seconds: float = Field(default=0.0, ge=0)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive a restart.

        Production mode: refuse to start without SECRET_KEY.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Tokens will not survive a restart."
                )
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
    def validate_guard(self) -> "Settings":
        """Reject guard parameters that would make the backoff meaningless."""
        if self.guard_max_lockout_seconds < self.guard_base_lockout_seconds:
            raise ValueError("GUARD_MAX_LOCKOUT_SECONDS must be >= GUARD_BASE_LOCKOUT_SECONDS.")
        if self.guard_principal_max_attempts < self.guard_max_attempts:
            raise ValueError("GUARD_PRINCIPAL_MAX_ATTEMPTS must be >= GUARD_MAX_ATTEMPTS.")
        return self

    @model_validator(mode="after")
    def validate_signing_keys(self) -> "Settings":
        """Parse SIGNING_KEYS eagerly so a malformed list fails at startup."""
        self.parsed_signing_keys()
        return self

    def parsed_signing_keys(self) -> list[tuple[str, str]]:
        """Return [(kid, secret), ...] oldest first.

        Each secret must be at least 32 characters, for the same reason as
        SECRET_KEY. Duplicate key ids are rejected: the registry is
        append-only and a kid must identify exactly one key.
        """
        if not self.signing_keys.strip():
            return [("k0", self.secret_key)]
        pairs: list[tuple[str, str]] = []
        seen: set[str] = set()
        for entry in self.signing_keys.split(","):
            entry = entry.strip()
            if not entry:
                continue
            kid, sep, secret = entry.partition(":")
            if not sep or not kid or not secret:
                raise ValueError("SIGNING_KEYS entries must look like 'kid:secret'.")
            if len(secret) < 32:
                raise ValueError(f"Signing key {kid!r} must be at least 32 characters.")
            if kid in seen:
                raise ValueError(f"Duplicate signing key id {kid!r}.")
            seen.add(kid)
            pairs.append((kid, secret))
        if not pairs:
            raise ValueError("SIGNING_KEYS is set but contains no keys.")
        return pairs


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
