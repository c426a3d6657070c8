"""
Security configuration settings.

Loaded from environment variables with the STOREGUARD_ prefix (and an
optional .env file).

Environment Variables:
    STOREGUARD_AUTH_MAX_ATTEMPTS: Attempts allowed per auth window
    STOREGUARD_AUTH_WINDOW_SECONDS: Auth rate-limit window
    STOREGUARD_CHECKOUT_MAX_ATTEMPTS: Attempts allowed per checkout window
    STOREGUARD_CHECKOUT_WINDOW_SECONDS: Checkout rate-limit window
    STOREGUARD_AUTH_BLOCK_SECONDS: First lockout after exceeding the auth limit
    STOREGUARD_ADMIN_MAX_ATTEMPTS / _ADMIN_WINDOW_SECONDS / _ADMIN_BLOCK_SECONDS
    STOREGUARD_IP_BLOCK_SECONDS: Global block for abusive client IPs
    STOREGUARD_RATE_LIMIT_PRUNE_INTERVAL: Limiter calls between sweeps
    STOREGUARD_TOTP_ISSUER: Issuer shown in authenticator apps
    STOREGUARD_TOTP_DIGITS / _TOTP_PERIOD / _TOTP_ALGORITHM / _TOTP_DRIFT_STEPS
    STOREGUARD_SESSION_TIMEOUT_SECONDS: Idle timeout
    STOREGUARD_SESSION_WARNING_SECONDS: Warn this long before the timeout
    STOREGUARD_SECRET_ENCRYPTION_KEY: Hex AES-256 key for 2FA secrets at rest
    STOREGUARD_EVENT_HISTORY_SIZE: Security events kept in memory
    STOREGUARD_LOG_LEVEL: Root log level
"""

import logging
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SecuritySettings(BaseSettings):
    """
    Security policy for the authentication core.

    Example:
        >>> settings = SecuritySettings(_env_file=None)
        >>> settings.auth_max_attempts, settings.auth_window_seconds
        (5, 900.0)
    """

    model_config = SettingsConfigDict(
        env_prefix="STOREGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Rate limiting: credential-sensitive actions
    auth_max_attempts: int = Field(default=5, ge=1)
    auth_window_seconds: float = Field(default=15 * 60.0, gt=0)

    # Rate limiting: checkout actions
    checkout_max_attempts: int = Field(default=3, ge=1)
    checkout_window_seconds: float = Field(default=5 * 60.0, gt=0)

    # Progressive lockout (AdvancedRateLimiter)
    auth_block_seconds: float = Field(default=15 * 60.0, gt=0)
    admin_max_attempts: int = Field(default=10, ge=1)
    admin_window_seconds: float = Field(default=10 * 60.0, gt=0)
    admin_block_seconds: float = Field(default=30 * 60.0, gt=0)
    ip_block_seconds: float = Field(default=60 * 60.0, gt=0)

    # Expired windows are swept every this many limiter calls
    rate_limit_prune_interval: int = Field(default=1000, ge=1)

    # TOTP (RFC 6238 defaults)
    totp_issuer: str = Field(default="StoreGuard", min_length=1)
    totp_digits: int = Field(default=6, ge=6, le=8)
    totp_period: int = Field(default=30, ge=1)
    totp_algorithm: str = Field(default="SHA1")
    totp_drift_steps: int = Field(default=1, ge=0, le=2)

    # Idle session handling
    session_timeout_seconds: float = Field(default=30 * 60.0, gt=0)
    session_warning_seconds: float = Field(default=5 * 60.0, ge=0)

    secret_encryption_key: Optional[str] = Field(
        default=None,
        repr=False,  # never log key material
        description="Hex-encoded 32-byte key for encrypting 2FA secrets",
    )

    # Events kept in memory by SecurityEventLogger
    event_history_size: int = Field(default=1000, ge=1)

    log_level: str = Field(default="INFO")

    @field_validator("totp_algorithm")
    @classmethod
    def _check_algorithm(cls, value: str) -> str:
        value = value.upper()
        if value not in ("SHA1", "SHA256", "SHA512"):
            raise ValueError("totp_algorithm must be SHA1, SHA256 or SHA512")
        return value

    @field_validator("secret_encryption_key")
    @classmethod
    def _check_key(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            raw = bytes.fromhex(value)
        except ValueError as exc:
            raise ValueError("secret_encryption_key must be hex encoded") from exc
        if len(raw) != 32:
            raise ValueError("secret_encryption_key must decode to 32 bytes")
        return value

    def encryption_key_bytes(self) -> Optional[bytes]:
        """Raw encryption key, or None when not configured."""
        if self.secret_encryption_key is None:
            return None
        return bytes.fromhex(self.secret_encryption_key)


@lru_cache(maxsize=1)
def get_settings() -> SecuritySettings:
    """
    Get the process-wide SecuritySettings instance.

    Clear with ``get_settings.cache_clear()`` in tests.
    """
    return SecuritySettings()


def configure_logging(settings: Optional[SecuritySettings] = None) -> None:
    """Configure root logging from settings."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
