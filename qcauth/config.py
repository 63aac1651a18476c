from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from qcauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/qcauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (generated secrets, runtime reset).",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Session tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("qcauth", "JWT_ISSUER")
    jwt_audience: str = env_field("qcauth-clients", "JWT_AUDIENCE")
    session_ttl_minutes: int = env_field(
        24 * 60, "SESSION_TTL_MINUTES", description="Lifetime of a minted session token"
    )
    rehydrate_claims_on_refresh: bool = env_field(
        False,
        "REHYDRATE_CLAIMS_ON_REFRESH",
        description="Re-read roles and permissions from storage when a token is refreshed",
    )
    session_cookie_name: str = env_field("qc_session", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")

    # Authority thresholds (one constant for 2FA exemption and role protection)
    admin_level_threshold: int = env_field(80, "ADMIN_LEVEL_THRESHOLD")
    super_admin_level_threshold: int = env_field(100, "SUPER_ADMIN_LEVEL_THRESHOLD")

    # Two-factor authentication
    totp_issuer: str = env_field("Control de Calidad", "TOTP_ISSUER")
    totp_valid_window: int = env_field(
        2, "TOTP_VALID_WINDOW", description="Accepted time steps on each side of now"
    )
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material used to encrypt 2FA secrets at rest (defaults to JWT_SECRET)",
    )

    # Passwords
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")

    # Reset link delivery; unset SMTP_HOST logs the message instead
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from: str | None = env_field(None, "EMAIL_FROM")

    # Idle monitor defaults handed to clients
    idle_timeout_ms: int = env_field(60_000, "IDLE_TIMEOUT_MS")
    idle_warning_ms: int = env_field(15_000, "IDLE_WARNING_MS")

    # Rate limits
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(10, "MFA_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "session_ttl_minutes",
        "password_reset_ttl_minutes",
        "totp_interval_seconds",
        "password_min_length",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("totp_valid_window")
    @classmethod
    def _ensure_window(cls, value: int) -> int:
        if value < 0:
            raise ValueError("totp_valid_window cannot be negative")
        return value

    @model_validator(mode="after")
    def _check_invariants(self) -> "Settings":
        if not 0 < self.idle_warning_ms < self.idle_timeout_ms:
            raise ValueError("idle_warning_ms must be positive and below idle_timeout_ms")
        if self.super_admin_level_threshold < self.admin_level_threshold:
            raise ValueError("super_admin_level_threshold must not be below admin_level_threshold")
        if not self.jwt_secret:
            if not self.test_mode:
                raise ValueError("JWT_SECRET must be set outside TEST_MODE")
            # Tokens minted with a generated secret do not survive a restart.
            self.jwt_secret = secrets.token_urlsafe(64)
            logger.warning("jwt_secret_generated", test_mode=True)
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
