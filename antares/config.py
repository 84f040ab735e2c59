from __future__ import annotations

import base64
import binascii
import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

# HS256 needs a key at least as long as the digest
MIN_SIGNING_KEY_BYTES = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def decode_signing_key(value: str) -> bytes:
    """Return the HMAC key bytes for a configured secret.

    Base64 values are decoded first; anything else is used as raw UTF-8.
    """
    try:
        decoded = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        decoded = b""
    if len(decoded) >= MIN_SIGNING_KEY_BYTES:
        return decoded
    return value.encode("utf-8")


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/antares", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing mode; enables in-memory fallbacks.",
    )
    api_prefix: str = env_field("/antares", "API_PREFIX")

    # Token signer
    jwt_secret: str | None = env_field(
        None, "JWT_SECRET", repr=False, validate_default=True
    )
    jwt_issuer: str = env_field("antares-auth", "JWT_ISSUER", min_length=1)
    jwt_audience: str = env_field("antares-app", "JWT_AUDIENCE", min_length=1)
    access_token_ttl_seconds: int = env_field(
        15 * 60,
        "ACCESS_TOKEN_TTL_SECONDS",
        ge=60,
        le=60 * 60,
        description="Access token lifetime; between 1 minute and 1 hour",
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "REFRESH_TOKEN_TTL_SECONDS",
        ge=60 * 60,
        le=30 * 24 * 60 * 60,
        description="Refresh token lifetime; between 1 hour and 30 days",
    )
    jwt_clock_skew_seconds: int = env_field(60, "JWT_CLOCK_SKEW_SECONDS", ge=0, le=300)

    # Session transport
    access_token_cookie: str = env_field("access_token", "ACCESS_TOKEN_COOKIE")
    refresh_token_cookie: str = env_field("refresh_token", "REFRESH_TOKEN_COOKIE")
    csrf_cookie: str = env_field("XSRF-TOKEN", "CSRF_COOKIE")
    csrf_header: str = env_field("X-XSRF-TOKEN", "CSRF_HEADER")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")

    # Attempt guard
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS", ge=1)
    login_lock_seconds: int = env_field(15 * 60, "LOGIN_LOCK_SECONDS", ge=1)
    login_attempt_window_seconds: int = env_field(
        15 * 60, "LOGIN_ATTEMPT_WINDOW_SECONDS", ge=1
    )
    login_lockout_fail_open: bool = env_field(
        False,
        "LOGIN_LOCKOUT_FAIL_OPEN",
        description="Let logins through when the lockout store is unreachable",
    )

    # Forward-auth gate
    frontend_login_url: str = env_field("https://localhost/login", "FRONTEND_LOGIN_URL")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    admin_email: str | None = env_field(None, "ADMIN_EMAIL")
    admin_password: str | None = env_field(None, "ADMIN_PASSWORD", repr=False)

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(decode_signing_key(value)) < MIN_SIGNING_KEY_BYTES:
            raise ValueError(
                f"JWT_SECRET must provide at least {MIN_SIGNING_KEY_BYTES * 8} bits of key material"
            )
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("api_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        value = value.strip()
        if not value or value == "/":
            return ""
        return "/" + value.strip("/")

    @field_validator("cookie_domain", "admin_email", "admin_password")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    def signing_key(self) -> bytes:
        return decode_signing_key(self.jwt_secret or "")


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
