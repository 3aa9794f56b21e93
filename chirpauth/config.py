from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chirpauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and session core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/chirp", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI; skips Redis connectivity checks.",
    )
    # Google OAuth
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_callback_url: str | None = env_field(None, "GOOGLE_CALLBACK_URL")
    oauth_http_timeout_seconds: float = env_field(
        10.0, "OAUTH_HTTP_TIMEOUT_SECONDS"
    )
    # Bearer tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("chirp", "JWT_ISSUER")
    jwt_audience: str = env_field("chirp-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "JWT_ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "JWT_REFRESH_TOKEN_TTL_MINUTES"
    )
    # Sessions
    web_session_timeout_days: int = env_field(30, "WEB_SESSION_TIMEOUT_DAYS")
    mobile_session_timeout_days: int = env_field(90, "MOBILE_SESSION_TIMEOUT_DAYS")
    session_sliding_expiration: bool = env_field(
        False,
        "SESSION_SLIDING_EXPIRATION",
        description="Extend session expiry (not only last-used time) on each authenticated request",
    )
    # Identity resolution
    max_username_attempts: int | None = env_field(
        999,
        "MAX_USERNAME_ATTEMPTS",
        description="Numbered suffixes tried before an OAuth sign-up gives up on a username; 0 or empty for no limit",
    )

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

    @property
    def google_oauth_configured(self) -> bool:
        return bool(
            self.google_client_id
            and self.google_client_secret
            and self.google_callback_url
        )

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET is unset; issued tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @field_validator("web_session_timeout_days", "mobile_session_timeout_days")
    @classmethod
    def _positive_days(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("session timeout must be at least one day")
        return value

    @field_validator("max_username_attempts", mode="before")
    @classmethod
    def _unbounded_attempts(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        if int(value) < 0:
            raise ValueError("max_username_attempts cannot be negative")
        return int(value) or None


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
