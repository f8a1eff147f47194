from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantauth.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and authorization kernel."""

    app_env: str = env_field(
        "production",
        "APP_ENV",
        description="Deployment environment; 'development' drops the secure cookie flag",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/tenantauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (cheap hashing parameters)",
    )
    default_tenant_id: str = env_field("default", "DEFAULT_TENANT_ID")

    # Signing. No fallback secret is ever generated; a missing value is fatal
    # when the token codec is built.
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tenantauth", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of access tokens and of the access cookie",
    )
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    remember_me_refresh_ttl_days: int = env_field(30, "REMEMBER_ME_REFRESH_TTL_DAYS")
    rotate_refresh_credentials: bool = env_field(
        False,
        "ROTATE_REFRESH_CREDENTIALS",
        description="Replace the refresh credential on every successful refresh",
    )
    refresh_timeout_seconds: float = env_field(10.0, "REFRESH_TIMEOUT_SECONDS")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")

    access_cookie_name: str = env_field("access_token", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    refresh_cookie_path: str = env_field("/api/auth/refresh-token", "REFRESH_COOKIE_PATH")
    login_path: str = env_field("/login", "LOGIN_PATH")
    landing_path: str = env_field("/dashboard", "LANDING_PATH")

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

    @field_validator("access_token_ttl_minutes")
    @classmethod
    def _validate_access_ttl(cls, value: int) -> int:
        if not 1 <= value <= 60:
            raise ValueError("ACCESS_TOKEN_TTL_MINUTES must be between 1 and 60")
        return value

    @field_validator("refresh_token_ttl_days", "remember_me_refresh_ttl_days")
    @classmethod
    def _validate_refresh_ttl(cls, value: int) -> int:
        if value < 1:
            raise ValueError("refresh credential lifetime must be at least one day")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _blank_secret_is_missing(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @property
    def secure_cookies(self) -> bool:
        return self.app_env.lower() != "development"


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
