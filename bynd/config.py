from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and ``.env``."""

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MIN",
        description="Lifetime of signed access tokens in minutes",
    )
    refresh_token_ttl_days: int = env_field(
        7,
        "REFRESH_TOKEN_TTL_DAYS",
        description="Lifetime of opaque refresh tokens in days",
    )
    database_url: str = env_field("postgresql://localhost:5432/bynd", "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow the runtime singleton to be rebuilt between tests",
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound on any single credential/token store call",
    )
    auth_rate_limit: int = env_field(50, "AUTH_RATE_LIMIT")
    auth_rate_limit_window_seconds: int = env_field(
        600, "AUTH_RATE_LIMIT_WINDOW_SECONDS"
    )
    global_rate_limit_per_minute: int = env_field(120, "GLOBAL_RATE_LIMIT_PER_MINUTE")
    purge_interval_seconds: int = env_field(
        300,
        "PURGE_INTERVAL_SECONDS",
        description="How often expired registry entries and refresh records are swept",
    )
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def env_names(cls) -> dict[str, str]:
        """Map each field to the environment variable that sets it."""
        names = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra
            names[name] = (extra.get("env") if isinstance(extra, dict) else None) or name.upper()
        return names

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``os.environ``, falling back to ``./.env``."""
        dotenv = dotenv_values(".env")
        values = {}
        for name, env_name in cls.env_names().items():
            raw = os.environ.get(env_name, dotenv.get(env_name))
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_days")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTLs must be positive")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("STORE_TIMEOUT_SECONDS must be positive")
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        # An empty REDIS_URL disables Redis rather than pointing at localhost
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    global _settings_cache
    _settings_cache = None
