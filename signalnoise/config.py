from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Lifecycle windows for magic links and sessions.
MAGIC_LINK_TTL_SECONDS = 900
SESSION_TTL_DAYS = 30
SESSION_RENEWAL_WINDOW_DAYS = 7
CONFLICT_LOOKBACK_DAYS = 30

DAY_MS = 24 * 60 * 60 * 1000


class AppEnv(str, Enum):
    """Deployment environments recognised by the service."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the account/session service."""

    app_env: AppEnv = env_field(AppEnv.PRODUCTION, "APP_ENV")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    key_prefix: str = env_field(
        "sn:", "KEY_PREFIX", description="Namespace prefix for every Redis key"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and permit the in-memory store.",
    )

    magic_link_ttl_seconds: int = env_field(
        MAGIC_LINK_TTL_SECONDS, "MAGIC_LINK_TTL_SECONDS", gt=0
    )
    session_ttl_days: int = env_field(SESSION_TTL_DAYS, "SESSION_TTL_DAYS", gt=0)
    session_renewal_window_days: int = env_field(
        SESSION_RENEWAL_WINDOW_DAYS,
        "SESSION_RENEWAL_WINDOW_DAYS",
        ge=0,
        description="Validation this close to expiry extends the session by a fresh window",
    )
    conflict_lookback_days: int = env_field(
        CONFLICT_LOOKBACK_DAYS,
        "CONFLICT_LOOKBACK_DAYS",
        ge=0,
        description="Activity window in which an existing session blocks a new login",
    )

    app_base_url: str = env_field("https://signal-noise.app", "APP_BASE_URL")
    expose_dev_links: bool = env_field(
        False,
        "EXPOSE_DEV_LINKS",
        description="Return the magic link in the API response (development only)",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Signal/Noise", "EMAIL_FROM_NAME")

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

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            value = value.strip().lower()
        return AppEnv(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def magic_link_ttl_ms(self) -> int:
        return self.magic_link_ttl_seconds * 1000

    @property
    def session_ttl_ms(self) -> int:
        return self.session_ttl_days * DAY_MS

    @property
    def session_renewal_window_ms(self) -> int:
        return self.session_renewal_window_days * DAY_MS

    @property
    def conflict_lookback_ms(self) -> int:
        return self.conflict_lookback_days * DAY_MS

    @property
    def dev_links_enabled(self) -> bool:
        return self.expose_dev_links or self.app_env == AppEnv.DEVELOPMENT


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
