from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from discussionboard.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the discussion board service."""

    port: int = env_field(8080, "PORT")
    database_url: str = env_field(
        "postgresql://postgres@localhost:5432/discussionboard", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/discussionboard", "SHARED_FS_ROOT")
    memory_store_persist: bool = env_field(
        False,
        "MEMORY_STORE_PERSIST",
        description="Persist the in-memory store to SHARED_FS_ROOT/state between restarts",
    )
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    db_timeout_seconds: float = env_field(
        5.0,
        "DB_TIMEOUT_SECONDS",
        description="Pool checkout and statement timeout; exceeded calls fail instead of hanging",
    )
    app_base_url: str = env_field("http://localhost:8080", "APP_BASE_URL")

    # Token lifetimes
    activation_token_ttl_hours: int = env_field(72, "ACTIVATION_TOKEN_TTL_HOURS")
    session_token_ttl_hours: int = env_field(24, "SESSION_TOKEN_TTL_HOURS")

    session_cache_max_entries: int = env_field(10000, "SESSION_CACHE_MAX_ENTRIES")
    token_sweep_interval_seconds: int = env_field(
        300,
        "TOKEN_SWEEP_INTERVAL_SECONDS",
        description="Interval between expired-token sweeps; 0 disables the background sweep",
    )
    token_sweep_batch_size: int = env_field(1000, "TOKEN_SWEEP_BATCH_SIZE")

    session_cookie_name: str = env_field("session_token", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(
        False,
        "SESSION_COOKIE_SECURE",
        description="Mark the session cookie Secure; enable behind TLS",
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Discussion Board", "EMAIL_FROM_NAME")

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (no background sweep, no SMTP)",
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

    @field_validator("activation_token_ttl_hours", "session_token_ttl_hours")
    @classmethod
    def _validate_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTL must be a positive number of hours")
        return value

    @field_validator("token_sweep_batch_size", "session_cache_max_entries")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        stripped = value.rstrip("/")
        if not stripped.startswith(("http://", "https://")):
            logger.warning("app_base_url_without_scheme", app_base_url=value)
        return stripped


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
