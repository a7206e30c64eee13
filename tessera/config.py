from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tessera.logging import get_logger

logger = get_logger(__name__)

# Durations are expressed in milliseconds throughout the service
SECOND = 1000
MINUTE = 60 * SECOND
HOUR = 60 * MINUTE
DAY = 24 * HOUR
WEEK = 7 * DAY


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tessera", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str | None = env_field(
        "/srv/tessera",
        "SHARED_FS_ROOT",
        description="Directory holding the memory store state file",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Administrator bootstrap
    admin_enabled: bool = env_field(
        True, "ADMIN_ENABLED", description="Create the administrator account on startup"
    )
    admin_username: str = env_field("admin", "ADMIN_USERNAME")
    admin_password: str | None = env_field(None, "ADMIN_PASSWORD")

    auth_token_expire: int = env_field(
        WEEK,
        "AUTH_TOKEN_EXPIRE",
        description="Session token lifetime in milliseconds",
    )
    login_token_expire: int = env_field(
        10 * MINUTE,
        "LOGIN_TOKEN_EXPIRE",
        description="Pairing challenge lifetime in milliseconds",
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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("auth_token_expire")
    @classmethod
    def _validate_auth_token_expire(cls, value: int) -> int:
        if value < HOUR:
            raise ValueError("auth_token_expire must be at least one hour")
        return value

    @field_validator("login_token_expire")
    @classmethod
    def _validate_login_token_expire(cls, value: int) -> int:
        if value < MINUTE:
            raise ValueError("login_token_expire must be at least one minute")
        return value

    @model_validator(mode="after")
    def _require_admin_password(self):
        if self.admin_enabled and not self.admin_password:
            raise ValueError("admin_password is required when admin_enabled is set")
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
