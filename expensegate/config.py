from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from expensegate.logging import get_logger

logger = get_logger(__name__)

# Development-only secret; rejected outside TEST_MODE
_TEST_JWT_SECRET = "expensegate-test-secret-do-not-use-in-production"
_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read once at startup."""

    database_url: str = env_field(
        "postgresql://localhost:5432/expensegate", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/expensegate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    token_ttl_minutes: int = env_field(
        60, "TOKEN_TTL_MINUTES", description="Lifetime of issued bearer tokens"
    )
    lockout_max_attempts: int = env_field(
        4,
        "LOCKOUT_MAX_ATTEMPTS",
        description="Unauthenticated attempts allowed per source IP inside one window",
    )
    lockout_window_minutes: int = env_field(
        60,
        "LOCKOUT_WINDOW_MINUTES",
        description="Time after the last attempt before a source IP's counter resets",
    )
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Use the first X-Forwarded-For hop as the client IP (only behind a trusted proxy)",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("token_ttl_minutes", "lockout_max_attempts", "lockout_window_minutes")
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required unless TEST_MODE is enabled")
        logger.warning("jwt_secret_test_default", message="Using built-in test secret")
        self.jwt_secret = _TEST_JWT_SECRET
        return self


@dataclass(frozen=True)
class GateConfig:
    """Immutable auth gate parameters, fixed for the process lifetime."""

    token_secret: str
    max_attempts: int = 4
    lockout_window: timedelta = timedelta(minutes=60)
    token_ttl: timedelta = timedelta(minutes=60)

    @classmethod
    def from_settings(cls, settings: Settings) -> "GateConfig":
        return cls(
            token_secret=settings.jwt_secret or "",
            max_attempts=settings.lockout_max_attempts,
            lockout_window=timedelta(minutes=settings.lockout_window_minutes),
            token_ttl=timedelta(minutes=settings.token_ttl_minutes),
        )


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
