from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from todo_api.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PASSWORD_SYMBOLS = "!@#$%^&*()-_=+[]{}|;:,.<>?/~"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the API and its authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/todo_api", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-memory fallbacks.",
    )

    # Password hashing
    password_pepper: SecretStr | None = env_field(
        None,
        "PASSWORD_PEPPER",
        description="Server-side secret interleaved with every password before hashing",
    )
    password_hash_memory: int = env_field(
        19456, "PASSWORD_HASH_MEMORY", description="Argon2 memory cost in KiB"
    )
    password_hash_iterations: int = env_field(
        2, "PASSWORD_HASH_ITERATIONS", description="Argon2 time cost"
    )
    password_hash_parallelism: int = env_field(
        1, "PASSWORD_HASH_PARALLELISM", description="Argon2 lanes"
    )

    # Password policy (registration and password change only)
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(32, "PASSWORD_MAX_LENGTH")
    password_symbols: str = env_field(DEFAULT_PASSWORD_SYMBOLS, "PASSWORD_SYMBOLS")
    password_max_same_chars: int = env_field(
        2,
        "PASSWORD_MAX_SAME_CHARS",
        description="Maximum number of times any single character may appear",
    )
    password_max_consecutive_chars: int = env_field(
        2,
        "PASSWORD_MAX_CONSECUTIVE_CHARS",
        description="Maximum run length of one repeated character",
    )

    # Login throttling
    login_max_attempts: int = env_field(
        5,
        "LOGIN_MAX_ATTEMPTS",
        description="Failed logins within the window that lock the account",
    )
    login_attempts_seconds: int = env_field(
        300,
        "LOGIN_ATTEMPTS_SECONDS",
        description="Length of the window in which failed logins accumulate",
    )

    # Tokens
    jwt_secret: SecretStr | None = env_field(None, "JWT_SECRET")
    access_token_ttl_seconds: int = env_field(60 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        60 * 60 * 24 * 30, "REFRESH_TOKEN_TTL_SECONDS"
    )
    access_cookie_name: str = env_field("access_token", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")

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

    @field_validator(
        "password_hash_memory",
        "password_hash_iterations",
        "password_hash_parallelism",
        "password_min_length",
        "password_max_same_chars",
        "password_max_consecutive_chars",
        "login_max_attempts",
        "login_attempts_seconds",
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("password_symbols")
    @classmethod
    def _non_empty_symbols(cls, value: str) -> str:
        if not value:
            raise ValueError("password_symbols must not be empty")
        return value

    @model_validator(mode="after")
    def _check_policy_and_secrets(self) -> "Settings":
        if self.password_min_length > self.password_max_length:
            raise ValueError("password_min_length exceeds password_max_length")
        if self.password_hash_memory < 8 * self.password_hash_parallelism:
            # argon2 requires at least 8 KiB per lane
            raise ValueError("password_hash_memory must be >= 8 * parallelism")
        for name in ("jwt_secret", "password_pepper"):
            current = getattr(self, name)
            if current is not None and current.get_secret_value():
                continue
            if not self.test_mode:
                raise ValueError(f"{name.upper()} must be set outside TEST_MODE")
            # Ephemeral secret: tokens and hashes do not survive a restart
            logger.warning("ephemeral_secret_generated", setting=name)
            setattr(self, name, SecretStr(secrets.token_urlsafe(48)))
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
