from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authgate.logging import get_logger

logger = get_logger(__name__)


class IdentityBackend(str, Enum):
    """Which external identity provider client the runtime builds."""

    FIREBASE = "firebase"
    MEMORY = "memory"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth gateway."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, sync Redis client).",
    )

    # External identity provider
    identity_backend: IdentityBackend = env_field(
        IdentityBackend.FIREBASE,
        "IDENTITY_BACKEND",
        description="firebase for the Identity Toolkit REST client, memory for local development",
    )
    firebase_project_id: str | None = env_field(None, "FIREBASE_PROJECT_ID")
    firebase_api_key: str | None = env_field(None, "FIREBASE_API_KEY")
    firebase_client_email: str | None = env_field(None, "FIREBASE_CLIENT_EMAIL")
    firebase_private_key: str | None = env_field(None, "FIREBASE_PRIVATE_KEY")
    firebase_auth_emulator_host: str | None = env_field(
        None,
        "FIREBASE_AUTH_EMULATOR_HOST",
        description="host:port of the Auth emulator; disables signature checks on ID tokens",
    )
    identity_request_timeout_seconds: float = env_field(
        10.0, "IDENTITY_REQUEST_TIMEOUT_SECONDS"
    )

    # Federation policy
    default_token_balance: int = env_field(
        3,
        "DEFAULT_TOKEN_BALANCE",
        description="Token balance granted to users created on first external login",
    )
    sync_threshold_seconds: int = env_field(
        300,
        "SYNC_THRESHOLD_SECONDS",
        description="Minimum age of last_sync before a login re-syncs the external profile",
    )
    temp_password_length: int = env_field(32, "TEMP_PASSWORD_LENGTH")

    # Token verification cache
    token_cache_ttl_seconds: int = env_field(300, "TOKEN_CACHE_TTL_SECONDS")
    token_cache_prefix: str = env_field("authgate:", "TOKEN_CACHE_PREFIX")
    check_revoked_tokens: bool = env_field(True, "CHECK_REVOKED_TOKENS")

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    school_list_limit: int = env_field(1000, "SCHOOL_LIST_LIMIT")

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

    @field_validator("identity_backend")
    @classmethod
    def _validate_identity_backend(cls, value: IdentityBackend) -> IdentityBackend:
        return IdentityBackend(value)

    @field_validator("firebase_private_key")
    @classmethod
    def _unescape_private_key(cls, value: str | None) -> str | None:
        # Keys pasted into .env files usually carry literal "\n" sequences
        if value and "\\n" in value:
            return value.replace("\\n", "\n")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator("sync_threshold_seconds", "token_cache_ttl_seconds")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be zero or positive")
        return value

    @field_validator("temp_password_length")
    @classmethod
    def _min_temp_password_length(cls, value: int) -> int:
        if value < 16:
            logger.warning("temp_password_length_too_short", requested=value)
            return 16
        return value


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
