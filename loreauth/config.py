from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from loreauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication orchestrator."""

    app_name: str = env_field("Lore", "APP_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    # Identity store (Directus-style REST API)
    identity_store_url: str = env_field("http://localhost:8055", "IDENTITY_STORE_URL")
    identity_store_token: str | None = env_field(None, "IDENTITY_STORE_TOKEN")
    identity_user_collection: str = env_field(
        "directus_users",
        "IDENTITY_USER_COLLECTION",
        description="Collection name carried by user lifecycle webhooks",
    )
    identity_store_timeout_seconds: float = env_field(10.0, "IDENTITY_STORE_TIMEOUT_SECONDS")
    default_user_role: str = env_field("creator", "DEFAULT_USER_ROLE")
    wallet_email_domain: str = env_field("wallet.lore.meme", "WALLET_EMAIL_DOMAIN")
    use_memory_identity_store: bool = env_field(False, "USE_MEMORY_IDENTITY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-memory collaborators for tests.",
    )
    # Wallet challenge
    nonce_ttl_seconds: int = env_field(300, "NONCE_TTL_SECONDS")
    wallet_token_ttl_minutes: int = env_field(24 * 60, "WALLET_TOKEN_TTL_MINUTES")
    # Signup sessions
    session_ttl_minutes: int = env_field(15, "SESSION_TTL_MINUTES")
    session_max_attempts: int = env_field(3, "SESSION_MAX_ATTEMPTS")
    creation_cache_ttl_seconds: int = env_field(600, "CREATION_CACHE_TTL_SECONDS")
    # Rate limits (fixed window)
    login_rate_limit_attempts: int = env_field(5, "LOGIN_RATE_LIMIT_ATTEMPTS")
    login_rate_limit_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")
    signup_rate_limit_attempts: int = env_field(5, "SIGNUP_RATE_LIMIT_ATTEMPTS")
    signup_rate_limit_window_seconds: int = env_field(15 * 60, "SIGNUP_RATE_LIMIT_WINDOW_SECONDS")
    # Background maintenance and push channel
    sweep_interval_seconds: int = env_field(300, "SWEEP_INTERVAL_SECONDS")
    sse_heartbeat_seconds: float = env_field(15.0, "SSE_HEARTBEAT_SECONDS")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "nonce_ttl_seconds",
        "session_ttl_minutes",
        "session_max_attempts",
        "creation_cache_ttl_seconds",
        "sweep_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("wallet_email_domain")
    @classmethod
    def _normalize_domain(cls, value: str) -> str:
        value = value.strip().lower().lstrip("@")
        if not value or "." not in value:
            logger.warning("wallet_email_domain_suspicious", domain=value)
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
