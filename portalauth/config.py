from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from portalauth.logging import get_logger

logger = get_logger(__name__)

# Fixed session lifetime window in days; the issuer never mints shorter or
# longer sessions than this range allows.
MIN_SESSION_TTL_DAYS = 7
MAX_SESSION_TTL_DAYS = 30

_DEFAULT_CORS_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the portal authorization core."""

    database_url: str = env_field("postgresql://localhost:5432/portal", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Optional JSON file the in-memory store persists to",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic wiring for the test suite; enables runtime resets.",
    )

    session_ttl_days: int = env_field(
        MIN_SESSION_TTL_DAYS,
        "SESSION_TTL_DAYS",
        description="Absolute session lifetime, fixed at issuance",
    )
    claim_ttl_seconds: int = env_field(
        300,
        "CLAIM_TTL_SECONDS",
        description="Upper bound on how long a cached (user, role) claim may lag the store",
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Bound on a single credential store round trip",
    )

    session_sweep_interval_seconds: int = env_field(
        3600,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        description="How often expired sessions are physically deleted; 0 disables the sweep",
    )

    session_cookie_name: str = env_field("session_token", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")
    sign_in_path: str = env_field("/sign-in", "SIGN_IN_PATH")
    home_path: str = env_field("/dashboard", "HOME_PATH")

    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    require_super_admin_for_role_changes: bool = env_field(
        False,
        "REQUIRE_SUPER_ADMIN_FOR_ROLE_CHANGES",
        description="Role changes additionally require the acting admin to be a super admin",
    )

    cors_allow_origins: list[str] = env_field(
        list(_DEFAULT_CORS_ORIGINS), "CORS_ALLOW_ORIGINS"
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("redis_url", "memory_store_path")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not str(value).strip():
            return None
        return value

    @field_validator("session_ttl_days")
    @classmethod
    def _validate_session_ttl(cls, value: int) -> int:
        if not MIN_SESSION_TTL_DAYS <= value <= MAX_SESSION_TTL_DAYS:
            raise ValueError(
                f"session_ttl_days must be between {MIN_SESSION_TTL_DAYS} and {MAX_SESSION_TTL_DAYS}"
            )
        return value

    @field_validator("claim_ttl_seconds")
    @classmethod
    def _validate_claim_ttl(cls, value: int) -> int:
        if value < 1:
            raise ValueError("claim_ttl_seconds must be at least 1")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _validate_store_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store_timeout_seconds must be positive")
        return value

    @field_validator("sign_in_path", "home_path")
    @classmethod
    def _validate_redirect_path(cls, value: str) -> str:
        # Redirect targets must stay on this origin
        if not value.startswith("/") or value.startswith("//"):
            raise ValueError("redirect paths must be absolute local paths")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
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
