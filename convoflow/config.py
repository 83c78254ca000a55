from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from convoflow.logging import get_logger

logger = get_logger(__name__)


class CircularNavigationPolicy(str, Enum):
    """What the navigation service does when a jump looks like a loop."""

    REJECT = "reject"
    WARN = "warn"


def env_field(default: Any, env: str, **kwargs: Any):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra["env"] = env
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment with `.env` as a fallback."""

    redis_url: str = env_field("", "REDIS_URL")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    test_mode: bool = env_field(False, "TEST_MODE")
    allow_redis_fallback_dev: bool = env_field(
        False,
        "ALLOW_REDIS_FALLBACK_DEV",
        description="Use the in-memory session store when Redis is unreachable",
    )

    # Logging
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")

    # Flow cache
    flow_cache_ttl_seconds: int = env_field(300, "FLOW_CACHE_TTL_SECONDS", ge=0)

    # Session bookkeeping
    session_inactivity_minutes: int = env_field(60, "SESSION_INACTIVITY_MINUTES", ge=1)
    session_history_cap: int = env_field(50, "SESSION_HISTORY_CAP", ge=1)
    navigation_history_cap: int = env_field(100, "NAVIGATION_HISTORY_CAP", ge=1)

    # Navigation validation
    circular_window: int = env_field(10, "CIRCULAR_WINDOW", ge=1)
    circular_threshold: int = env_field(2, "CIRCULAR_THRESHOLD", ge=1)
    circular_policy: CircularNavigationPolicy = env_field(
        CircularNavigationPolicy.REJECT, "CIRCULAR_POLICY"
    )

    # Executor
    max_auto_advance_hops: int = env_field(
        25,
        "MAX_AUTO_ADVANCE_HOPS",
        ge=1,
        description="Nodes a single turn may dispatch before the chain is treated as a cycle",
    )
    per_hop_token_overhead: int = env_field(5, "PER_HOP_TOKEN_OVERHEAD", ge=0)

    # Delegates
    delegate_timeout_ms: int = env_field(30000, "DELEGATE_TIMEOUT_MS", gt=0)
    delegate_max_retries: int = env_field(2, "DELEGATE_MAX_RETRIES", ge=0)
    delegate_backoff_ms: int = env_field(250, "DELEGATE_BACKOFF_MS", ge=0)
    api_call_timeout_ms: int = env_field(10000, "API_CALL_TIMEOUT_MS", gt=0)

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

    @field_validator("circular_policy", mode="before")
    @classmethod
    def _validate_policy(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {value}")
        return level

    @field_validator("redis_url")
    @classmethod
    def _strip_redis_url(cls, value: str) -> str:
        value = (value or "").strip()
        if value and not value.startswith(("redis://", "rediss://", "unix://")):
            logger.warning("redis_url_unexpected_scheme", scheme=value.split(":", 1)[0])
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
