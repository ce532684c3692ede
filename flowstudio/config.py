from __future__ import annotations

import os
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Hard caps applied regardless of environment overrides
MAX_TOOL_TIMEOUT_SECONDS = 60
MAX_TOOL_WORKERS = 16
MAX_TOOL_RETRIES = 3


class PlannerMode(str, Enum):
    """How the dispatcher fires long-running planner steps."""

    INLINE = "inline"
    HTTP = "http"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the graph execution service."""

    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Remote event channel store; in-process queues are used when unset",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    session_ttl_seconds: int = env_field(3600, "SESSION_TTL_SECONDS")

    planner_mode: PlannerMode = env_field(PlannerMode.INLINE, "PLANNER_MODE")
    planner_timeout_seconds: float = env_field(30.0, "PLANNER_TIMEOUT_SECONDS")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    model_name: str = env_field("local-llama", "MODEL_NAME")
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    llm_temperature: float = env_field(0.7, "LLM_TEMPERATURE")

    tool_timeout_seconds: float = env_field(15.0, "TOOL_TIMEOUT_SECONDS")
    tool_workers: int = env_field(8, "TOOL_WORKERS")
    tool_max_retries: int = env_field(1, "TOOL_MAX_RETRIES")
    tool_backoff_ms: int = env_field(200, "TOOL_BACKOFF_MS")

    stream_poll_interval_ms: int = env_field(200, "STREAM_POLL_INTERVAL_MS")
    stream_keepalive_seconds: float = env_field(15.0, "STREAM_KEEPALIVE_SECONDS")
    stream_batch_size: int = env_field(100, "STREAM_BATCH_SIZE")
    stream_max_idle_seconds: float = env_field(300.0, "STREAM_MAX_IDLE_SECONDS")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("redis_url", "openai_api_key", "openai_base_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("planner_mode")
    @classmethod
    def _validate_planner_mode(cls, value: PlannerMode) -> PlannerMode:
        return PlannerMode(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("tool_timeout_seconds")
    @classmethod
    def _cap_tool_timeout(cls, value: float) -> float:
        return min(max(value, 0.1), MAX_TOOL_TIMEOUT_SECONDS)

    @field_validator("tool_workers")
    @classmethod
    def _cap_tool_workers(cls, value: int) -> int:
        return min(max(1, value), MAX_TOOL_WORKERS)

    @field_validator("tool_max_retries")
    @classmethod
    def _cap_tool_retries(cls, value: int) -> int:
        return min(max(0, value), MAX_TOOL_RETRIES)

    @field_validator("planner_timeout_seconds")
    @classmethod
    def _positive_planner_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("planner timeout must be positive")
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
