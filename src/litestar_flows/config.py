"""Runtime settings for litestar-flows.

Settings are read from ``FLOWS_*`` environment variables and an optional
``.env`` file. Tests can override the file with
``EngineSettings(_env_file=path)``.
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["EngineSettings"]


class EngineSettings(BaseSettings):
    """Settings used to build a :class:`~litestar_flows.runtime.WorkflowRuntime`.

    Environment variables:
    - FLOWS_REDIS_URL       (optional, in-memory backend when unset)
    - FLOWS_DATABASE_URL
    - FLOWS_LOG_LEVEL, FLOWS_LOG_JSON
    """

    redis_url: str | None = Field(default=None, description="Redis URL of the context store backend")
    database_url: str = Field(
        default="sqlite+aiosqlite:///flows.db",
        description="SQLAlchemy async URL of the relational store",
    )
    key_prefix: str = Field(default="workflow:state:", description="Prefix of context store keys")
    context_ttl: int = Field(default=86400, gt=0, description="Context expiry in seconds")
    checkpoint_ttl: int = Field(default=3600, gt=0, description="Checkpoint expiry in seconds")
    lock_ttl: int = Field(default=30, gt=0, description="Instance lock expiry in seconds")
    lock_wait_timeout: float = Field(default=0.0, ge=0, description="Seconds to wait for a held lock")
    tracking_limit: int = Field(default=1000, gt=0, description="Entries kept per definition recency index")
    scheduler_batch_size: int = Field(default=10, gt=0, description="Tasks handled per poll")
    scheduler_poll_interval: float = Field(default=5.0, gt=0, description="Seconds between polls")
    condition_poll_interval: int = Field(
        default=60000, gt=0, description="Default milliseconds between condition wait checks"
    )
    task_max_retries: int = Field(default=3, ge=1, description="Attempts before a scheduled task is failed")
    log_level: str = Field(default="INFO", description="Level of the litestar_flows loggers")
    log_json: bool = Field(default=False, description="Emit JSON log lines")

    model_config = SettingsConfigDict(
        env_prefix="FLOWS_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            msg = f"Invalid log level: {value}"
            raise ValueError(msg)
        return level
