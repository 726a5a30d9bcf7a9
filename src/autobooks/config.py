"""Configuration management for autobooks."""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="",
    )

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or console")

    # Agent Runtime Configuration
    default_max_retries: int = Field(
        default=3, ge=0, description="Retries used when a task does not set max_retries"
    )
    retry_backoff_multiplier: float = Field(
        default=2.0, gt=0, description="Exponential backoff multiplier (2 -> 2s, 4s, 8s)"
    )
    execution_history_size: int = Field(
        default=100, gt=0, description="Results kept for rolling success/error rates"
    )
    short_term_size: int = Field(
        default=100, gt=0, description="Entries kept in an agent's short-term memory"
    )
    pattern_shortcut_threshold: float = Field(
        default=0.8, description="Confidence above which a learned pattern is replayed"
    )
    bulk_batch_size: int = Field(
        default=10, gt=0, description="Items processed concurrently per bulk batch"
    )

    # Memory Store Configuration
    event_capacity: int = Field(default=1000, gt=0, description="Maximum episodic events kept")
    event_retention_days: int = Field(
        default=30, gt=0, description="Days of episodic and low-confidence semantic memory kept"
    )
    pattern_cache_size: int = Field(
        default=100, gt=0, description="Cached patterns kept per task type"
    )
    sweep_interval_seconds: float = Field(
        default=3600.0, gt=0, description="How often expired memory entries are swept"
    )

    # Orchestrator Configuration
    step_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Default timeout for a workflow step"
    )
    workflows_file: Path | None = Field(
        default=None, description="Optional YAML file with additional workflow definitions"
    )

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Only json and console renderers are supported."""
        value = v.lower()
        if value not in ("json", "console"):
            raise ValueError(f"log_format must be 'json' or 'console', got {v!r}")
        return value


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
