"""
Configuration management for guardpipe.

Supports environment variables, .env files, and YAML configuration.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GuardpipeSettings(BaseSettings):
    """Runtime settings for guardrail pipelines."""

    model_config = SettingsConfigDict(
        env_prefix="GUARDPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Execution
    raise_guardrail_errors: bool = False
    stream_check_interval: int = Field(default=100, gt=0)

    # Default pipeline configuration file (JSON or YAML)
    pipeline_config: Path | None = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in {"json", "console"}:
            raise ValueError(f"Invalid log format: {v}. Must be 'json' or 'console'")
        return v

    @classmethod
    def from_yaml(cls, path: str | Path) -> "GuardpipeSettings":
        """Load settings from a YAML file."""
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)


@lru_cache()
def get_settings() -> GuardpipeSettings:
    """Get cached application settings."""
    return GuardpipeSettings()


def reload_settings() -> GuardpipeSettings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
