"""
taskdash Configuration — Load and validate taskdash.yaml at startup.

Usage:
    from taskdash.engine.config import load_config, get_config

Recognized engine options (nested form shown; the flat camelCase names
``ttlMs``, ``maxCacheEntries``, ``timezone`` and ``weekStartsOn`` are also
accepted at the top level of the file):

    cache:
      ttl_ms: 120000
      max_entries: 30
    calendar:
      timezone: Europe/Bucharest
      week_starts_on: monday
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator

from taskdash.engine.errors import TaskDashConfigError

CONFIG_FILENAME = "taskdash.yaml"


# ---------------------------------------------------------------------------
# Pydantic models for taskdash.yaml
# ---------------------------------------------------------------------------

class CacheConfig(BaseModel):
    ttl_ms: int = Field(default=2 * 60 * 1000, gt=0)
    max_entries: int = Field(default=30, ge=1)
    backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    redis_db: int = 3
    key_prefix: str = "taskdash:agg:"

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v not in ("memory", "redis"):
            raise ValueError(f"cache backend must be memory/redis, got '{v}'")
        return v


class CalendarConfig(BaseModel):
    timezone: str = "Europe/Bucharest"
    week_starts_on: str = "monday"

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone '{v}'")
        return v

    @field_validator("week_starts_on")
    @classmethod
    def validate_week_start(cls, v: str) -> str:
        if v.lower() != "monday":
            raise ValueError(f"week_starts_on is fixed to monday, got '{v}'")
        return "monday"

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class LogAsyncQueueConfig(BaseModel):
    flush_interval_ms: int = 100
    flush_batch_size: int = 50
    max_queue_size: int = 10000


class LogRetentionConfig(BaseModel):
    execution_days: int = 30
    compress_after_days: int = 7


class LoggingConfig(BaseModel):
    level: str = "INFO"
    directory: str = ".taskdash/logs"
    structured: bool = False
    async_queue: LogAsyncQueueConfig = LogAsyncQueueConfig()
    retention: LogRetentionConfig = LogRetentionConfig()

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid log level '{v}'")
        return level


class SchedulerConfig(BaseModel):
    midnight_rollover: bool = True
    run_log_cleanup: bool = False


class TaskDashConfig(BaseModel):
    """Root model for taskdash.yaml."""
    environment: str = "dev"

    cache: CacheConfig = CacheConfig()
    calendar: CalendarConfig = CalendarConfig()
    logging: LoggingConfig = LoggingConfig()
    scheduler: SchedulerConfig = SchedulerConfig()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in ("dev", "staging", "prod"):
            raise ValueError(f"environment must be dev/staging/prod, got '{v}'")
        return v

    @property
    def ttl_ms(self) -> int:
        return self.cache.ttl_ms

    @property
    def max_cache_entries(self) -> int:
        return self.cache.max_entries

    @property
    def timezone(self) -> str:
        return self.calendar.timezone


# Flat option names -> (section, field)
_FLAT_OPTIONS = {
    "ttlMs": ("cache", "ttl_ms"),
    "maxCacheEntries": ("cache", "max_entries"),
    "timezone": ("calendar", "timezone"),
    "weekStartsOn": ("calendar", "week_starts_on"),
}


# ---------------------------------------------------------------------------
# Config Loading Functions
# ---------------------------------------------------------------------------

_config: Optional[TaskDashConfig] = None


def _find_project_root() -> Path:
    """Find the project root by looking for taskdash.yaml."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        if (parent / CONFIG_FILENAME).exists():
            return parent
    return current


def build_config(raw: Dict[str, Any]) -> TaskDashConfig:
    """
    Validate a raw config mapping (as read from YAML).

    Flat camelCase options are folded into their sections; an explicit
    nested value wins over its flat alias.
    """
    data: Dict[str, Any] = {
        key: (dict(value) if isinstance(value, dict) else value)
        for key, value in raw.items()
        if key not in _FLAT_OPTIONS
    }
    for flat_key, (section, field) in _FLAT_OPTIONS.items():
        if flat_key in raw:
            data.setdefault(section, {})
            data[section].setdefault(field, raw[flat_key])
    return TaskDashConfig(**data)


def load_config(config_path: Optional[str] = None) -> TaskDashConfig:
    """
    Load and validate taskdash.yaml.

    Args:
        config_path: Explicit path to taskdash.yaml. If None, auto-discovers.

    Returns:
        Validated TaskDashConfig instance.
    """
    global _config

    if config_path is None:
        config_path = str(_find_project_root() / CONFIG_FILENAME)

    path = Path(config_path)
    if not path.exists():
        # Return defaults if no config file
        _config = TaskDashConfig()
        return _config

    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise TaskDashConfigError(
                f"Could not parse {path.name}: {e}",
                component="config",
                config_path=str(path),
            ) from e

    if not isinstance(raw, dict):
        raise TaskDashConfigError(
            f"{path.name} must contain a mapping at the top level",
            component="config",
            config_path=str(path),
        )

    # Allow everything to be wrapped under a top-level "taskdash:" key
    raw = raw.get("taskdash", raw)

    _config = build_config(raw)
    return _config


def get_config() -> TaskDashConfig:
    """Get the currently loaded config, loading if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[TaskDashConfig]) -> None:
    """Replace (or clear, with None) the loaded config."""
    global _config
    _config = config
