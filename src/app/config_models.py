"""Pydantic configuration models for daily prompts."""

import re
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from shared_types import LinkHandling

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

DEFAULT_DAILY_TEMPLATE = "# {{date:YYYY-MM-DD}}\n\n## Daily Prompt\n\n{{prompt}}\n\n## Notes\n\n"


class PathsConfig(BaseModel):
    """File paths configuration."""

    progress_db: Path = Path("~/.daily-prompts/progress.db")
    notes_dir: Path = Path("~/.daily-prompts/notes")
    packs_file: Path = Path("~/.daily-prompts/packs.yaml")
    log_file: Optional[Path] = None

    @model_validator(mode="after")
    def expand_paths(self):
        """Expand ~ in all paths."""
        self.progress_db = self.progress_db.expanduser()
        self.notes_dir = self.notes_dir.expanduser()
        self.packs_file = self.packs_file.expanduser()
        if self.log_file:
            self.log_file = self.log_file.expanduser()
        return self


class EngineConfig(BaseModel):
    """Progress batching, caching and memory limits."""

    flush_delay_seconds: float = 2.0
    max_batch_size: int = 20
    cache_ttl_seconds: float = 30.0
    max_hydrated_packs: int = 50
    memory_pressure_percent: float = 90.0

    @field_validator("max_batch_size", "max_hydrated_packs")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Must be at least 1, got {v}")
        return v

    @field_validator("memory_pressure_percent")
    @classmethod
    def validate_percent(cls, v: float) -> float:
        if not 0.0 < v <= 100.0:
            raise ValueError(f"memory_pressure_percent must be in (0, 100], got {v}")
        return v


class SchedulerConfig(BaseModel):
    """Notification timing, delivery and queue configuration."""

    sweep_interval_seconds: float = 60.0
    permission_recheck_hours: float = 24.0
    max_notification_length: int = 150
    notice_timeout_seconds: float = 30.0
    missed_notice_timeout_seconds: float = 60.0
    queue_delay_seconds: float = 1.0
    recent_window_minutes: float = 60.0
    missed_grace_seconds: float = 5.0
    native_enabled: bool = True
    app_name: str = "Daily Prompts"

    @field_validator("max_notification_length")
    @classmethod
    def validate_length(cls, v: int) -> int:
        if v < 10:
            raise ValueError(f"max_notification_length too small: {v}")
        return v


class NotesConfig(BaseModel):
    """Daily note creation and prompt insertion."""

    template: str = DEFAULT_DAILY_TEMPLATE
    folder: str = ""
    link_handling: LinkHandling = LinkHandling.DIRECT
    section_heading: str = "## Daily Prompt"


class RetryConfig(BaseModel):
    """Retry/backoff configuration for store writes."""

    max_attempts: int = 3
    min_wait: float = 0.5
    max_wait: float = 5.0


VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    json_mode: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v_upper = v.upper()
        if v_upper not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}. Must be one of {VALID_LOG_LEVELS}")
        return v_upper


class AppConfig(BaseModel):
    """Main configuration model."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    notes: NotesConfig = Field(default_factory=NotesConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        """Create config from a plain dict (e.g. parsed YAML)."""
        data = dict(data or {})
        if isinstance(data.get("paths"), dict):
            data["paths"] = {
                key: Path(value) if isinstance(value, str) else value
                for key, value in data["paths"].items()
            }
        return cls.model_validate(data)

    def to_dict(self) -> dict:
        return self.model_dump(mode="python")
