from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from lyra_notify import CONFIG_PATH, PROJECT_ROOT
from lyra_notify.clock import normalize_hhmm
from lyra_notify.errors import InvalidRecurrenceRule
from lyra_notify.queue.recurrence import RecurrenceRule

logger = logging.getLogger(__name__)


# =============================================================================
# NotificationsConfig (args/notifications.yaml)
# =============================================================================

class SchedulerConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    poll_interval_seconds: float = Field(default=60.0, gt=0)
    contextual_interval_seconds: float = Field(default=5.0, gt=0)
    max_concurrent_jobs: int = Field(default=8, ge=1)
    claim_timeout_seconds: float = Field(default=300.0, gt=0)
    timezone: str = Field(default="UTC")


class RetryConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    max_attempts: int = Field(default=3, ge=1)
    initial_delay_seconds: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_seconds: float = Field(default=30.0, ge=0)


class DispatchConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    max_workers: int = Field(default=4, ge=1)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class DefaultsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    enabled: bool = Field(default=True)
    quiet_hours_start: str = Field(default="22:00")
    quiet_hours_end: str = Field(default="08:00")
    max_notifications_per_day: int = Field(default=10, ge=0)
    priority_level: str = Field(default="normal", pattern="^(low|normal|high)$")
    timezone: str = Field(default="UTC")

    @field_validator("quiet_hours_start", "quiet_hours_end")
    @classmethod
    def _check_time(cls, value: str) -> str:
        return normalize_hhmm(value)


class RetentionConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    send_record_days: int = Field(default=30, ge=1)
    cleanup_schedule: str = Field(default="0 2 * * *")


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    db_path: str = Field(default="data/notifications.db")

    def resolve_db_path(self) -> Path:
        path = Path(self.db_path)
        return path if path.is_absolute() else PROJECT_ROOT / path


class NotificationsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    templates_file: str | None = None

    @model_validator(mode="after")
    def _check_cleanup_schedule(self) -> NotificationsConfig:
        try:
            RecurrenceRule(self.retention.cleanup_schedule, self.scheduler.timezone)
        except InvalidRecurrenceRule as e:
            raise ValueError(str(e)) from e
        return self


def config_path() -> Path:
    override = os.environ.get("LYRA_NOTIFY_CONFIG")
    return Path(override) if override else CONFIG_PATH


def load_and_validate(path: Path | None = None) -> NotificationsConfig:
    yaml_path = path or config_path()

    try:
        if yaml_path.exists():
            with open(yaml_path) as f:
                raw = yaml.safe_load(f) or {}
        else:
            raw = {}

        return NotificationsConfig.model_validate(raw)
    except Exception as e:
        logger.warning(f"Config validation failed for {yaml_path}: {e}, using defaults")
        return NotificationsConfig()
