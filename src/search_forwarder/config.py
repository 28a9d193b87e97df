from __future__ import annotations

import json
from enum import Enum
from functools import lru_cache
from typing import Any, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class IndexRotationPeriod(str, Enum):
    """How often the target index name rolls over."""

    NO_ROTATION = "NoRotation"
    ONE_HOUR = "OneHour"
    ONE_DAY = "OneDay"
    ONE_WEEK = "OneWeek"
    ONE_MONTH = "OneMonth"

    @classmethod
    def _missing_(cls, value: object):
        aliases = {
            "none": cls.NO_ROTATION,
            "norotation": cls.NO_ROTATION,
            "hourly": cls.ONE_HOUR,
            "onehour": cls.ONE_HOUR,
            "daily": cls.ONE_DAY,
            "oneday": cls.ONE_DAY,
            "weekly": cls.ONE_WEEK,
            "oneweek": cls.ONE_WEEK,
            "monthly": cls.ONE_MONTH,
            "onemonth": cls.ONE_MONTH,
        }
        if isinstance(value, str):
            return aliases.get(value.strip().lower())
        return None


class CompressionFormat(str, Enum):
    """Compression applied to backup objects."""

    UNCOMPRESSED = "UNCOMPRESSED"
    GZIP = "GZIP"
    ZIP = "ZIP"
    SNAPPY = "Snappy"

    @classmethod
    def _missing_(cls, value: object):
        aliases = {
            "none": cls.UNCOMPRESSED,
            "uncompressed": cls.UNCOMPRESSED,
            "gzip": cls.GZIP,
            "zip": cls.ZIP,
            "snappy": cls.SNAPPY,
        }
        if isinstance(value, str):
            return aliases.get(value.strip().lower())
        return None


class ForwarderSettings(BaseSettings):
    """Runtime settings, read from FORWARDER_* environment variables or .env."""

    # sink
    index_name: str = "events"
    type_name: Optional[str] = None
    index_rotation_period: IndexRotationPeriod = IndexRotationPeriod.NO_ROTATION
    sink_url: str = "http://localhost:9200"
    sink_request_timeout_sec: float = Field(10.0, gt=0)
    sink_username: Optional[str] = None
    sink_password: Optional[str] = None

    # delivery
    retry_duration_sec: int = Field(300, ge=0, le=7200)
    retry_initial_backoff_ms: int = Field(500, ge=1)
    retry_max_backoff_ms: int = Field(30_000, ge=1)
    buffer_size_bytes: int = Field(5 * 1024 * 1024, gt=0)
    buffer_interval_sec: float = Field(60.0, gt=0)
    max_pending_batches: int = Field(4, ge=1)
    delivery_workers: int = Field(1, ge=1)
    shutdown_timeout_sec: float = Field(30.0, gt=0)

    # backup
    backup_prefix: str = "backup/"
    backup_compression: CompressionFormat = CompressionFormat.UNCOMPRESSED
    backup_dir: str = ".backup"
    backup_alert_after_failures: int = Field(5, ge=1)

    # queue
    poll_max_records: int = Field(10, ge=1, le=10)
    poll_wait_sec: float = Field(20.0, ge=0, le=20)
    visibility_timeout_sec: float = Field(30.0, gt=0)

    # subscription
    subscription_id: Optional[str] = None
    subscription_filter_policy: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="FORWARDER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("type_name", "subscription_id", mode="before")
    @classmethod
    def _blank_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    # accepts the lower-case aliases as well as the canonical values
    @field_validator("index_rotation_period", mode="before")
    @classmethod
    def _rotation_alias(cls, v):
        return IndexRotationPeriod(v) if isinstance(v, str) else v

    @field_validator("backup_compression", mode="before")
    @classmethod
    def _compression_alias(cls, v):
        return CompressionFormat(v) if isinstance(v, str) else v

    # Kept as raw JSON text so an empty env var means "no filter policy".
    @field_validator("subscription_filter_policy", mode="before")
    @classmethod
    def _normalize_filter_policy(cls, v):
        if v is None:
            return None
        if isinstance(v, dict):
            return json.dumps(v, sort_keys=True)
        if isinstance(v, str):
            if not v.strip():
                return None
            if not isinstance(json.loads(v), dict):
                raise ValueError("subscription_filter_policy must be a JSON object")
            return v
        raise ValueError("subscription_filter_policy must be a JSON object")

    @property
    def filter_policy(self) -> Optional[dict[str, Any]]:
        """Parsed subscription filter policy, or None when not configured."""
        if self.subscription_filter_policy is None:
            return None
        return json.loads(self.subscription_filter_policy)

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> "ForwarderSettings":
        if self.retry_max_backoff_ms < self.retry_initial_backoff_ms:
            raise ValueError("retry_max_backoff_ms must be >= retry_initial_backoff_ms")
        return self


@lru_cache()
def get_settings() -> ForwarderSettings:
    return ForwarderSettings()
