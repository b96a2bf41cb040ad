"""Configuration models for the signal and outbox workers."""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

# Load .env automatically on import (local dev)
load_dotenv()


class TierConfig(BaseModel):
    """Polling cadence and claim size for one signal tier."""

    interval_seconds: int = Field(gt=0)
    max_signals_per_cycle: int = Field(gt=0)


class SignalWorkerConfig(BaseModel):
    """Configuration for the signal processing workers."""

    enabled: bool = True
    max_retries: int = Field(default=3, gt=0)
    lease_duration_seconds: int = Field(default=120, gt=0)
    urgent: TierConfig = TierConfig(interval_seconds=30, max_signals_per_cycle=50)
    window: TierConfig = TierConfig(interval_seconds=30 * 60, max_signals_per_cycle=100)
    batch: TierConfig = TierConfig(interval_seconds=3 * 60 * 60, max_signals_per_cycle=200)


class OutboxWorkerConfig(BaseModel):
    """Configuration for the embedding outbox dispatcher."""

    enabled: bool = True
    polling_interval_ms: int = Field(default=5000, gt=0)
    batch_size: int = Field(default=50, gt=0)
    lease_minutes: int = Field(default=5, gt=0)
    max_retries: int = Field(default=5, gt=0)
    archive_after_days: int = Field(default=7, gt=0)
    archive_batch_size: int = Field(default=1000, gt=0)


class Settings(BaseModel):
    """Global settings for the Mastery background workers."""

    signals: SignalWorkerConfig = SignalWorkerConfig()
    outbox: OutboxWorkerConfig = OutboxWorkerConfig()
    failed_warning_threshold: int = Field(default=50, gt=0)
    failed_critical_threshold: int = Field(default=100, gt=0)
    log_level: str = "INFO"
    worker_id: Optional[str] = None


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() == "true"


def _env(name: str, default: str) -> str:
    return os.getenv(name, default)


def load_settings() -> Settings:
    """Build Settings from environment variables (.env for local dev)."""
    try:
        signals = SignalWorkerConfig(
            enabled=_env_bool("SIGNAL_WORKER_ENABLED", default=True),
            max_retries=_env("SIGNAL_MAX_RETRIES", "3"),
            lease_duration_seconds=_env("SIGNAL_LEASE_DURATION_SECONDS", "120"),
            urgent=TierConfig(
                interval_seconds=_env("SIGNAL_URGENT_INTERVAL_SECONDS", "30"),
                max_signals_per_cycle=_env("SIGNAL_URGENT_MAX_SIGNALS", "50"),
            ),
            window=TierConfig(
                interval_seconds=int(_env("SIGNAL_WINDOW_INTERVAL_MINUTES", "30")) * 60,
                max_signals_per_cycle=_env("SIGNAL_WINDOW_MAX_SIGNALS", "100"),
            ),
            batch=TierConfig(
                interval_seconds=int(_env("SIGNAL_BATCH_INTERVAL_HOURS", "3")) * 3600,
                max_signals_per_cycle=_env("SIGNAL_BATCH_MAX_SIGNALS", "200"),
            ),
        )

        outbox = OutboxWorkerConfig(
            enabled=_env_bool("OUTBOX_WORKER_ENABLED", default=True),
            polling_interval_ms=_env("OUTBOX_POLLING_INTERVAL_MS", "5000"),
            batch_size=_env("OUTBOX_BATCH_SIZE", "50"),
            lease_minutes=_env("OUTBOX_LEASE_MINUTES", "5"),
            max_retries=_env("OUTBOX_MAX_RETRIES", "5"),
            archive_after_days=_env("OUTBOX_ARCHIVE_AFTER_DAYS", "7"),
        )

        return Settings(
            signals=signals,
            outbox=outbox,
            failed_warning_threshold=_env("FAILED_BACKLOG_WARNING", "50"),
            failed_critical_threshold=_env("FAILED_BACKLOG_CRITICAL", "100"),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            worker_id=os.getenv("WORKER_ID"),
        )
    except (ValidationError, ValueError) as exc:
        raise RuntimeError(f"Invalid settings: {exc}") from exc
