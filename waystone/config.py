from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_EXECUTION_TIMEOUT,
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_TICK_INTERVAL,
)


class RunnerConfig(BaseModel):
    """Settings for background execution and whole-workflow retries."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = 1.5
    backoff_jitter: float = 0.5
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    execution_timeout: float = DEFAULT_EXECUTION_TIMEOUT


class SchedulerConfig(BaseModel):
    tick_interval: float = DEFAULT_TICK_INTERVAL


class WaystoneConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    runner: RunnerConfig = RunnerConfig()
    scheduler: SchedulerConfig = SchedulerConfig()


def _read_yaml(config_path: str) -> dict:
    if not os.path.exists(config_path):
        return {}
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def load_config(path: Optional[str] = None) -> WaystoneConfig:
    """Load configuration from a YAML file, then apply environment overrides.

    Args:
        path: Optional path to config file. Falls back to WAYSTONE_CONFIG env
            variable or 'config.yaml' in the current directory. A missing file
            yields the defaults.

    Environment:
        WAYSTONE_DATABASE_URL (or DATABASE_URL) replaces ``database_url`` and
        WAYSTONE_LOG_LEVEL replaces ``log_level``.
    """

    config = WaystoneConfig.model_validate(
        _read_yaml(path or os.getenv("WAYSTONE_CONFIG", "config.yaml"))
    )

    overrides = {
        "database_url": os.getenv("WAYSTONE_DATABASE_URL") or os.getenv("DATABASE_URL"),
        "log_level": os.getenv("WAYSTONE_LOG_LEVEL"),
    }
    return config.model_copy(update={key: value for key, value in overrides.items() if value})
