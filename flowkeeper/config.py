from __future__ import annotations

import logging
import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, ValidationError

from .contracts import DEFAULT_QUEUE
from .definition.models import RetryConfig
from .errors import ConfigError


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "flowkeeper"


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class QueueSettings(BaseModel):
    default_queue: str = DEFAULT_QUEUE


class LockingConfig(BaseModel):
    """Evaluation lock settings. Locks older than the timeout may be taken over."""

    timeout_seconds: int = 30


class ZombieDetectionConfig(BaseModel):
    enabled: bool = True
    threshold_minutes: int = 30


class StepTimeoutConfig(BaseModel):
    """Default limit for steps that declare no timeout of their own. Zero disables it."""

    enabled: bool = True
    default_seconds: int = 3600


class FlowkeeperConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    queue: QueueSettings = QueueSettings()
    locking: LockingConfig = LockingConfig()
    zombie_detection: ZombieDetectionConfig = ZombieDetectionConfig()
    step_timeouts: StepTimeoutConfig = StepTimeoutConfig()
    retry: RetryConfig = RetryConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> FlowkeeperConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWKEEPER_CONFIG env
            variable or 'flowkeeper.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWKEEPER_CONFIG", "flowkeeper.yaml")
    try:
        if os.path.exists(config_path):
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
            config = FlowkeeperConfig(**data)
        else:
            config = FlowkeeperConfig()
    except (yaml.YAMLError, ValidationError, TypeError) as exc:
        raise ConfigError(f"Invalid configuration in {config_path}: {exc}") from exc

    env_db_url = os.getenv("FLOWKEEPER_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config


def configure_logging(level: str = "INFO") -> None:
    """Install a basic stderr handler for command line use."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
