"""Metering engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class CounterBackend(str, Enum):
    REDIS = "redis"
    MEMORY = "memory"


class MeteringSettings(BaseSettings):
    """Engine settings loaded from environment variables with METERING_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="METERING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    env: PlatformEnv = PlatformEnv.DEV
    debug: bool = False

    # Durable store
    database_url: str = "sqlite+aiosqlite:///.metering/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Counter store
    counter_backend: CounterBackend = CounterBackend.MEMORY
    redis_url: SecretStr | None = None
    counter_prefix: str = "usage:"
    allow_negative_usage: bool = False

    # Alerting
    alert_thresholds: tuple[float, ...] = (80.0, 100.0)
    alert_dedup_hours: int = 24

    # Logging
    structured_logging: bool = False
    log_level: str = "INFO"

    @field_validator("redis_url", mode="before")
    @classmethod
    def mask_url_in_repr(cls, v: str | None) -> SecretStr | None:
        if v is None:
            return None
        if isinstance(v, SecretStr):
            return v
        return SecretStr(v)

    @field_validator("alert_thresholds")
    @classmethod
    def sort_thresholds(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        if not v:
            raise ValueError("alert_thresholds must contain at least one threshold")
        if any(t <= 0 for t in v):
            raise ValueError("alert_thresholds must be positive percentages")
        return tuple(sorted(v))

    @field_validator("alert_dedup_hours")
    @classmethod
    def positive_window(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("alert_dedup_hours must be > 0")
        return v

    def is_redis_configured(self) -> bool:
        return self.counter_backend == CounterBackend.REDIS and self.redis_url is not None


def load_settings(**overrides: object) -> MeteringSettings:
    """Load settings from environment, with optional overrides for testing."""
    settings = MeteringSettings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings for environment: %s", settings.env.value)

    return settings
