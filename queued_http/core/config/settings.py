#!/usr/bin/env python3
"""
Centralized Configuration Module using Pydantic Settings

Type-safe, environment-based configuration for both sides of the
request-over-queue protocol: the dispatcher (caller side) and the worker
(execution side), plus the broker connection and logging.

Architectural Decision: Pydantic Settings for type safety and validation
- Environment variable loading with .env support
- Type validation at startup (fail fast on misconfiguration)
- Easy testing with reload_settings()
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BrokerSettings(BaseSettings):
    """
    Broker connection configuration.

    STAGE-0.1: Broker selection

    BROKER_TYPE selects the implementation returned by create_connection():
    - memory: in-process broker (single process, tests)
    - redis: Redis lists, one key per queue
    """

    BROKER_TYPE: Literal["memory", "redis"] = Field(default="memory", description="Broker implementation")

    REDIS_HOST: str = Field(default="localhost", description="Redis server host")
    REDIS_PORT: int = Field(default=6379, description="Redis server port")
    REDIS_DB: int = Field(default=0, description="Redis database number")
    REDIS_PASSWORD: str | None = Field(default=None, description="Redis password (if required)")
    REDIS_QUEUE_PREFIX: str = Field(default="queue:", description="Key prefix for queue lists")
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(default=5, description="Connection timeout in seconds")

    BROKER_POLL_INTERVAL_SECONDS: float = Field(
        default=1.0, description="Blocking pop timeout; bounds how fast pause() is noticed"
    )
    BROKER_PUBLISH_MAX_RETRIES: int = Field(default=3, description="Retries for confirm-mode publishes")
    REDIS_REQUEST_QUEUE_TTL_SECONDS: int = Field(
        default=300, gt=0, description="Expiry refreshed on every push to a per-request queue"
    )

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class DispatcherSettings(BaseSettings):
    """
    Caller-side teardown budgets.

    STAGE-0.2: Dispatcher configuration

    Budgets are soft: teardown continues when they are exceeded.
    """

    DISPATCH_DRAIN_TIMEOUT_SECONDS: float = Field(default=0.5, description="Confirmation/RPC drain budget per queue")
    DISPATCH_PAUSE_TIMEOUT_SECONDS: float = Field(default=1.0, description="Pause budget per queue")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class WorkerSettings(BaseSettings):
    """
    Worker-side execution and rate limiting.

    STAGE-0.3: Worker configuration
    """

    WORKER_DRAIN_TIMEOUT_SECONDS: float = Field(default=10.0, description="Confirmation/RPC drain budget per queue")
    WORKER_PAUSE_TIMEOUT_SECONDS: float = Field(default=10.0, description="Pause budget per queue")

    RATE_LIMIT_INTERVAL_SECONDS: float = Field(default=1.0, description="Rate limit window length")
    RATE_LIMIT_PER_INTERVAL: int = Field(default=10, description="Jobs started per window")
    RATE_LIMIT_CONCURRENCY: int = Field(default=10, description="Maximum concurrently active jobs")
    RATE_LIMIT_AUTOSTART: bool = Field(default=True, description="Start consuming on construction")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class LoggingSettings(BaseSettings):
    """
    Logging configuration for structured logging.

    STAGE-L: Logging configuration
    """

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class Settings(BaseSettings):
    """
    Main settings class that aggregates all configuration sections.

    STAGE-0: Centralized configuration initialization

    Usage:
        from queued_http.core.config import get_settings

        settings = get_settings()
        budget = settings.dispatcher.DISPATCH_DRAIN_TIMEOUT_SECONDS
        host = settings.broker.REDIS_HOST
    """

    # Broker settings
    BROKER_TYPE: Literal["memory", "redis"] = Field(default="memory", description="Broker implementation")
    REDIS_HOST: str = Field(default="localhost", description="Redis server host")
    REDIS_PORT: int = Field(default=6379, description="Redis server port")
    REDIS_DB: int = Field(default=0, description="Redis database number")
    REDIS_PASSWORD: str | None = Field(default=None, description="Redis password (if required)")
    REDIS_QUEUE_PREFIX: str = Field(default="queue:", description="Key prefix for queue lists")
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(default=5, description="Connection timeout in seconds")
    BROKER_POLL_INTERVAL_SECONDS: float = Field(default=1.0, description="Blocking pop timeout")
    BROKER_PUBLISH_MAX_RETRIES: int = Field(default=3, description="Retries for confirm-mode publishes")
    REDIS_REQUEST_QUEUE_TTL_SECONDS: int = Field(default=300, gt=0, description="Per-request queue expiry")

    # Dispatcher settings
    DISPATCH_DRAIN_TIMEOUT_SECONDS: float = Field(default=0.5, description="Confirmation/RPC drain budget")
    DISPATCH_PAUSE_TIMEOUT_SECONDS: float = Field(default=1.0, description="Pause budget")

    # Worker settings
    WORKER_DRAIN_TIMEOUT_SECONDS: float = Field(default=10.0, description="Confirmation/RPC drain budget")
    WORKER_PAUSE_TIMEOUT_SECONDS: float = Field(default=10.0, description="Pause budget")
    RATE_LIMIT_INTERVAL_SECONDS: float = Field(default=1.0, description="Rate limit window length")
    RATE_LIMIT_PER_INTERVAL: int = Field(default=10, description="Jobs started per window")
    RATE_LIMIT_CONCURRENCY: int = Field(default=10, description="Maximum concurrently active jobs")
    RATE_LIMIT_AUTOSTART: bool = Field(default=True, description="Start consuming on construction")

    # Logging settings
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @property
    def broker(self) -> BrokerSettings:
        """Get broker settings."""
        return BrokerSettings(
            BROKER_TYPE=self.BROKER_TYPE,
            REDIS_HOST=self.REDIS_HOST,
            REDIS_PORT=self.REDIS_PORT,
            REDIS_DB=self.REDIS_DB,
            REDIS_PASSWORD=self.REDIS_PASSWORD,
            REDIS_QUEUE_PREFIX=self.REDIS_QUEUE_PREFIX,
            REDIS_SOCKET_CONNECT_TIMEOUT=self.REDIS_SOCKET_CONNECT_TIMEOUT,
            BROKER_POLL_INTERVAL_SECONDS=self.BROKER_POLL_INTERVAL_SECONDS,
            BROKER_PUBLISH_MAX_RETRIES=self.BROKER_PUBLISH_MAX_RETRIES,
            REDIS_REQUEST_QUEUE_TTL_SECONDS=self.REDIS_REQUEST_QUEUE_TTL_SECONDS,
        )

    @property
    def dispatcher(self) -> DispatcherSettings:
        """Get dispatcher settings."""
        return DispatcherSettings(
            DISPATCH_DRAIN_TIMEOUT_SECONDS=self.DISPATCH_DRAIN_TIMEOUT_SECONDS,
            DISPATCH_PAUSE_TIMEOUT_SECONDS=self.DISPATCH_PAUSE_TIMEOUT_SECONDS,
        )

    @property
    def worker(self) -> WorkerSettings:
        """Get worker settings."""
        return WorkerSettings(
            WORKER_DRAIN_TIMEOUT_SECONDS=self.WORKER_DRAIN_TIMEOUT_SECONDS,
            WORKER_PAUSE_TIMEOUT_SECONDS=self.WORKER_PAUSE_TIMEOUT_SECONDS,
            RATE_LIMIT_INTERVAL_SECONDS=self.RATE_LIMIT_INTERVAL_SECONDS,
            RATE_LIMIT_PER_INTERVAL=self.RATE_LIMIT_PER_INTERVAL,
            RATE_LIMIT_CONCURRENCY=self.RATE_LIMIT_CONCURRENCY,
            RATE_LIMIT_AUTOSTART=self.RATE_LIMIT_AUTOSTART,
        )

    @property
    def logging(self) -> LoggingSettings:
        """Get logging settings."""
        return LoggingSettings(LOG_LEVEL=self.LOG_LEVEL, LOG_FORMAT=self.LOG_FORMAT)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


# Global settings instance (singleton pattern)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton).

    Returns:
        Settings: Global settings instance
    """
    global _settings

    if _settings is None:
        _settings = Settings()

    return _settings


def reload_settings() -> Settings:
    """
    Reload settings (useful for testing).

    Returns:
        Settings: New settings instance
    """
    global _settings
    _settings = Settings()
    return _settings
