"""
Centralized configuration management for the Integration Sync Core framework.

This module provides a unified configuration system with support for:
- Environment variables
- Token refresh and circuit breaker tuning
- Incremental sync tuning
- Validation using Pydantic
"""

import os
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .constants import EntityType, EnvironmentVariable, LogLevel


def _env_int(name: EnvironmentVariable, default: int) -> int:
    return int(os.getenv(name.value, str(default)))


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.LOG_LEVEL.value, LogLevel.INFO.value),
        description="Logging level",
    )
    format: str = Field(default="%(message)s", description="Log format string")

    @field_validator("level")
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {level.value for level in LogLevel}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class RefreshSchedulerConfig(BaseModel):
    """Tuning for the token refresh scheduler."""

    worker_pool_size: int = Field(
        default_factory=lambda: _env_int(EnvironmentVariable.REFRESH_WORKER_POOL_SIZE, 4),
        ge=1,
        description="Maximum refresh jobs processed concurrently",
    )
    refresh_before_expiry_seconds: int = Field(
        default_factory=lambda: _env_int(EnvironmentVariable.REFRESH_BEFORE_EXPIRY_SECONDS, 1800),
        ge=0,
        description="Refresh this long before the access token expires",
    )
    next_refresh_buffer_seconds: int = Field(
        default=1800, ge=0, description="Subtracted from expires_in to place the next refresh"
    )
    min_refresh_delay_seconds: int = Field(
        default=60, ge=0, description="Lower bound for the self-scheduled next refresh"
    )
    max_retries: int = Field(
        default_factory=lambda: _env_int(EnvironmentVariable.REFRESH_MAX_RETRIES, 3),
        ge=0,
        description="Retries after a transient refresh failure",
    )
    retry_base_delay_seconds: int = Field(default=5, ge=1, description="Backoff base delay")
    retry_multiplier: float = Field(default=2.0, ge=1.0, description="Backoff multiplier")
    retry_max_delay_seconds: int = Field(default=300, ge=1, description="Backoff cap")
    retry_jitter: bool = Field(default=False, description="Randomize retry delays by +/-25%")
    health_check_interval_seconds: int = Field(default=300, ge=1)
    expiry_sweep_interval_seconds: int = Field(default=3600, ge=1)
    failure_alert_threshold: int = Field(
        default=3, ge=0, description="Health check flags credentials above this failure count"
    )
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    access_token_wait_seconds: float = Field(
        default=30.0, gt=0, description="How long an access token read waits for a running refresh"
    )


class CircuitBreakerConfig(BaseModel):
    """Per (provider, tenant) circuit breaker settings."""

    failure_threshold: int = Field(
        default_factory=lambda: _env_int(EnvironmentVariable.CIRCUIT_FAILURE_THRESHOLD, 5),
        ge=1,
    )
    reset_after_seconds: float = Field(
        default_factory=lambda: float(
            os.getenv(EnvironmentVariable.CIRCUIT_RESET_AFTER_SECONDS.value, "60")
        ),
        gt=0,
    )


class SyncConfig(BaseModel):
    """Incremental synchronization settings."""

    entity_types: List[str] = Field(
        default_factory=lambda: [entity_type.value for entity_type in EntityType],
        description="Registered entity types in sync order",
    )
    default_entity_type: str = Field(default=EntityType.INVOICE.value)
    page_size: int = Field(
        default_factory=lambda: _env_int(EnvironmentVariable.SYNC_PAGE_SIZE, 100), ge=1, le=200
    )
    max_pages: int = Field(default=10000, ge=1, description="Guard against runaway pagination")
    max_parallel_entity_syncs: int = Field(
        default_factory=lambda: _env_int(EnvironmentVariable.SYNC_MAX_PARALLEL, 1), ge=1
    )
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("entity_types")
    def validate_entity_types(cls, v: List[str]) -> List[str]:
        """Entity types must be unique and non-empty."""
        if not v:
            raise ValueError("At least one entity type must be registered")
        if len(set(v)) != len(v):
            raise ValueError(f"Duplicate entity types: {v}")
        return v


class HubSpotConfig(BaseModel):
    """CRM connection settings."""

    base_url: str = Field(
        default_factory=lambda: os.getenv(
            EnvironmentVariable.HUBSPOT_BASE_URL.value, "https://api.hubapi.com"
        )
    )
    provider: str = Field(default="hubspot", description="Token store provider key")


class AppConfig(BaseModel):
    """Main application configuration."""

    environment: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.APP_ENV.value, "development"),
        description="Application environment",
    )
    debug: bool = Field(
        default_factory=lambda: os.getenv("DEBUG", "false").lower() == "true",
        description="Debug mode",
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    refresh: RefreshSchedulerConfig = Field(default_factory=RefreshSchedulerConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    hubspot: HubSpotConfig = Field(default_factory=HubSpotConfig)

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create configuration from environment variables."""
        return cls()


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def set_config(config: AppConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration instance."""
    global _config
    _config = None
