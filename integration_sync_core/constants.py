"""
Constants and enums for the Integration Sync Core framework.

This module centralizes all magic strings and constants used throughout
the framework to ensure consistency and maintainability.
"""

from enum import Enum, IntEnum


class LogLevel(str, Enum):
    """Standard logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EnvironmentVariable(str, Enum):
    """Standard environment variable names."""

    DATABASE_URL = "DATABASE_URL"
    APP_ENV = "APP_ENV"
    LOG_LEVEL = "LOG_LEVEL"
    REFRESH_WORKER_POOL_SIZE = "REFRESH_WORKER_POOL_SIZE"
    REFRESH_BEFORE_EXPIRY_SECONDS = "REFRESH_BEFORE_EXPIRY_SECONDS"
    REFRESH_MAX_RETRIES = "REFRESH_MAX_RETRIES"
    CIRCUIT_FAILURE_THRESHOLD = "CIRCUIT_FAILURE_THRESHOLD"
    CIRCUIT_RESET_AFTER_SECONDS = "CIRCUIT_RESET_AFTER_SECONDS"
    SYNC_PAGE_SIZE = "SYNC_PAGE_SIZE"
    SYNC_MAX_PARALLEL = "SYNC_MAX_PARALLEL"
    HUBSPOT_BASE_URL = "HUBSPOT_BASE_URL"


class CircuitStatus(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class RefreshPriority(IntEnum):
    """Refresh job priorities. Higher values run first."""

    NORMAL = 0
    RETRY = 10
    NEAR_EXPIRY = 20
    EXPIRY_SWEEP = 25
    OVERDUE = 30
    MANUAL = 40


class RefreshTrigger(str, Enum):
    """Why a refresh job was queued."""

    SCHEDULED = "scheduled"
    STARTUP = "startup"
    RETRY = "retry"
    EXPIRY_SWEEP = "expiry_sweep"
    CIRCUIT_WAIT = "circuit_wait"
    MANUAL = "manual"
    ON_DEMAND = "on_demand"


class RefreshOutcome(str, Enum):
    """Status values recorded in the token refresh log."""

    SUCCESS = "success"
    FAILED = "failed"
    SHORT_CIRCUITED = "short_circuited"


class TokenEventType(str, Enum):
    """Events published by the refresh scheduler."""

    TOKEN_REFRESHED = "token_refreshed"
    TOKEN_REFRESH_FAILED = "token_refresh_failed"
    TOKEN_NEAR_EXPIRY = "token_near_expiry"
    TOKEN_EXPIRED = "token_expired"
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_CLOSED = "circuit_closed"


class EntityType(str, Enum):
    """CRM entity types, listed in dependency order."""

    CONTACT = "CONTACT"
    COMPANY = "COMPANY"
    INVOICE = "INVOICE"
    LINE_ITEM = "LINE_ITEM"


class SyncRunStatus(str, Enum):
    """Outcome of a single entity sync run."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class RecordAction(str, Enum):
    """How a single upstream record was handled."""

    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


DEFAULT_TENANT_ID = "default"

# OAuth error codes that mean the refresh token itself is unusable
TERMINAL_OAUTH_ERRORS = frozenset({"invalid_grant", "invalid_token", "unauthorized_client"})

DEFAULT_ACCESS_TOKEN_LIFETIME_SECONDS = 3600
DEFAULT_REFRESH_TOKEN_LIFETIME_SECONDS = 90 * 24 * 3600
TOKEN_EXPIRY_BUFFER_SECONDS = 300
