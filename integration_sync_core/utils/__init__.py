"""Utility modules for the Integration Sync Core."""

from .backoff_utils import (
    calculate_exponential_backoff,
    calculate_initial_refresh_delay,
    calculate_next_refresh_delay,
)
from .crud_helpers import (
    count_records,
    delete_records,
    get_record,
    list_records,
    upsert_record,
)
from .encryption_utils import decrypt_token, decrypt_value, encrypt_token, encrypt_value
from .logger import ContextAwareLogger, TenantContextFilter, configure_logging, get_logger

__all__ = [
    # Backoff
    "calculate_exponential_backoff",
    "calculate_next_refresh_delay",
    "calculate_initial_refresh_delay",
    # Generic CRUD helpers
    "get_record",
    "list_records",
    "count_records",
    "upsert_record",
    "delete_records",
    # Encryption utilities
    "encrypt_value",
    "decrypt_value",
    "encrypt_token",
    "decrypt_token",
    # Logging utilities
    "ContextAwareLogger",
    "TenantContextFilter",
    "configure_logging",
    "get_logger",
]
