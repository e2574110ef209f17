"""
SQLAlchemy models and database management.

This module provides a common entry point for all models.
"""

from .db_base import (
    JSON,
    EncryptedBinary,
    TimestampMixin,
    UUIDMixin,
    ensure_utc,
    utc_now,
)
from .db_config import (
    Base,
    DatabaseConfig,
    DatabaseManager,
    close_db,
    get_db_manager,
    get_development_config,
    get_production_config,
    import_all_models,
    initialize_db,
    set_db_manager,
)
from .db_credential_models import OAuthCredential, TokenRefreshLog
from .db_sync_models import EntityMapping, SyncRunHistory, SyncWatermark

__all__ = [
    # Base definitions
    "Base",
    "JSON",
    "EncryptedBinary",
    "TimestampMixin",
    "UUIDMixin",
    "utc_now",
    "ensure_utc",
    # Configuration
    "DatabaseConfig",
    "DatabaseManager",
    "import_all_models",
    "initialize_db",
    "get_db_manager",
    "set_db_manager",
    "close_db",
    "get_production_config",
    "get_development_config",
    # Models
    "OAuthCredential",
    "TokenRefreshLog",
    "SyncWatermark",
    "SyncRunHistory",
    "EntityMapping",
]
