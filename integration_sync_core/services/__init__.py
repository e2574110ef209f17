from .base_service import SessionManagedService
from .entity_mapping_service import EntityMappingService
from .incremental_sync_service import IncrementalSyncService
from .refresh_scheduler import RefreshScheduler
from .token_refresh_client import TokenRefreshClient
from .token_store import TokenStore
from .watermark_store import WatermarkStore

__all__ = [
    "SessionManagedService",
    "EntityMappingService",
    "IncrementalSyncService",
    "RefreshScheduler",
    "TokenRefreshClient",
    "TokenStore",
    "WatermarkStore",
]
