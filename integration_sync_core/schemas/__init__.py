from .credential_schemas import (
    OAuthCredentialRead,
    OAuthTokenResponse,
    ProviderConfig,
    RefreshLogEntry,
    TokenStatistics,
    credential_key,
)
from .refresh_schemas import (
    CircuitSnapshot,
    HealthReport,
    SchedulerStatistics,
    UnhealthyCredential,
)
from .sync_schemas import (
    ComprehensiveSyncResult,
    EntitySyncStatistics,
    LocalMapping,
    RecordError,
    SyncRunRecord,
    SyncRunResult,
    UpstreamPage,
    UpstreamRecord,
    WatermarkState,
)

__all__ = [
    "OAuthCredentialRead",
    "OAuthTokenResponse",
    "ProviderConfig",
    "RefreshLogEntry",
    "TokenStatistics",
    "credential_key",
    "CircuitSnapshot",
    "HealthReport",
    "SchedulerStatistics",
    "UnhealthyCredential",
    "ComprehensiveSyncResult",
    "EntitySyncStatistics",
    "LocalMapping",
    "RecordError",
    "SyncRunRecord",
    "SyncRunResult",
    "UpstreamPage",
    "UpstreamRecord",
    "WatermarkState",
]
