"""
Pydantic schemas for incremental sync results and statistics.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..constants import SyncRunStatus


class UpstreamRecord(BaseModel):
    """One record as delivered by the upstream listing API."""

    upstream_id: str = Field(..., min_length=1)
    last_modified: datetime
    properties: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class RecordError(BaseModel):
    """A record-level failure collected during a run."""

    upstream_id: str
    error_type: str
    message: str


class UpstreamPage(BaseModel):
    """
    A page of upstream records plus the opaque cursor for the next page.

    ``rejected`` holds items the source could not turn into records; they
    are reported as record errors and never abort the run.
    """

    records: List[UpstreamRecord] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    rejected: List[RecordError] = Field(default_factory=list)


class LocalMapping(BaseModel):
    """What the local store knows about an upstream record."""

    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    upstream_id: str
    upstream_modified_at: Optional[datetime] = None
    content_hash: Optional[str] = None
    version: int = 1


class SyncRunResult(BaseModel):
    """Outcome of one entity type's incremental sync run."""

    entity_type: str
    tenant_id: str
    total_checked: int = 0
    new_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    errors: List[RecordError] = Field(default_factory=list)
    sync_duration_ms: int = 0
    lower_bound: Optional[datetime] = None
    previous_watermark: Optional[datetime] = None
    new_watermark: Optional[datetime] = None
    fatal_error: Optional[str] = None
    started_at: Optional[datetime] = None

    @property
    def status(self) -> SyncRunStatus:
        if self.fatal_error:
            return SyncRunStatus.FAILED
        if self.errors:
            return SyncRunStatus.PARTIAL
        return SyncRunStatus.SUCCESS

    @property
    def processed_count(self) -> int:
        return self.new_count + self.updated_count


class ComprehensiveSyncResult(BaseModel):
    """Aggregate of a full multi-entity sync."""

    results: List[SyncRunResult] = Field(default_factory=list)
    global_errors: List[str] = Field(default_factory=list)
    overall_success: bool = True
    total_duration_ms: int = 0

    def result_for(self, entity_type: str) -> Optional[SyncRunResult]:
        for result in self.results:
            if result.entity_type == entity_type:
                return result
        return None


class SyncRunRecord(BaseModel):
    """Persisted sync history row."""

    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    tenant_id: str
    status: str
    total_checked: int
    new_count: int
    updated_count: int
    skipped_count: int
    error_count: int
    lower_bound: Optional[datetime] = None
    previous_watermark: Optional[datetime] = None
    new_watermark: Optional[datetime] = None
    duration_ms: int
    fatal_error: Optional[str] = None
    started_at: datetime
    completed_at: datetime


class WatermarkState(BaseModel):
    """Committed watermark row."""

    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    tenant_id: str
    last_synced_at: Optional[datetime] = None
    entity_count: int = 0
    error_count: int = 0
    last_error_message: Optional[str] = None
    last_sync_duration_ms: Optional[int] = None
    total_runs: int = 0
    total_entities_synced: int = 0


class EntitySyncStatistics(BaseModel):
    """Read-only status projection for one entity type."""

    entity_type: str
    tenant_id: str
    last_watermark: Optional[datetime] = None
    entity_count: int = 0
    error_count: int = 0
    last_sync_duration_ms: Optional[int] = None
    total_runs: int = 0
    mapped_records: int = 0
    last_run_status: Optional[str] = None
    last_run_at: Optional[datetime] = None
