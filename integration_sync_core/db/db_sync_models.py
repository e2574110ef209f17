"""
Incremental sync models: watermarks, run history and local entity mappings.
"""

from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, String, Text

from .db_base import JSON, TimestampMixin, UUIDMixin, utc_now
from .db_config import Base


class SyncWatermark(Base, UUIDMixin, TimestampMixin):
    """Last committed sync point per (entity_type, tenant_id)."""

    __tablename__ = "sync_watermarks"

    entity_type = Column(String(50), nullable=False)
    tenant_id = Column(String(100), nullable=False)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    # Last committed run
    entity_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    last_error_message = Column(Text, nullable=True)
    last_sync_duration_ms = Column(Integer, nullable=True)

    # Rollups
    total_runs = Column(Integer, nullable=False, default=0)
    total_entities_synced = Column(BigInteger, nullable=False, default=0)

    __table_args__ = (Index("ix_sync_watermark_key", "entity_type", "tenant_id", unique=True),)


class SyncRunHistory(Base, UUIDMixin):
    """Audit row per sync run, successful or not."""

    __tablename__ = "sync_run_history"

    entity_type = Column(String(50), nullable=False)
    tenant_id = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False)
    total_checked = Column(Integer, nullable=False, default=0)
    new_count = Column(Integer, nullable=False, default=0)
    updated_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    lower_bound = Column(DateTime(timezone=True), nullable=True)
    previous_watermark = Column(DateTime(timezone=True), nullable=True)
    new_watermark = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=False, default=0)
    fatal_error = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (Index("ix_sync_history_lookup", "tenant_id", "entity_type", "completed_at"),)


class EntityMapping(Base, UUIDMixin, TimestampMixin):
    """Local representation of one upstream record."""

    __tablename__ = "entity_mappings"

    tenant_id = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False)
    upstream_id = Column(String(100), nullable=False)
    upstream_modified_at = Column(DateTime(timezone=True), nullable=True)
    attributes = Column(JSON, nullable=False)
    content_hash = Column(String(64), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    last_synced_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_entity_mapping_key", "tenant_id", "entity_type", "upstream_id", unique=True),
    )
