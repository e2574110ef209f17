"""
Watermark store for incremental sync.

One row per (entity_type, tenant_id) holds the last committed
``last_synced_at``. The value only ever moves forward: a commit writes
``max(stored, observed)``. Every run, committed or fatal, also leaves a
``sync_run_history`` row.
"""

from datetime import datetime
from typing import List, Optional

from ..db.db_base import ensure_utc
from ..db.db_sync_models import SyncRunHistory, SyncWatermark
from ..schemas.sync_schemas import SyncRunRecord, SyncRunResult, WatermarkState
from ..utils.crud_helpers import get_record, list_records
from .base_service import SessionManagedService


def _later(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


class WatermarkStore(SessionManagedService):
    """Persisted sync watermarks and run history."""

    def get_watermark(self, entity_type: str, tenant_id: str) -> Optional[datetime]:
        """Committed watermark, or None when the entity type never synced."""
        with self.transaction("get_watermark") as session:
            row = get_record(
                session, SyncWatermark, {"entity_type": entity_type, "tenant_id": tenant_id}
            )
            return ensure_utc(row.last_synced_at) if row else None

    def get_state(self, entity_type: str, tenant_id: str) -> Optional[WatermarkState]:
        with self.transaction("get_watermark_state") as session:
            row = get_record(
                session, SyncWatermark, {"entity_type": entity_type, "tenant_id": tenant_id}
            )
            if row is None:
                return None
            state = WatermarkState.model_validate(row)
            state.last_synced_at = ensure_utc(state.last_synced_at)
            return state

    def list_states(self, tenant_id: str) -> List[WatermarkState]:
        with self.transaction("list_watermark_states") as session:
            rows = list_records(
                session, SyncWatermark, {"tenant_id": tenant_id}, order_by="entity_type"
            )
            states = []
            for row in rows:
                state = WatermarkState.model_validate(row)
                state.last_synced_at = ensure_utc(state.last_synced_at)
                states.append(state)
            return states

    def _history_row(self, result: SyncRunResult) -> SyncRunHistory:
        return SyncRunHistory(
            entity_type=result.entity_type,
            tenant_id=result.tenant_id,
            status=result.status.value,
            total_checked=result.total_checked,
            new_count=result.new_count,
            updated_count=result.updated_count,
            skipped_count=result.skipped_count,
            error_count=len(result.errors),
            lower_bound=result.lower_bound,
            previous_watermark=result.previous_watermark,
            new_watermark=result.new_watermark,
            duration_ms=result.sync_duration_ms,
            fatal_error=result.fatal_error[:2000] if result.fatal_error else None,
            started_at=result.started_at or self.clock(),
            completed_at=self.clock(),
        )

    def commit(self, result: SyncRunResult) -> Optional[datetime]:
        """
        Commit a completed run: advance the watermark and write its history row.

        The watermark row and the history row are written in one transaction.
        A result without ``new_watermark`` (no successful record) leaves the
        stored value unchanged but still updates the run counters.

        Returns:
            The committed watermark
        """
        with self.transaction("commit_watermark") as session:
            row = get_record(
                session,
                SyncWatermark,
                {"entity_type": result.entity_type, "tenant_id": result.tenant_id},
            )
            if row is None:
                row = SyncWatermark(
                    entity_type=result.entity_type,
                    tenant_id=result.tenant_id,
                    total_runs=0,
                    total_entities_synced=0,
                )
                session.add(row)

            stored = ensure_utc(row.last_synced_at)
            committed = _later(stored, result.new_watermark)

            row.last_synced_at = committed
            row.entity_count = result.processed_count
            row.error_count = len(result.errors)
            row.last_error_message = result.errors[-1].message[:2000] if result.errors else None
            row.last_sync_duration_ms = result.sync_duration_ms
            row.total_runs = (row.total_runs or 0) + 1
            row.total_entities_synced = (row.total_entities_synced or 0) + result.processed_count
            row.updated_at = self.clock()

            result.new_watermark = committed
            session.add(self._history_row(result))

        self.logger.info(
            "Sync watermark committed",
            extra={
                "entity_type": result.entity_type,
                "tenant_id": result.tenant_id,
                "previous_watermark": stored.isoformat() if stored else None,
                "new_watermark": committed.isoformat() if committed else None,
            },
        )
        return committed

    def record_run(self, result: SyncRunResult) -> None:
        """Write a history row without touching the watermark (fatal runs)."""
        with self.transaction("record_sync_run") as session:
            session.add(self._history_row(result))

    def get_run_history(
        self, tenant_id: str, entity_type: Optional[str] = None, limit: int = 20
    ) -> List[SyncRunRecord]:
        """Most recent runs first."""
        filters = {"tenant_id": tenant_id}
        if entity_type:
            filters["entity_type"] = entity_type

        with self.transaction("get_sync_history") as session:
            rows = list_records(
                session,
                SyncRunHistory,
                filters,
                limit=limit,
                order_by="completed_at",
                descending=True,
            )
            records = []
            for row in rows:
                record = SyncRunRecord.model_validate(row)
                for name in (
                    "lower_bound",
                    "previous_watermark",
                    "new_watermark",
                    "started_at",
                    "completed_at",
                ):
                    setattr(record, name, ensure_utc(getattr(record, name)))
                records.append(record)
            return records

    def last_run(self, entity_type: str, tenant_id: str) -> Optional[SyncRunRecord]:
        history = self.get_run_history(tenant_id, entity_type=entity_type, limit=1)
        return history[0] if history else None
