"""
Incremental synchronization engine.

Pulls upstream records modified since the committed watermark, upserts them
through an EntityMapper and advances the watermark to the newest
successfully processed record. Record-level failures are collected and
never abort a run; upstream or pagination failures abort it without moving
the watermark.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from ..config import SyncConfig, get_config
from ..constants import DEFAULT_TENANT_ID
from ..context.tenant_context import tenant_context
from ..db.db_base import ensure_utc, utc_now
from ..exceptions import (
    FatalSyncError,
    RepositoryError,
    UpstreamFetchError,
    UpstreamUnavailableError,
    correlation_context,
    validation_failed,
)
from ..processors.mapper_interface import EntityMapper
from ..processors.upstream_source import UpstreamEntitySource
from ..schemas.sync_schemas import (
    ComprehensiveSyncResult,
    EntitySyncStatistics,
    LocalMapping,
    RecordError,
    SyncRunRecord,
    SyncRunResult,
    UpstreamPage,
    UpstreamRecord,
)
from ..utils.logger import get_logger
from .watermark_store import WatermarkStore

RunOutcome = Tuple[SyncRunResult, Optional[FatalSyncError]]


class IncrementalSyncService:
    """
    Incremental Sync service.

    Provides:
    - watermark-driven sync of one entity type, or of all registered types
    - lower-bound override that never regresses the committed watermark
    - read-only sync statistics and run history
    """

    def __init__(
        self,
        source: UpstreamEntitySource,
        mapper: EntityMapper,
        watermark_store: Optional[WatermarkStore] = None,
        config: Optional[SyncConfig] = None,
        tenant_id: str = DEFAULT_TENANT_ID,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            source: Upstream listing API
            mapper: Local store the records are upserted into
            watermark_store: Watermark persistence, built on the global DB manager by default
            config: Sync settings, defaults to the app config
            tenant_id: Tenant the sync runs for
            clock: Callable returning the current aware UTC datetime
        """
        self.source = source
        self.mapper = mapper
        self.clock = clock or utc_now
        self.watermark_store = watermark_store or WatermarkStore(clock=self.clock)
        self.config = config or get_config().sync
        self.tenant_id = tenant_id
        self.entity_types: List[str] = list(self.config.entity_types)
        self.logger = get_logger()

    def _require_registered(self, entity_type: str) -> None:
        if entity_type not in self.entity_types:
            raise validation_failed("entity_type", entity_type, "entity type is not registered")

    # ==================== SYNC OPERATIONS ====================

    def perform_incremental_sync(self, entity_type: Optional[str] = None) -> SyncRunResult:
        """
        Sync one entity type from its committed watermark.

        Raises:
            FatalSyncError: The run aborted; the watermark did not move
        """
        entity_type = entity_type or self.config.default_entity_type
        self._require_registered(entity_type)
        return self._raise_if_fatal(self._run(entity_type))

    def perform_incremental_sync_since(
        self, since: datetime, entity_type: Optional[str] = None
    ) -> SyncRunResult:
        """
        Sync one entity type from an explicit lower bound.

        The committed watermark becomes max(stored, observed), so an older
        ``since`` re-syncs records without moving the watermark backwards.
        """
        entity_type = entity_type or self.config.default_entity_type
        self._require_registered(entity_type)
        return self._raise_if_fatal(
            self._run(entity_type, since=ensure_utc(since), override=True)
        )

    def sync_entity_type(self, entity_type: str) -> SyncRunResult:
        self._require_registered(entity_type)
        return self._raise_if_fatal(self._run(entity_type))

    def perform_full_incremental_sync(self) -> ComprehensiveSyncResult:
        """
        Sync every registered entity type.

        Types run one after another unless max_parallel_entity_syncs > 1.
        A fatal type never stops the others.
        """
        started = time.monotonic()
        parallelism = min(self.config.max_parallel_entity_syncs, len(self.entity_types))

        if parallelism > 1:
            with ThreadPoolExecutor(
                max_workers=parallelism, thread_name_prefix="incremental-sync"
            ) as pool:
                outcomes = list(pool.map(self._run, self.entity_types))
        else:
            outcomes = [self._run(entity_type) for entity_type in self.entity_types]

        results = [result for result, _ in outcomes]
        global_errors = [
            f"{result.entity_type}: {fatal.message}"
            for result, fatal in outcomes
            if isinstance(fatal, UpstreamUnavailableError)
        ]
        comprehensive = ComprehensiveSyncResult(
            results=results,
            global_errors=global_errors,
            overall_success=not global_errors and not any(r.fatal_error for r in results),
            total_duration_ms=int((time.monotonic() - started) * 1000),
        )

        self.logger.info(
            "Full incremental sync completed",
            extra={
                "tenant_id": self.tenant_id,
                "entity_types": len(results),
                "overall_success": comprehensive.overall_success,
                "processed": sum(r.processed_count for r in results),
                "record_errors": sum(len(r.errors) for r in results),
                "global_errors": len(global_errors),
                "duration_ms": comprehensive.total_duration_ms,
            },
        )
        return comprehensive

    # ==================== RUN ====================

    def _raise_if_fatal(self, outcome: RunOutcome) -> SyncRunResult:
        result, fatal = outcome
        if fatal is not None:
            raise fatal
        return result

    def _pages(self, entity_type: str, since: Optional[datetime]) -> Iterator[UpstreamPage]:
        cursor: Optional[str] = None
        seen_cursors = set()
        pages = 0

        while True:
            pages += 1
            if pages > self.config.max_pages:
                raise UpstreamFetchError(
                    f"Pagination exceeded {self.config.max_pages} pages",
                    entity_type=entity_type,
                )

            page = self.source.fetch_modified(entity_type, since, cursor, self.config.page_size)
            yield page

            if not page.next_cursor:
                return
            if page.next_cursor in seen_cursors:
                raise UpstreamFetchError(
                    f"Upstream repeated pagination cursor {page.next_cursor!r}",
                    entity_type=entity_type,
                )
            seen_cursors.add(page.next_cursor)
            cursor = page.next_cursor

    def _is_boundary_duplicate(
        self,
        record: UpstreamRecord,
        existing: Optional[LocalMapping],
        lower_bound: Optional[datetime],
    ) -> bool:
        """Already-synced record re-delivered because the lower bound is inclusive."""
        if existing is None or lower_bound is None or existing.upstream_modified_at is None:
            return False
        return (
            record.last_modified <= lower_bound
            and existing.upstream_modified_at >= record.last_modified
        )

    def _process_record(
        self,
        entity_type: str,
        record: UpstreamRecord,
        lower_bound: Optional[datetime],
        result: SyncRunResult,
    ) -> bool:
        """
        Upsert one record into the local store.

        Returns:
            True when the record was created or updated
        """
        try:
            existing = self.mapper.find_existing(entity_type, record.upstream_id)
            if self._is_boundary_duplicate(record, existing, lower_bound):
                result.skipped_count += 1
                return False

            result.total_checked += 1
            attributes = self.mapper.to_canonical(entity_type, record)
            if existing is None:
                self.mapper.create(entity_type, record, attributes, self.clock())
                result.new_count += 1
            else:
                self.mapper.update(entity_type, record, attributes, self.clock())
                result.updated_count += 1
            return True
        except Exception as e:
            message = getattr(e, "message", None) or str(e)
            result.errors.append(
                RecordError(
                    upstream_id=record.upstream_id,
                    error_type=type(e).__name__,
                    message=message,
                )
            )
            self.logger.warning(
                "Record sync failed",
                extra={
                    "entity_type": entity_type,
                    "upstream_id": record.upstream_id,
                    "error_type": type(e).__name__,
                    "error": message,
                },
            )
            return False

    def _record_rejected(
        self, entity_type: str, page: UpstreamPage, result: SyncRunResult
    ) -> None:
        for error in page.rejected:
            result.errors.append(error)
            self.logger.warning(
                "Upstream item rejected",
                extra={
                    "entity_type": entity_type,
                    "upstream_id": error.upstream_id,
                    "error_type": error.error_type,
                    "error": error.message,
                },
            )

    def _run(
        self,
        entity_type: str,
        since: Optional[datetime] = None,
        override: bool = False,
    ) -> RunOutcome:
        with tenant_context(self.tenant_id), correlation_context("sync"):
            return self._execute_run(entity_type, since, override)

    def _execute_run(
        self, entity_type: str, since: Optional[datetime], override: bool
    ) -> RunOutcome:
        started_at = self.clock()
        started = time.monotonic()

        previous = self.watermark_store.get_watermark(entity_type, self.tenant_id)
        lower_bound = since if override else previous
        result = SyncRunResult(
            entity_type=entity_type,
            tenant_id=self.tenant_id,
            lower_bound=lower_bound,
            previous_watermark=previous,
            started_at=started_at,
        )

        self.logger.info(
            "Incremental sync started",
            extra={
                "entity_type": entity_type,
                "tenant_id": self.tenant_id,
                "lower_bound": lower_bound.isoformat() if lower_bound else None,
                "full_backfill": lower_bound is None,
            },
        )

        observed: Optional[datetime] = None
        fatal: Optional[FatalSyncError] = None
        try:
            for page in self._pages(entity_type, lower_bound):
                self._record_rejected(entity_type, page, result)
                for record in page.records:
                    if self._process_record(entity_type, record, lower_bound, result):
                        if observed is None or record.last_modified > observed:
                            observed = record.last_modified
        except FatalSyncError as e:
            fatal = e
        except Exception as e:
            fatal = FatalSyncError(
                f"Sync of {entity_type} aborted: {str(e)}", entity_type=entity_type, cause=e
            )

        result.new_watermark = observed
        if fatal is None:
            result.sync_duration_ms = int((time.monotonic() - started) * 1000)
            try:
                self.watermark_store.commit(result)
            except RepositoryError as e:
                fatal = FatalSyncError(
                    f"Could not commit watermark for {entity_type}",
                    entity_type=entity_type,
                    cause=e,
                )

        if fatal is not None:
            result.fatal_error = fatal.message
            result.new_watermark = previous
            result.sync_duration_ms = int((time.monotonic() - started) * 1000)
            self.watermark_store.record_run(result)
            self.logger.error(
                "Incremental sync failed",
                extra={
                    "entity_type": entity_type,
                    "tenant_id": self.tenant_id,
                    "processed": result.processed_count,
                    "error": fatal.message,
                },
            )
            return result, fatal

        self.logger.info(
            "Incremental sync completed",
            extra={
                "entity_type": entity_type,
                "tenant_id": self.tenant_id,
                "total_checked": result.total_checked,
                "new_count": result.new_count,
                "updated_count": result.updated_count,
                "skipped_count": result.skipped_count,
                "record_errors": len(result.errors),
                "new_watermark": result.new_watermark.isoformat() if result.new_watermark else None,
                "duration_ms": result.sync_duration_ms,
            },
        )
        return result, None

    # ==================== STATUS ====================

    def get_sync_statistics(self, entity_type: Optional[str] = None) -> EntitySyncStatistics:
        entity_type = entity_type or self.config.default_entity_type
        state = self.watermark_store.get_state(entity_type, self.tenant_id)
        last_run = self.watermark_store.last_run(entity_type, self.tenant_id)

        statistics = EntitySyncStatistics(
            entity_type=entity_type,
            tenant_id=self.tenant_id,
            mapped_records=self.mapper.count(entity_type),
            last_run_status=last_run.status if last_run else None,
            last_run_at=last_run.completed_at if last_run else None,
        )
        if state is not None:
            statistics.last_watermark = state.last_synced_at
            statistics.entity_count = state.entity_count
            statistics.error_count = state.error_count
            statistics.last_sync_duration_ms = state.last_sync_duration_ms
            statistics.total_runs = state.total_runs
        return statistics

    def get_all_entities_sync_statistics(self) -> Dict[str, EntitySyncStatistics]:
        return {
            entity_type: self.get_sync_statistics(entity_type) for entity_type in self.entity_types
        }

    def get_sync_history(
        self, entity_type: Optional[str] = None, limit: int = 20
    ) -> List[SyncRunRecord]:
        return self.watermark_store.get_run_history(
            self.tenant_id, entity_type=entity_type, limit=limit
        )
