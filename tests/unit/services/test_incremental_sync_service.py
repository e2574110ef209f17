"""
Tests for IncrementalSyncService.

Runs the engine against the in-memory upstream fake and the real
EntityMappingService / WatermarkStore on SQLite.
"""

from datetime import timedelta

import pytest

from integration_sync_core.config import SyncConfig
from integration_sync_core.constants import SyncRunStatus
from integration_sync_core.context.tenant_context import TenantContext
from integration_sync_core.exceptions import (
    FatalSyncError,
    UpstreamFetchError,
    UpstreamUnavailableError,
    ValidationError,
    get_correlation_id,
)
from integration_sync_core.schemas.sync_schemas import UpstreamRecord
from integration_sync_core.services.entity_mapping_service import EntityMappingService
from integration_sync_core.services.incremental_sync_service import IncrementalSyncService
from tests.fixtures.factories import FIXED_NOW, SyncWatermarkFactory
from tests.fixtures.upstream_fakes import FakeEntitySource, invoice_record


def contact_record(upstream_id, minutes_after=0):
    return UpstreamRecord(
        upstream_id=str(upstream_id),
        last_modified=FIXED_NOW + timedelta(minutes=minutes_after),
        properties={"email": f"user{upstream_id}@example.com", "firstname": "Ada"},
    )


@pytest.fixture
def source():
    return FakeEntitySource()


@pytest.fixture
def mapper(db_session, db_manager, clock, tenant_id):
    return EntityMappingService(tenant_id=tenant_id, db_manager=db_manager, clock=clock)


@pytest.fixture
def sync_config():
    return SyncConfig(entity_types=["CONTACT", "INVOICE"], page_size=4, max_parallel_entity_syncs=1)


@pytest.fixture
def service(source, mapper, watermark_store, sync_config, clock, tenant_id):
    return IncrementalSyncService(
        source,
        mapper,
        watermark_store=watermark_store,
        config=sync_config,
        tenant_id=tenant_id,
        clock=clock,
    )


@pytest.fixture
def ten_invoices(source):
    """Ten invoices one minute apart; #7 carries an unparseable amount."""
    for n in range(1, 11):
        if n == 7:
            source.add("INVOICE", invoice_record(n, minutes_after=n, hs_subtotal="abc"))
        else:
            source.add("INVOICE", invoice_record(n, minutes_after=n))
    return source


class TestIncrementalSync:
    """Test a single entity type run."""

    def test_first_run_backfills_and_collects_record_errors(
        self, service, ten_invoices, mapper, watermark_store, tenant_id
    ):
        result = service.perform_incremental_sync("INVOICE")

        assert result.total_checked == 10
        assert result.new_count == 9
        assert result.updated_count == 0
        assert result.status == SyncRunStatus.PARTIAL
        assert len(result.errors) == 1
        assert result.errors[0].upstream_id == "7"
        assert result.errors[0].error_type == "ValidationError"
        assert result.previous_watermark is None
        assert result.new_watermark == FIXED_NOW + timedelta(minutes=10)
        assert watermark_store.get_watermark("INVOICE", tenant_id) == result.new_watermark
        assert mapper.count("INVOICE") == 9
        # Three pages of four
        assert len(ten_invoices.calls) == 3
        assert ten_invoices.calls[0]["since"] is None

    def test_watermark_is_newest_success_not_newest_record(self, service, source, tenant_id):
        source.add("INVOICE", invoice_record(1, minutes_after=1))
        source.add("INVOICE", invoice_record(2, minutes_after=2, hs_subtotal="abc"))

        result = service.perform_incremental_sync("INVOICE")

        assert result.new_watermark == FIXED_NOW + timedelta(minutes=1)

    def test_rerun_is_idempotent(self, service, ten_invoices, mapper, watermark_store, tenant_id):
        first = service.perform_incremental_sync("INVOICE")

        second = service.perform_incremental_sync("INVOICE")

        assert second.lower_bound == first.new_watermark
        assert second.skipped_count == 1
        assert second.total_checked == 0
        assert second.processed_count == 0
        assert second.errors == []
        assert second.new_watermark == first.new_watermark
        assert mapper.find_existing("INVOICE", "10").version == 1
        assert mapper.count("INVOICE") == 9

    def test_sibling_at_watermark_timestamp_is_picked_up(self, service, ten_invoices, mapper):
        first = service.perform_incremental_sync("INVOICE")
        ten_invoices.add("INVOICE", invoice_record(11, minutes_after=10))

        second = service.perform_incremental_sync("INVOICE")

        assert first.new_watermark == FIXED_NOW + timedelta(minutes=10)
        assert second.new_count == 1
        assert second.skipped_count == 1
        assert second.total_checked == 1
        assert second.new_watermark == first.new_watermark
        assert mapper.find_existing("INVOICE", "11") is not None

    def test_rejected_items_become_record_errors(self, service, source, watermark_store, tenant_id):
        source.add("INVOICE", invoice_record(1, minutes_after=1), invoice_record(2, minutes_after=2))
        source.reject("INVOICE", "99")

        result = service.perform_incremental_sync("INVOICE")

        assert result.new_count == 2
        assert [e.upstream_id for e in result.errors] == ["99"]
        assert result.status == SyncRunStatus.PARTIAL
        assert result.fatal_error is None
        assert watermark_store.get_watermark("INVOICE", tenant_id) == FIXED_NOW + timedelta(minutes=2)

    def test_modified_record_is_updated(self, service, ten_invoices, mapper, clock):
        service.perform_incremental_sync("INVOICE")
        ten_invoices.add("INVOICE", invoice_record(3, minutes_after=20, hs_subtotal="999"))
        clock.advance(60)

        result = service.perform_incremental_sync("INVOICE")

        assert result.updated_count == 1
        assert result.new_count == 0
        assert result.new_watermark == FIXED_NOW + timedelta(minutes=20)
        assert mapper.find_existing("INVOICE", "3").version == 2
        assert mapper.get_attributes("INVOICE", "3")["total_amount"] == 999.0

    def test_empty_upstream_keeps_watermark(self, service, watermark_store, db_session, tenant_id):
        SyncWatermarkFactory(tenant_id=tenant_id)

        result = service.perform_incremental_sync("INVOICE")

        assert result.processed_count == 0
        assert result.new_watermark == FIXED_NOW - timedelta(days=1)
        assert watermark_store.get_state("INVOICE", tenant_id).total_runs == 2

    def test_default_entity_type(self, service, source):
        source.add("INVOICE", invoice_record(1))

        assert service.perform_incremental_sync().entity_type == "INVOICE"

    def test_unregistered_entity_type(self, service):
        with pytest.raises(ValidationError):
            service.perform_incremental_sync("DEAL")

    def test_runs_inside_tenant_context(self, service, source, tenant_id):
        seen = []
        original = source.fetch_modified

        def fetch(*args, **kwargs):
            seen.append(TenantContext.get_current_tenant_id())
            return original(*args, **kwargs)

        source.fetch_modified = fetch
        service.perform_incremental_sync("INVOICE")

        assert seen == [tenant_id]
        assert TenantContext.get_current_tenant_id() is None


class TestSyncSince:
    """Test the explicit lower-bound override."""

    def test_since_never_regresses_watermark(
        self, service, ten_invoices, watermark_store, db_session, tenant_id
    ):
        later = FIXED_NOW + timedelta(hours=1)
        SyncWatermarkFactory(tenant_id=tenant_id, last_synced_at=later)

        result = service.perform_incremental_sync_since(FIXED_NOW - timedelta(days=1), "INVOICE")

        assert result.lower_bound == FIXED_NOW - timedelta(days=1)
        assert result.previous_watermark == later
        assert result.new_count == 9
        assert result.new_watermark == later
        assert watermark_store.get_watermark("INVOICE", tenant_id) == later

    def test_since_then_normal_run(self, service, ten_invoices, clock):
        service.perform_incremental_sync("INVOICE")
        clock.advance(60)

        resync = service.perform_incremental_sync_since(FIXED_NOW, "INVOICE")
        clock.advance(60)
        normal = service.perform_incremental_sync("INVOICE")

        assert resync.updated_count == 9
        assert resync.new_watermark == FIXED_NOW + timedelta(minutes=10)
        assert normal.lower_bound == FIXED_NOW + timedelta(minutes=10)
        assert normal.skipped_count == 1
        assert normal.processed_count == 0


    def test_naive_since_is_treated_as_utc(self, service, ten_invoices):
        first = service.perform_incremental_sync("INVOICE")
        naive = first.new_watermark.replace(tzinfo=None)

        result = service.perform_incremental_sync_since(naive, "INVOICE")

        assert result.lower_bound == first.new_watermark
        assert result.lower_bound.tzinfo is not None
        assert result.skipped_count == 1
        assert result.errors == []
        assert result.new_watermark == first.new_watermark


class TestFatalErrors:
    """A fatal run never moves the watermark."""

    def test_upstream_unavailable(self, service, source, watermark_store, tenant_id):
        source.fail("INVOICE", UpstreamUnavailableError("HubSpot search timed out", "INVOICE"))

        with pytest.raises(UpstreamUnavailableError):
            service.perform_incremental_sync("INVOICE")

        assert watermark_store.get_watermark("INVOICE", tenant_id) is None
        last = watermark_store.last_run("INVOICE", tenant_id)
        assert last.status == "failed"
        assert last.fatal_error == "HubSpot search timed out"

    def test_repeated_cursor_aborts_without_moving_watermark(
        self, service, ten_invoices, mapper, watermark_store, tenant_id
    ):
        ten_invoices.fixed_cursor["INVOICE"] = "stuck"

        with pytest.raises(UpstreamFetchError, match="repeated pagination cursor"):
            service.perform_incremental_sync("INVOICE")

        assert watermark_store.get_watermark("INVOICE", tenant_id) is None
        # Records upserted before the abort stay; the next run re-reads them
        assert mapper.count("INVOICE") == 4

    def test_max_pages_guard(self, source, mapper, watermark_store, clock, tenant_id):
        for n in range(1, 6):
            source.add("INVOICE", invoice_record(n, minutes_after=n))
        service = IncrementalSyncService(
            source,
            mapper,
            watermark_store=watermark_store,
            config=SyncConfig(entity_types=["INVOICE"], page_size=1, max_pages=2),
            tenant_id=tenant_id,
            clock=clock,
        )

        with pytest.raises(UpstreamFetchError, match="exceeded 2 pages"):
            service.perform_incremental_sync("INVOICE")

        assert len(source.calls) == 2
        assert watermark_store.get_watermark("INVOICE", tenant_id) is None

    def test_unexpected_source_error_is_wrapped(self, service, source):
        source.fail("INVOICE", KeyError("results"))

        with pytest.raises(FatalSyncError) as exc_info:
            service.perform_incremental_sync("INVOICE")

        assert isinstance(exc_info.value.cause, KeyError)

    def test_fatal_error_carries_run_correlation_id(self, service, source):
        source.fail("INVOICE", KeyError("results"))

        with pytest.raises(FatalSyncError) as exc_info:
            service.perform_incremental_sync("INVOICE")

        assert exc_info.value.context["correlation_id"].startswith("sync-")
        assert get_correlation_id() is None


class TestFullSync:
    """Test the multi-entity orchestration."""

    def test_all_types_succeed(self, service, source, watermark_store, tenant_id):
        source.add("CONTACT", contact_record(1), contact_record(2, minutes_after=3))
        source.add("INVOICE", invoice_record(1, minutes_after=5))

        comprehensive = service.perform_full_incremental_sync()

        assert comprehensive.overall_success is True
        assert comprehensive.global_errors == []
        assert [r.entity_type for r in comprehensive.results] == ["CONTACT", "INVOICE"]
        assert comprehensive.result_for("CONTACT").new_count == 2
        assert watermark_store.get_watermark("CONTACT", tenant_id) == FIXED_NOW + timedelta(
            minutes=3
        )

    def test_unavailable_type_becomes_global_error(self, service, source, watermark_store, tenant_id):
        source.add("CONTACT", contact_record(1))
        source.fail("INVOICE", UpstreamUnavailableError("HTTP 503", "INVOICE"))

        comprehensive = service.perform_full_incremental_sync()

        assert comprehensive.overall_success is False
        assert comprehensive.global_errors == ["INVOICE: HTTP 503"]
        assert comprehensive.result_for("CONTACT").status == SyncRunStatus.SUCCESS
        assert comprehensive.result_for("INVOICE").fatal_error == "HTTP 503"
        assert watermark_store.get_watermark("CONTACT", tenant_id) == FIXED_NOW
        assert watermark_store.get_watermark("INVOICE", tenant_id) is None

    def test_fetch_error_fails_type_without_global_error(self, service, source):
        source.add("CONTACT", contact_record(1))
        source.fail("INVOICE", UpstreamFetchError("HTTP 400", "INVOICE"))

        comprehensive = service.perform_full_incremental_sync()

        assert comprehensive.global_errors == []
        assert comprehensive.overall_success is False
        assert comprehensive.result_for("INVOICE").status == SyncRunStatus.FAILED

    def test_record_errors_do_not_fail_full_sync(self, service, ten_invoices):
        comprehensive = service.perform_full_incremental_sync()

        assert comprehensive.overall_success is True
        assert len(comprehensive.result_for("INVOICE").errors) == 1


class TestStatus:
    def test_statistics_and_history(self, service, ten_invoices, clock, tenant_id):
        service.perform_incremental_sync("INVOICE")
        clock.advance(60)
        service.perform_incremental_sync("INVOICE")

        stats = service.get_sync_statistics("INVOICE")

        assert stats.last_watermark == FIXED_NOW + timedelta(minutes=10)
        assert stats.mapped_records == 9
        assert stats.total_runs == 2
        assert stats.entity_count == 0
        assert stats.last_run_status == "success"
        assert stats.last_run_at == clock()

        history = service.get_sync_history("INVOICE")
        assert [h.status for h in history] == ["success", "partial"]

    def test_statistics_before_any_run(self, service):
        all_stats = service.get_all_entities_sync_statistics()

        assert set(all_stats) == {"CONTACT", "INVOICE"}
        assert all_stats["CONTACT"].last_watermark is None
        assert all_stats["CONTACT"].last_run_status is None
        assert all_stats["CONTACT"].total_runs == 0
