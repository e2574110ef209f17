"""
Integration tests for the threaded refresh scheduler.

Runs the real dispatcher thread and worker pool against a SQLite file
database with a slow fake token endpoint.
"""

import threading
import time
from unittest.mock import Mock

import pytest

from integration_sync_core.config import RefreshSchedulerConfig
from integration_sync_core.constants import RefreshPriority
from integration_sync_core.scheduling.circuit_breaker import CircuitBreaker
from integration_sync_core.schemas.credential_schemas import OAuthTokenResponse, ProviderConfig
from integration_sync_core.services.refresh_scheduler import RefreshScheduler
from integration_sync_core.services.token_refresh_client import TokenRefreshClient
from integration_sync_core.services.token_store import TokenStore

PROVIDER = "hubspot"


class SlowTokenEndpoint:
    """Fake refresh client that records concurrency per key."""

    def __init__(self, delay: float = 0.05):
        self.delay = delay
        self.lock = threading.Lock()
        self.active = {}
        self.max_active_per_key = 0
        self.max_active_total = 0
        self.calls = 0

    def refresh(self, config, refresh_token):
        with self.lock:
            self.calls += 1
            self.active[refresh_token] = self.active.get(refresh_token, 0) + 1
            self.max_active_per_key = max(self.max_active_per_key, self.active[refresh_token])
            self.max_active_total = max(self.max_active_total, sum(self.active.values()))
        time.sleep(self.delay)
        with self.lock:
            self.active[refresh_token] -= 1
        return OAuthTokenResponse(access_token=f"new-{refresh_token}", expires_in=3600)


@pytest.fixture
def token_store(file_db_manager):
    return TokenStore(db_manager=file_db_manager)


@pytest.fixture
def endpoint():
    return SlowTokenEndpoint()


@pytest.fixture
def scheduler(token_store, endpoint):
    client = Mock(spec=TokenRefreshClient)
    client.refresh.side_effect = endpoint.refresh
    scheduler = RefreshScheduler(
        token_store,
        client,
        circuit_breaker=CircuitBreaker(failure_threshold=5, reset_after_seconds=60),
        config=RefreshSchedulerConfig(worker_pool_size=3, max_retries=3),
    )
    scheduler.register_config(
        ProviderConfig(
            provider=PROVIDER,
            token_endpoint="https://api.hubapi.com/oauth/v1/token",
            client_id="client-id",
            client_secret="client-secret",
        )
    )
    yield scheduler
    scheduler.shutdown()


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestThreadedScheduler:
    def test_refreshes_all_due_credentials_with_bounded_pool(
        self, scheduler, token_store, endpoint
    ):
        tenants = [f"tenant-{n}" for n in range(8)]
        for tenant in tenants:
            token_store.save(
                PROVIDER,
                tenant,
                OAuthTokenResponse(access_token="old", refresh_token=f"r-{tenant}", expires_in=600),
            )

        scheduled = scheduler.initialize([])
        scheduler.start()

        assert scheduled == 8
        assert _wait_for(
            lambda: all(token_store.get(PROVIDER, t).refresh_count == 1 for t in tenants)
        )
        assert endpoint.calls == 8
        assert endpoint.max_active_total <= 3
        assert endpoint.max_active_per_key == 1
        # Each credential now waits for its next self-scheduled refresh
        assert len(scheduler.pending_jobs()) == 8
        assert all(job.priority == RefreshPriority.NORMAL for job in scheduler.pending_jobs())

    def test_request_during_in_flight_refresh_is_absorbed(self, scheduler, token_store, endpoint):
        endpoint.delay = 0.3
        token_store.save(
            PROVIDER,
            "tenant-a",
            OAuthTokenResponse(access_token="old", refresh_token="r-a", expires_in=600),
        )
        scheduler.start()

        scheduler.schedule_refresh(PROVIDER, "tenant-a", immediate=True)
        assert _wait_for(lambda: endpoint.calls >= 1)
        # Queued while the first refresh is still in flight
        scheduler.schedule_refresh(
            PROVIDER, "tenant-a", priority=RefreshPriority.MANUAL, immediate=True
        )

        assert _wait_for(lambda: token_store.get(PROVIDER, "tenant-a").refresh_count == 1)
        assert _wait_for(
            lambda: getattr(scheduler.get_pending_job(PROVIDER, "tenant-a"), "priority", None)
            == RefreshPriority.NORMAL
        )
        assert endpoint.calls == 1
        assert endpoint.max_active_per_key == 1

    def test_shutdown_drops_pending_jobs(self, scheduler, token_store):
        token_store.save(
            PROVIDER,
            "tenant-a",
            OAuthTokenResponse(access_token="old", refresh_token="r-a", expires_in=7200),
        )
        scheduler.initialize([])
        scheduler.start()
        assert scheduler.running is True

        scheduler.shutdown()

        assert scheduler.running is False
        assert scheduler.pending_jobs() == []
