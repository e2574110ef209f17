"""
Tests for TenantContext.

Covers the thread-local storage and the context manager's restore behavior.
"""

import threading

import pytest

from integration_sync_core.context.tenant_context import TenantContext, tenant_context
from integration_sync_core.exceptions import ValidationError


class TestTenantContextBasics:
    """Test basic TenantContext functionality."""

    def test_set_and_get_current_tenant(self):
        TenantContext.set_current_tenant("tenant-acme")

        assert TenantContext.get_current_tenant_id() == "tenant-acme"

    def test_tenant_id_is_stripped(self):
        TenantContext.set_current_tenant("  tenant-acme  ")

        assert TenantContext.get_current_tenant_id() == "tenant-acme"

    @pytest.mark.parametrize("invalid", ["", "   ", None])
    def test_invalid_tenant_rejected(self, invalid):
        with pytest.raises(ValidationError):
            TenantContext.set_current_tenant(invalid)

    def test_clear_is_idempotent(self):
        TenantContext.clear_current_tenant()
        TenantContext.clear_current_tenant()

        assert TenantContext.get_current_tenant_id() is None


class TestTenantContextManager:
    """Test the tenant_context() context manager."""

    def test_restores_previous_tenant(self):
        TenantContext.set_current_tenant("outer")

        with tenant_context("inner"):
            assert TenantContext.get_current_tenant_id() == "inner"

        assert TenantContext.get_current_tenant_id() == "outer"

    def test_clears_when_no_previous_tenant(self):
        with tenant_context("inner"):
            pass

        assert TenantContext.get_current_tenant_id() is None

    def test_restores_on_exception(self):
        with pytest.raises(RuntimeError):
            with tenant_context("inner"):
                raise RuntimeError("boom")

        assert TenantContext.get_current_tenant_id() is None

    def test_thread_isolation(self):
        """Worker threads never see each other's tenant."""
        seen = {}
        barrier = threading.Barrier(2)

        def worker(name):
            with tenant_context(name):
                barrier.wait()
                seen[name] = TenantContext.get_current_tenant_id()

        threads = [threading.Thread(target=worker, args=(n,)) for n in ("t1", "t2")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert seen == {"t1": "t1", "t2": "t2"}
        assert TenantContext.get_current_tenant_id() is None

