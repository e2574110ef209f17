"""
Shared test fixtures.

Provides an SQLite in-memory database (recreated per test), a controllable
clock, and store fixtures bound to both.
"""

from datetime import UTC, datetime, timedelta

import pytest

from integration_sync_core.config import reset_config
from integration_sync_core.context.tenant_context import TenantContext
from integration_sync_core.db import (
    Base,
    DatabaseConfig,
    DatabaseManager,
    import_all_models,
    set_db_manager,
)
from integration_sync_core.services.token_store import TokenStore
from integration_sync_core.services.watermark_store import WatermarkStore
from integration_sync_core.utils.logger import reset_logging
from tests.fixtures.factories import configure_factories


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture(scope="session")
def db_config() -> DatabaseConfig:
    """SQLite in-memory database configuration for testing."""
    return DatabaseConfig(db_type="sqlite", database=":memory:", development_mode=True)


@pytest.fixture(scope="session")
def db_manager(db_config: DatabaseConfig) -> DatabaseManager:
    """Database manager with all models registered."""
    import_all_models()
    manager = DatabaseManager(db_config)
    yield manager
    manager.close()


@pytest.fixture(scope="function")
def db_session(db_manager: DatabaseManager):
    """
    Fresh schema for each test.

    Tables are created before and dropped after every test so stores and
    factories always start from an empty database.
    """
    Base.metadata.create_all(db_manager.engine)
    set_db_manager(db_manager)
    session = db_manager.session_factory()
    configure_factories(session)

    yield session

    session.rollback()
    session.close()
    set_db_manager(None)
    Base.metadata.drop_all(db_manager.engine)


@pytest.fixture
def file_db_manager(tmp_path) -> DatabaseManager:
    """
    SQLite file database for tests that run work on several threads.

    Every connection gets its own SQLite handle, unlike the shared in-memory
    connection used by ``db_manager``.
    """
    import_all_models()
    manager = DatabaseManager(
        DatabaseConfig(
            db_type="sqlite", database=str(tmp_path / "sync.db"), development_mode=True
        )
    )
    manager.create_tables()
    yield manager
    manager.drop_tables()
    manager.close()


@pytest.fixture(autouse=True)
def reset_global_state():
    """Each test starts with default config, no component logger and no tenant."""
    reset_config()
    reset_logging()
    TenantContext.clear_current_tenant()
    yield
    reset_config()
    reset_logging()
    TenantContext.clear_current_tenant()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 15, 12, 0, 0, tzinfo=UTC))


@pytest.fixture
def token_store(db_session, db_manager, clock) -> TokenStore:
    return TokenStore(db_manager=db_manager, clock=clock)


@pytest.fixture
def watermark_store(db_session, db_manager, clock) -> WatermarkStore:
    return WatermarkStore(db_manager=db_manager, clock=clock)


@pytest.fixture
def tenant_id() -> str:
    return "tenant-acme"
