"""
Database configuration, engine setup and the process-wide manager.

PostgreSQL is the production target; SQLite backs development and tests.
Stores take a DatabaseManager explicitly or fall back to the global one set
by ``initialize_db`` / ``set_db_manager``.
"""

import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..constants import EnvironmentVariable
from ..exceptions import ErrorCode, ServiceError, ValidationError
from ..utils.logger import get_logger

# Base class for all SQLAlchemy models
Base: Any = declarative_base()

SUPPORTED_DB_TYPES = ("postgres", "sqlite")


class DatabaseConfig(BaseModel):
    """Connection settings. ``url`` wins over the individual fields when set."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    db_type: str = "postgres"
    database: str
    url: Optional[str] = None
    host: str = ""
    port: str = "5432"
    username: str = ""
    password: str = ""
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    echo: bool = False
    development_mode: bool = False

    @property
    def is_sqlite(self) -> bool:
        return self.db_type.lower() == "sqlite"

    @property
    def is_in_memory(self) -> bool:
        return self.is_sqlite and self.database == ":memory:"

    def get_connection_string(self) -> str:
        if self.url:
            return self.url

        db_type = self.db_type.lower()
        if db_type not in SUPPORTED_DB_TYPES:
            raise ValidationError(
                f"Unsupported database type: {self.db_type}",
                error_code=ErrorCode.INVALID_FORMAT,
                field="db_type",
                value=self.db_type,
            )

        if db_type == "sqlite":
            return f"sqlite:///{self.database}"

        missing = [
            name
            for name in ("host", "database", "username", "password")
            if not getattr(self, name)
        ]
        if missing:
            raise ValidationError(
                "Missing required Postgres configuration parameters",
                error_code=ErrorCode.MISSING_REQUIRED,
                field="database_config",
                value={"missing": missing, "host": self.host, "database": self.database},
            )
        return (
            f"postgresql://{self.username}:{self.password}@"
            f"{self.host}:{self.port}/{self.database}"
        )

    def __repr__(self) -> str:
        return (
            f"DatabaseConfig(db_type='{self.db_type}', host='{self.host}', "
            f"port='{self.port}', database='{self.database}', "
            f"username='{self.username}', password='***')"
        )


class DatabaseManager:
    """
    Owns the engine and session factories for one database.

    Stores open one short-lived session per operation through ``session_factory``;
    ``get_session`` keeps the thread-scoped session for ad-hoc callers.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.engine = self._create_engine()
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.scoped_session = scoped_session(self.session_factory)

    def _engine_options(self) -> Dict[str, Any]:
        if not self.config.is_sqlite:
            return {
                "pool_size": self.config.pool_size,
                "max_overflow": self.config.max_overflow,
                "pool_timeout": self.config.pool_timeout,
            }
        options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if self.config.is_in_memory:
            # One shared connection so scheduler worker threads see the same database
            options["poolclass"] = StaticPool
        return options

    def _create_engine(self) -> Engine:
        return create_engine(
            self.config.get_connection_string(),
            echo=self.config.echo,
            **self._engine_options(),
        )

    def create_tables(self) -> None:
        Base.metadata.create_all(self.engine)

    def drop_tables(self) -> None:
        if not self.config.development_mode:
            raise ServiceError(
                "Cannot drop tables: not in development mode",
                error_code=ErrorCode.CONFIGURATION_ERROR,
                operation="drop_tables",
                development_mode=self.config.development_mode,
            )
        Base.metadata.drop_all(self.engine)

    def get_session(self) -> Session:
        return self.scoped_session()

    def close_session(self, session: Optional[Session] = None) -> None:
        if session:
            session.close()
        else:
            self.scoped_session.remove()

    def close(self) -> None:
        self.scoped_session.remove()
        self.engine.dispose()


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "false").lower() == "true"


def get_development_config() -> DatabaseConfig:
    """SQLite configuration; ``DEV_DB_PATH`` selects a file, default in-memory."""
    return DatabaseConfig(
        db_type="sqlite",
        database=os.environ.get("DEV_DB_PATH", ":memory:"),
        echo=_env_flag("DB_ECHO"),
        development_mode=True,
    )


def get_production_config() -> DatabaseConfig:
    """PostgreSQL configuration from ``DATABASE_URL`` or the ``DB_*`` variables."""
    env = os.environ
    return DatabaseConfig(
        db_type="postgres",
        url=env.get(EnvironmentVariable.DATABASE_URL.value) or None,
        host=env.get("DB_HOST", "localhost"),
        port=env.get("DB_PORT", "5432"),
        database=env.get("DB_NAME", "integration_sync"),
        username=env.get("DB_USER", "postgres"),
        password=env.get("DB_PASSWORD", ""),
        pool_size=int(env.get("DB_POOL_SIZE", "5")),
        max_overflow=int(env.get("DB_MAX_OVERFLOW", "10")),
        pool_timeout=int(env.get("DB_POOL_TIMEOUT", "30")),
        echo=_env_flag("DB_ECHO"),
    )


def import_all_models():
    """Import all models so they are registered with the metadata."""
    from sqlalchemy.orm import configure_mappers

    from .db_credential_models import OAuthCredential, TokenRefreshLog  # noqa
    from .db_sync_models import EntityMapping, SyncRunHistory, SyncWatermark  # noqa

    configure_mappers()


_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """
    Return the global database manager.

    Raises:
        ServiceError: If no manager has been initialized or set
    """
    if _db_manager is None:
        raise ServiceError(
            "Database manager not initialized. Call initialize_db() first.",
            error_code=ErrorCode.CONFIGURATION_ERROR,
            operation="get_db_manager",
        )
    return _db_manager


def set_db_manager(manager: Optional[DatabaseManager]) -> None:
    """Install (or clear) the global manager, mainly for tests."""
    global _db_manager
    _db_manager = manager


def initialize_db(config: Optional[DatabaseConfig] = None) -> DatabaseManager:
    """
    Create the global manager and its tables.

    Args:
        config: Connection settings, production settings from the environment if None

    Returns:
        The new global DatabaseManager
    """
    config = config or get_production_config()
    get_logger().info("Initializing database", extra={"db_type": config.db_type})

    import_all_models()
    manager = DatabaseManager(config)
    manager.create_tables()
    set_db_manager(manager)
    return manager


def close_db() -> None:
    """Dispose of the global manager's engine, if any."""
    global _db_manager
    if _db_manager is not None:
        _db_manager.close()
        _db_manager = None
