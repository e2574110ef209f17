"""
Base class for services that own their database sessions.

Each operation runs in its own short-lived session so that stores can be
shared between scheduler worker threads without sharing a Session object.
"""

from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db.db_base import utc_now
from ..db.db_config import DatabaseManager, get_db_manager
from ..exceptions import ErrorCode, RepositoryError
from ..utils.logger import get_logger


class SessionManagedService:
    """Service that opens one session per operation."""

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        clock: Optional[Callable] = None,
    ):
        """
        Args:
            db_manager: Database manager, defaults to the global one
            clock: Callable returning the current aware UTC datetime
        """
        self.db_manager = db_manager or get_db_manager()
        self.clock = clock or utc_now
        self.logger = get_logger()

    @contextmanager
    def transaction(self, operation: str) -> Generator[Session, None, None]:
        """
        Context manager for transactional operations.

        Commits on success, rolls back on exception. Database errors are
        translated into RepositoryError with the operation name attached.
        """
        session = self.db_manager.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(
                f"Database error in {operation}: {str(e)}",
                error_code=ErrorCode.DATABASE_ERROR,
                cause=e,
                operation=operation,
            )
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
