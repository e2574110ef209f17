"""
Generic CRUD helpers shared by the token, watermark and mapping stores.

These functions work with any SQLAlchemy model keyed by a natural key
(e.g. provider + tenant_id) rather than by surrogate id.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import ErrorCode, RepositoryError
from ..utils.logger import get_logger

T = TypeVar("T")


def _apply_filters(query, model_class, filters: Optional[Dict[str, Any]]):
    if filters:
        for key, value in filters.items():
            if hasattr(model_class, key):
                query = query.filter(getattr(model_class, key) == value)
    return query


def get_record(session: Session, model_class: Type[T], filters: Dict[str, Any]) -> Optional[T]:
    """
    Fetch the first record matching every filter.

    Unlike list filters, ``None`` values are matched as SQL NULL so that
    natural keys with optional parts still resolve to a single row.
    """
    query = _apply_filters(session.query(model_class), model_class, filters)
    return query.first()


def list_records(
    session: Session,
    model_class: Type[T],
    filters: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    order_by: Optional[str] = None,
    descending: bool = False,
) -> List[T]:
    """
    Generic list operation for any model.

    Args:
        session: Database session
        model_class: SQLAlchemy model class
        filters: Optional equality filters
        limit: Optional limit
        order_by: Optional order by field
        descending: Reverse the ordering

    Returns:
        List of record instances
    """
    query = _apply_filters(session.query(model_class), model_class, filters)

    if order_by and hasattr(model_class, order_by):
        column = getattr(model_class, order_by)
        query = query.order_by(column.desc() if descending else column)
    elif hasattr(model_class, "created_at"):
        query = query.order_by(model_class.created_at.desc())  # type: ignore[attr-defined]

    if limit:
        query = query.limit(limit)

    return query.all()


def count_records(
    session: Session, model_class: Type[T], filters: Optional[Dict[str, Any]] = None
) -> int:
    """Generic count operation for any model."""
    return _apply_filters(session.query(model_class), model_class, filters).count()


def upsert_record(
    session: Session,
    model_class: Type[T],
    keys: Dict[str, Any],
    data: Dict[str, Any],
    commit: bool = True,
) -> Tuple[T, bool]:
    """
    Insert or update the single row identified by ``keys``.

    Args:
        session: Database session
        model_class: SQLAlchemy model class
        keys: Natural key columns and values
        data: Column values to write
        commit: Commit the session after writing

    Returns:
        Tuple of (record, created)

    Raises:
        RepositoryError: If the write fails
    """
    logger = get_logger()

    try:
        record = get_record(session, model_class, keys)
        created = record is None
        now = datetime.now(timezone.utc)

        if created:
            record = model_class(**keys, **data)
            if hasattr(model_class, "created_at"):
                record.created_at = now
            session.add(record)
        else:
            for key, value in data.items():
                setattr(record, key, value)

        if hasattr(model_class, "updated_at"):
            record.updated_at = now

        if commit:
            session.commit()
        else:
            session.flush()

        logger.debug(
            f"{'Created' if created else 'Updated'} {model_class.__name__}",
            extra={"model": model_class.__name__, "keys": keys},
        )
        return record, created

    except SQLAlchemyError as e:
        session.rollback()
        raise RepositoryError(
            f"Failed to upsert {model_class.__name__}: {str(e)}",
            error_code=ErrorCode.DATABASE_ERROR,
            cause=e,
            model=model_class.__name__,
            keys=keys,
        )


def delete_records(session: Session, model_class: Type[T], filters: Dict[str, Any]) -> int:
    """
    Delete every row matching ``filters``.

    Returns:
        Number of deleted rows

    Raises:
        RepositoryError: If the delete fails
    """
    try:
        deleted = _apply_filters(session.query(model_class), model_class, filters).delete(
            synchronize_session=False
        )
        session.commit()
        return deleted
    except SQLAlchemyError as e:
        session.rollback()
        raise RepositoryError(
            f"Failed to delete {model_class.__name__}: {str(e)}",
            error_code=ErrorCode.DATABASE_ERROR,
            cause=e,
            model=model_class.__name__,
        )
