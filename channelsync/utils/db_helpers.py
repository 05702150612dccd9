"""
Concurrency helpers for the sync store.

Two scheduler ticks, a webhook and a CLI run may touch the same rows at
once. Identity upserts and room assignment take a row lock; checkpoint
cursors go through advance_if_greater so they can only move forward.
"""

import logging
from typing import Any, Optional, Type, TypeVar

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_postgres(db: Session) -> bool:
    try:
        return db.bind.dialect.name == 'postgresql'
    except AttributeError:
        return False


def acquire_row_lock(
    db: Session,
    model: Type[T],
    filter_condition,
    nowait: bool = False,
    skip_locked: bool = False
) -> Optional[T]:
    """
    First row matching filter_condition, locked FOR UPDATE on PostgreSQL.

    SQLite has no row locks (writers are serialized), so there it is a
    plain read.
    """
    query = db.query(model).filter(filter_condition)
    if is_postgres(db):
        lock_opts = {"skip_locked": True} if skip_locked else {"nowait": True} if nowait else {}
        query = query.with_for_update(**lock_opts)
    return query.first()


def advance_if_greater(
    db: Session,
    model: Type[T],
    filter_condition,
    column_name: str,
    new_value: Any,
    extra_values: Optional[dict] = None,
) -> bool:
    """
    Move a monotonic column forward, never backward.

    Issues a single conditional UPDATE so concurrent writers cannot regress
    the value: the row only changes when the stored value is NULL or
    strictly smaller. `extra_values` are written in the same statement.

    Returns True if a row was advanced.
    """
    column = getattr(model, column_name)
    values = {column_name: new_value, **(extra_values or {})}

    stmt = (
        update(model)
        .where(filter_condition)
        .where(or_(column.is_(None), column < new_value))
        .values(values)
        .execution_options(synchronize_session=False)
    )
    advanced = (db.execute(stmt).rowcount or 0) > 0
    if not advanced:
        logger.debug(f"{model.__name__}.{column_name} already at or past {new_value}")
    return advanced
