# Overview: Row locking, conditional updates and commit retry helpers.

from __future__ import annotations

import time

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def compare_and_set(model, row_id: int, *, expected: dict, values: dict) -> bool:
    """
    Conditional single-row UPDATE.

    Writes `values` only if every column in `expected` still holds the given
    value (or one of the given values, for a tuple/list/set). Returns True
    when exactly one row changed, i.e. this caller won the race.

    Works the same on SQLite (no FOR UPDATE) and PostgreSQL because the
    check and the write are one statement.
    """
    stmt = update(model).where(model.id == row_id)
    for column_name, value in expected.items():
        column = getattr(model, column_name)
        if isinstance(value, (tuple, list, set, frozenset)):
            stmt = stmt.where(column.in_(list(value)))
        elif value is None:
            stmt = stmt.where(column.is_(None))
        else:
            stmt = stmt.where(column == value)
    stmt = stmt.values(**values).execution_options(synchronize_session=False)
    result = db.session.execute(stmt)
    return result.rowcount == 1


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). `func` must be safe to re-run from
    scratch after a rollback.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc

