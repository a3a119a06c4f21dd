# Overview: Concurrency primitives for the order/inventory services: guarded updates and retries.

from __future__ import annotations

import logging
import time

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

logger = logging.getLogger(__name__)


def conditional_update(model, *criteria, values: dict) -> int:
    """
    Single guarded UPDATE (compare-and-swap).

    Applies `values` to rows of `model` matching every criterion and returns
    the number of rows changed. The caller treats 0 as "precondition no
    longer holds" (e.g. another request took the stock first).

    Models carrying version_id get it bumped in the same statement so ORM
    instances loaded earlier fail their own flush with StaleDataError
    instead of silently overwriting.
    """
    stmt = update(model).where(*criteria).values(**values)
    if hasattr(model, "version_id") and "version_id" not in values:
        stmt = stmt.values(version_id=model.version_id + 1)
    result = db.session.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount or 0


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
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
            logger.warning("Retrying after concurrency conflict (attempt %s): %s", attempt + 1, exc)
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
