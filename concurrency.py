"""
Row locking and retry helpers for writes that race between requests.
"""
from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from models import db
from errors import PersistenceError

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 5
DEFAULT_BACKOFF = 0.05


def lock_for_update(query):
    """
    Apply row-level locking for status changes and allocation.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; there the database-wide
    writer lock taken by the first UPDATE serializes writers instead.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = DEFAULT_ATTEMPTS, backoff_base: float = DEFAULT_BACKOFF):
    """
    Execute a DB operation, retrying on lock timeouts and deadlocks.

    The whole transaction is rolled back before every retry, so *func*
    must redo all of its work from scratch. After the last attempt the
    failure surfaces as PersistenceError.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                logger.error('Giving up after %d attempts: %s', attempts, exc)
                raise PersistenceError(str(exc)) from exc
            logger.warning('Concurrent write conflict (attempt %d/%d): %s',
                           attempt + 1, attempts, exc)
            time.sleep(backoff_base * (2 ** attempt))
