# Overview: Order-scoped serialization and retry helpers for DB operations.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Order
from chariot.time_utils import utcnow


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def lock_order(order_id: int) -> Order | None:
    """
    Take the order-scoped serialization point for a read-modify-write.

    Row lock where the database supports it, plus a forced write to the
    order row so the optimistic version_id always moves. Two writers that
    read the same version cannot both commit: the loser gets StaleDataError
    and is replayed by run_with_retry against fresh state.
    """
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is not None:
        order.updated_at = utcnow()
    return order


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). `func` must do its own reads so a
    replay sees committed state.
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
