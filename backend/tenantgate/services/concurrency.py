# Overview: Service-layer helpers for concurrency; row locks and retry on lock contention.

from __future__ import annotations

import time

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import BillingRecord


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Pair with lock_tenant_billing_row() where SQLite must serialize too.
    """
    return query.with_for_update()


def lock_tenant_billing_row(tenant_id: int) -> bool:
    """
    Take the per-tenant write lock by touching the tenant's billing row.

    WHY: Count-then-admit is a read-then-write sequence. Issuing an UPDATE
    first makes the current transaction the writer for this tenant:
    - PostgreSQL/MySQL hold a row lock until commit
    - SQLite holds the database RESERVED lock until commit
    Concurrent callers block here, so their counts see committed admissions.

    Returns False if the tenant has no billing row.
    """
    result = db.session.execute(
        update(BillingRecord)
        .where(BillingRecord.tenant_id == tenant_id)
        .values(admission_seq=BillingRecord.admission_seq + 1)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, "database is locked") and
    StaleDataError (optimistic locking conflicts). Rolls back between tries.
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

