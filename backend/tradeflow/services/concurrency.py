# Overview: Transaction boundaries, retries and conditional writes shared by all services.

"""
Tradeflow Concurrency Rules (authoritative)

- Every write operation runs in exactly one unit of work: one commit, or a full
  rollback leaving every row as it was before the attempt.
- Shared counters (order status, routing winner, reserved stock, account ledger
  sequence) change only through single-row conditional UPDATEs. A rowcount of
  zero means another request got there first; the caller decides whether that
  is a conflict, a retry, or a business rejection.
- SQLite serializes writers with BEGIN IMMEDIATE; other databases honor
  SELECT ... FOR UPDATE where a row must be read before it is written.
- No lock is ever held across a call to the messaging gateway; notifications
  are queued in the outbox and dispatched after commit.
"""

from __future__ import annotations

import time
from typing import Any, Callable

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..errors import PersistenceError


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; writers are serialized by
    begin_immediate instead.
    """
    return query.with_for_update()


def begin_immediate(session: Session) -> None:
    """Take the SQLite write lock up front so read-then-write units cannot deadlock."""
    conn = session.connection()
    if conn.dialect.name != "sqlite":
        return
    raw = conn.connection.driver_connection
    if not raw.in_transaction:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def compare_and_set(session: Session, model, criteria: list, values: dict) -> bool:
    """
    Single-row conditional update.

    Returns True when exactly one row matched `criteria` and was written.
    The ORM identity map is not synchronized; refresh instances afterwards.
    """
    stmt = (
        update(model)
        .where(*criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    return result.rowcount == 1


def run_with_retry(
    session: Session,
    func: Callable[[], Any],
    *,
    attempts: int = 3,
    backoff_base: float = 0.05,
    retry_on: tuple = (),
):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (locks, deadlocks) and StaleDataError
    (version_id conflicts), plus any extra exception types in `retry_on`.
    Exhausted retries surface as PersistenceError.
    """
    retryable = (OperationalError, StaleDataError) + tuple(retry_on)
    for attempt in range(attempts):
        try:
            return func()
        except retryable as exc:
            session.rollback()
            if attempt >= attempts - 1:
                raise PersistenceError(
                    "Database operation failed after retries",
                    details={"attempts": attempts, "cause": exc.__class__.__name__},
                ) from exc
            time.sleep(backoff_base * (2 ** attempt))


def run_in_transaction(
    session: Session,
    func: Callable[[], Any],
    *,
    attempts: int = 3,
    backoff_base: float = 0.05,
    retry_on: tuple = (),
):
    """
    Run `func` as one unit of work: begin, execute, commit.

    Any exception rolls the whole unit back before propagating, so a business
    rejection raised halfway through leaves no partial writes behind.
    """
    def _op():
        begin_immediate(session)
        try:
            result = func()
            session.commit()
        except Exception:
            session.rollback()
            raise
        return result

    return run_with_retry(
        session,
        _op,
        attempts=attempts,
        backoff_base=backoff_base,
        retry_on=retry_on,
    )
