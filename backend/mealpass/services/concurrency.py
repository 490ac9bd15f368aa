# Overview: Store-level concurrency helpers; every race-sensitive write goes through here.

from __future__ import annotations

import time

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..outcomes import Conflict, Created, InsertOutcome


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locked database) and StaleDataError
    (optimistic locking conflicts). The session is rolled back between attempts.
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


def dialect_insert(model):
    """
    Dialect-specific INSERT construct supporting ON CONFLICT clauses.

    Upserts are single statements so the database, not application code,
    decides the winner of concurrent writers.
    """
    name = db.session.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upserts are not supported on dialect {name!r}")
    return insert(model)


def insert_unique(row, load_existing) -> InsertOutcome:
    """
    Insert and commit `row`; a unique-constraint violation is a Conflict.

    `load_existing` is called after the rollback and should return the row
    that won the race (or None if the violated key was a different one).

    Commits: callers must not have other pending work in the session.
    """
    db.session.add(row)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return Conflict(load_existing())
    return Created(row)
