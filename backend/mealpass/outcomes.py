# Overview: Typed outcomes shared by services (insert races, best-effort side writes).

"""
Typed Outcomes

Several store operations have a "someone else already did this" result
that is not an error: a unique-key insert that loses a race, a retry record
that already exists, a webhook event already seen. Returning Created/Conflict
forces callers to handle that path explicitly instead of catching
IntegrityError in ad-hoc places.

Best-effort side writes (usage tracking, retry enqueueing, alerts) run through
attempt(), which logs and returns Failed instead of raising. The caller
decides whether to look at the outcome; it can never escape by accident.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar, Union

from .extensions import db

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Created(Generic[T]):
    """The insert won: `value` is the row this caller created."""
    value: T


@dataclass(frozen=True)
class Conflict(Generic[T]):
    """
    The unique key already existed.

    `existing` is the winning row when it could be read back, else None.
    """
    existing: T | None


InsertOutcome = Union[Created[T], Conflict[T]]


@dataclass(frozen=True)
class Succeeded(Generic[T]):
    value: T


@dataclass(frozen=True)
class Failed:
    error: Exception


AttemptOutcome = Union[Succeeded[T], Failed]


def attempt(
    func: Callable[..., T],
    *args: Any,
    description: str,
    rollback: bool = True,
    **kwargs: Any,
) -> AttemptOutcome:
    """
    Run a best-effort operation and hand back its outcome without raising.

    On failure the exception is logged with `description`, the session is
    rolled back (unless rollback=False) and Failed(error) is returned.
    """
    try:
        return Succeeded(func(*args, **kwargs))
    except Exception as exc:
        if rollback:
            db.session.rollback()
        logger.warning("Best-effort operation failed: %s", description, exc_info=exc)
        return Failed(exc)
