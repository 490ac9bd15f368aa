# Overview: Store-backed fixed-window rate limiter for external entry points.

"""
Rate Limit Service

WHY: Kiosk redemption, webhooks and magic-link requests are public
entry points. They shed load here, before signature parsing or external
calls, using one counter per caller identity.

ATOMICITY: Increment-and-compare is a single INSERT ... ON CONFLICT DO UPDATE
... RETURNING statement. The CASE expressions reset an expired window in the
same statement, so N concurrent callers on one key see exactly max_requests
admitted.

FAIL OPEN: If the store errors, the request is allowed and the error logged.
"""

from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import case
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import RateLimit
from .concurrency import dialect_insert
from mealpass.time_utils import to_utc_naive, utcnow


logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_AGE = timedelta(hours=24)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    limit: int
    reset_at: datetime
    retry_after: int | None = None

    def headers(self) -> dict:
        """Standard X-RateLimit-* headers (plus Retry-After when rejected)."""
        reset = int((self.reset_at - datetime(1970, 1, 1)).total_seconds())
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(reset),
        }
        if not self.allowed and self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimitKeys:
    """Key builders, one namespace per entry point."""

    @staticmethod
    def kiosk(session_token: str) -> str:
        # Hash rather than store a bearer credential as a key
        digest = hashlib.sha256(session_token.encode("utf-8")).hexdigest()[:32]
        return f"kiosk:{digest}"

    @staticmethod
    def webhook(ip: str) -> str:
        return f"webhook:{ip}"

    @staticmethod
    def magic_link(email: str) -> str:
        return f"magic:{email.strip().lower()}"


def check_rate_limit(key: str, max_requests: int, window: timedelta,
                     now: datetime | None = None) -> RateLimitResult:
    """
    Count this call against `key` and report whether it is admitted.

    Commits. Never raises for store errors (fails open).
    """
    now = to_utc_naive(now) if now is not None else utcnow()
    window_expired = RateLimit.window_start <= now - window

    stmt = dialect_insert(RateLimit).values(key=key, count=1, window_start=now)
    stmt = stmt.on_conflict_do_update(
        index_elements=["key"],
        set_={
            "count": case((window_expired, 1), else_=RateLimit.count + 1),
            "window_start": case((window_expired, now), else_=RateLimit.window_start),
        },
    ).returning(RateLimit.count, RateLimit.window_start)

    try:
        row = db.session.execute(stmt).one()
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Rate limit check failed for %s; allowing request", key)
        return RateLimitResult(allowed=True, remaining=max_requests, limit=max_requests,
                               reset_at=now + window)

    count, window_start = row
    reset_at = to_utc_naive(window_start) + window
    allowed = count <= max_requests
    retry_after = None
    if not allowed:
        retry_after = max(1, math.ceil((reset_at - now).total_seconds()))
        logger.warning("Rate limit exceeded for %s", key.split(":", 1)[0])
    return RateLimitResult(
        allowed=allowed,
        remaining=max(0, max_requests - count),
        limit=max_requests,
        reset_at=reset_at,
        retry_after=retry_after,
    )


def cleanup_rate_limits(max_age: timedelta = DEFAULT_CLEANUP_AGE, now: datetime | None = None) -> int:
    """Delete counters whose window started more than `max_age` ago. Returns rows deleted."""
    now = now or utcnow()
    deleted = db.session.query(RateLimit).filter(
        RateLimit.window_start < now - max_age
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted
