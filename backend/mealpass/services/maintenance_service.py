# Overview: Periodic cleanup of short-lived store rows (rate limit windows, magic links, skip selections).

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from ..extensions import db
from ..models import OperatorMagicLink
from .rate_limit_service import cleanup_rate_limits
from .session_service import reverify_unverified_uses
from .skip_service import cleanup_expired_selections
from mealpass.time_utils import utcnow


logger = logging.getLogger(__name__)

MAGIC_LINK_RETENTION = timedelta(days=1)


def cleanup_magic_links(now: datetime | None = None) -> int:
    """Delete links that expired more than a day ago (used or not)."""
    now = now or utcnow()
    deleted = db.session.query(OperatorMagicLink).filter(
        OperatorMagicLink.expires_at < now - MAGIC_LINK_RETENTION
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted


def run_cleanup(now: datetime | None = None) -> dict:
    """
    Remove expired transient rows and re-check sessions allowed during a
    store outage. Session records are never deleted here:
    revoked and expired sessions are kept for audit.
    """
    now = now or utcnow()
    result = {
        "rate_limits": cleanup_rate_limits(now=now),
        "magic_links": cleanup_magic_links(now=now),
        "skip_selections": cleanup_expired_selections(now=now),
        "sessions_reverified": reverify_unverified_uses(now=now)["checked"],
    }
    logger.info("Maintenance cleanup: %s", result)
    return result
