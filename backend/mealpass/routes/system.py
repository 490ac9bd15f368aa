# backend/mealpass/routes/system.py
"""
System health endpoint.

Reports store connectivity, session store accessibility and whether the
signing keys needed for issuance and redemption load.
"""

import time

from flask import Blueprint, current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import DeviceSession, MealToken, NotificationRetry
from ..services.signing_service import SigningKeyError, get_kiosk_signer, get_meal_signer
from mealpass.time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def _elapsed_ms(start_time: float) -> float:
    return round((time.time() - start_time) * 1000, 2)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        token_count = db.session.query(MealToken).count()
        pending_retries = db.session.query(NotificationRetry).filter(
            NotificationRetry.status.in_((NotificationRetry.STATUS_PENDING, NotificationRetry.STATUS_RETRYING))
        ).count()
        dead_retries = db.session.query(NotificationRetry).filter_by(
            status=NotificationRetry.STATUS_DEAD
        ).count()
        return {
            "status": "degraded" if dead_retries else "healthy",
            "latency_ms": _elapsed_ms(start_time),
            "details": {
                "meal_tokens": token_count,
                "pending_retries": pending_retries,
                "dead_retries": dead_retries,
            },
        }
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Database health check failed")
        return {"status": "unhealthy", "latency_ms": _elapsed_ms(start_time), "error": "Database error"}


def check_session_store_health() -> dict:
    start_time = time.time()
    try:
        now = utcnow()
        active = db.session.query(DeviceSession).filter(
            DeviceSession.revoked_at.is_(None),
            DeviceSession.expires_at > now,
        ).count()
        return {
            "status": "healthy",
            "latency_ms": _elapsed_ms(start_time),
            "details": {"active_kiosk_sessions": active},
        }
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Session store health check failed")
        return {"status": "unhealthy", "latency_ms": _elapsed_ms(start_time), "error": "Session store error"}


def check_signing_keys() -> dict:
    """Keys missing is 'degraded': the process runs but cannot issue or verify."""
    problems = []
    try:
        if not get_meal_signer().can_sign:
            problems.append("meal token private key")
    except SigningKeyError:
        problems.append("meal token keys")
    try:
        get_kiosk_signer()
    except SigningKeyError:
        problems.append("kiosk keys")

    if problems:
        return {"status": "degraded", "warning": f"Unavailable: {', '.join(problems)}"}
    return {"status": "healthy"}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: a dependency is unhealthy
    """
    start_time = time.time()
    checks = {
        "database": check_database_health(),
        "session_store": check_session_store_health(),
        "signing_keys": check_signing_keys(),
    }
    statuses = [check["status"] for check in checks.values()]

    if "unhealthy" in statuses:
        overall_status, http_status = "unhealthy", 503
    elif "degraded" in statuses:
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": _elapsed_ms(start_time),
        "checks": checks,
    }, http_status
