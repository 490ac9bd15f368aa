# Overview: Kiosk API; rate-limited, session-authenticated meal redemption.

from flask import Blueprint, current_app, jsonify, request

from ..decorators import rate_limited
from ..services import redemption_service, session_service
from ..services.rate_limit_service import RateLimitKeys
from ..services.session_service import Denied, SessionKind


kiosk_bp = Blueprint("kiosk", __name__, url_prefix="/api/kiosk")


def _device_session_token(data) -> str | None:
    if not isinstance(data, dict):
        return None
    token = data.get("device_session_token")
    return token if isinstance(token, str) and token else None


def _kiosk_rate_key() -> str | None:
    token = _device_session_token(request.get_json(silent=True))
    return RateLimitKeys.kiosk(token) if token else None


@kiosk_bp.post("/redeem")
@rate_limited(_kiosk_rate_key, "KIOSK_REDEEM_RATE_LIMIT", "KIOSK_REDEEM_RATE_WINDOW_SECONDS")
def redeem_route():
    """
    Redeem a scanned QR credential or typed short code.

    Body: {"presented_token": str, "device_session_token": str}

    Returns:
    - 200 with first name and dietary flags
    - 400/404 with a stable redemption code
    - 401 when the kiosk session is invalid, revoked or expired
    - 429 when this kiosk session is over its rate limit
    """
    try:
        data = request.get_json(silent=True)
        session_token = _device_session_token(data)
        presented = data.get("presented_token") if isinstance(data, dict) else None
        if not session_token or not isinstance(presented, str) or not presented:
            return jsonify({"error": "Missing required fields", "code": "INVALID_REQUEST"}), 400

        check = session_service.validate_session(SessionKind.DEVICE, session_token)
        if isinstance(check, Denied):
            return jsonify({"error": check.message, "code": check.reason.value}), 401

        result = redemption_service.redeem(
            presented,
            terminal_id=str(check.claims.get("kiosk_id") or "unknown"),
            terminal_location=check.claims.get("location"),
        )
        return jsonify(result.to_dict()), result.http_status
    except Exception:
        current_app.logger.exception("Failed to redeem meal")
        return jsonify({"error": "Internal server error"}), 500
