# Overview: Operator API; magic-link sign-in and kiosk session provisioning/revocation.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import client_ip, rate_limited, require_operator
from ..services import session_service
from ..services.notification_service import NotificationError
from ..services.rate_limit_service import RateLimitKeys
from ..services.session_service import MagicLinkError, SessionError, SessionKind


admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _magic_link_rate_key() -> str | None:
    data = request.get_json(silent=True)
    email = data.get("email") if isinstance(data, dict) else None
    return RateLimitKeys.magic_link(email) if isinstance(email, str) and email.strip() else None


# =============================================================================
# Operator authentication
# =============================================================================

@admin_bp.post("/auth/request-link")
@rate_limited(_magic_link_rate_key, "MAGIC_LINK_RATE_LIMIT", "MAGIC_LINK_RATE_WINDOW_SECONDS")
def request_link_route():
    """
    Email a single-use sign-in link to an operator.

    Always answers the same way so the endpoint cannot be used to discover
    which addresses are operators.
    """
    data = request.get_json(silent=True) or {}
    email = data.get("email") if isinstance(data, dict) else None
    if not isinstance(email, str) or "@" not in email:
        return jsonify({"error": "A valid email is required"}), 400

    try:
        session_service.request_magic_link(email)
    except NotificationError:
        current_app.logger.exception("Failed to deliver magic link")
    except Exception:
        current_app.logger.exception("Failed to create magic link")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"message": "If that address belongs to an operator, a sign-in link is on its way."}), 200


@admin_bp.post("/auth/verify")
def verify_link_route():
    data = request.get_json(silent=True) or {}
    token = data.get("token") if isinstance(data, dict) else None
    try:
        record, credential = session_service.verify_magic_link(
            token or "",
            ip_address=client_ip(),
            user_agent=request.headers.get("User-Agent"),
        )
    except MagicLinkError as e:
        return jsonify({"error": str(e)}), 401
    except Exception:
        current_app.logger.exception("Failed to verify magic link")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"token": credential, "session": record.to_dict()}), 200


@admin_bp.post("/auth/logout")
@require_operator
def logout_route():
    jti = g.operator_session.jti
    if jti:
        session_service.revoke_session(
            SessionKind.OPERATOR, jti, revoked_by=g.operator_email, reason="Logout"
        )
    return jsonify({"message": "Logged out"}), 200


@admin_bp.post("/auth/logout-all")
@require_operator
def logout_all_route():
    count = session_service.revoke_all_sessions(
        SessionKind.OPERATOR, g.operator_email, revoked_by=g.operator_email, reason="Logout all"
    )
    return jsonify({"revoked": count}), 200


# =============================================================================
# Kiosk sessions
# =============================================================================

@admin_bp.post("/kiosk-sessions")
@require_operator
def create_kiosk_session_route():
    """
    Provision a kiosk. The credential is returned once and never stored.

    Body: {"kiosk_id": str, "location": str?}
    """
    data = request.get_json(silent=True) or {}
    try:
        record, credential = session_service.create_device_session(
            data.get("kiosk_id") or "",
            location=data.get("location"),
            created_by=g.operator_email,
        )
    except SessionError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create kiosk session")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"token": credential, "session": record.to_dict()}), 201


@admin_bp.get("/kiosk-sessions")
@require_operator
def list_kiosk_sessions_route():
    sessions = session_service.list_active_sessions(SessionKind.DEVICE, request.args.get("kiosk_id"))
    return jsonify({"sessions": [s.to_dict() for s in sessions]}), 200


@admin_bp.post("/kiosk-sessions/<jti>/revoke")
@require_operator
def revoke_kiosk_session_route(jti):
    data = request.get_json(silent=True) or {}
    reason = data.get("reason") if isinstance(data, dict) else None

    revoked = session_service.revoke_session(
        SessionKind.DEVICE, jti, revoked_by=g.operator_email, reason=reason
    )
    if revoked:
        return jsonify({"revoked": True}), 200

    if session_service.get_session_record(SessionKind.DEVICE, jti) is None:
        return jsonify({"error": "Session not found"}), 404
    return jsonify({"revoked": False, "already_revoked": True}), 200


@admin_bp.post("/kiosks/<kiosk_id>/revoke-all")
@require_operator
def revoke_all_kiosk_sessions_route(kiosk_id):
    data = request.get_json(silent=True) or {}
    reason = data.get("reason") if isinstance(data, dict) else None
    count = session_service.revoke_all_sessions(
        SessionKind.DEVICE, kiosk_id, revoked_by=g.operator_email, reason=reason or "Emergency revoke"
    )
    return jsonify({"revoked": count}), 200
