# Overview: Request decorators for API routes (cron secret, operator auth, rate limits).

import hmac
from datetime import timedelta
from functools import wraps

from flask import current_app, g, jsonify, request

from .services import session_service
from .services.rate_limit_service import check_rate_limit
from .services.session_service import Denied, SessionKind


def bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


def require_cron_secret(f):
    """
    Require the scheduler's shared secret in the Cron-Secret header.

    SECURITY: Constant-time comparison. An unset CRON_SECRET rejects every
    call rather than accepting an empty header.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("CRON_SECRET")
        provided = request.headers.get("Cron-Secret", "")
        if not expected or not hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
            current_app.logger.warning("Unauthorized cron call to %s", request.path)
            return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)

    return decorated_function


def require_operator(f):
    """
    Require a valid operator session (Authorization: Bearer <credential>).

    Sets g.operator_email and g.operator_session (the Allowed outcome).
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = bearer_token()
        if not token:
            return jsonify({"error": "Authentication required"}), 401

        check = session_service.validate_session(SessionKind.OPERATOR, token)
        if isinstance(check, Denied):
            return jsonify({"error": check.message, "code": check.reason.value}), 401

        email = check.claims.get("sub")
        if not session_service.is_operator_email(email):
            return jsonify({"error": "Not an operator", "code": "FORBIDDEN"}), 403

        g.operator_email = email
        g.operator_session = check
        g.operator_token = token
        return f(*args, **kwargs)

    return decorated_function


def rate_limited(key_func, limit_setting: str, window_setting: str):
    """
    Count the request against key_func() before the view runs.

    limit_setting/window_setting name config keys (requests, seconds).
    Rejected requests get 429 with Retry-After and X-RateLimit-* headers.
    Returning None from key_func skips limiting (nothing to key on).
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            key = key_func()
            if key is None:
                return f(*args, **kwargs)

            limit = int(current_app.config[limit_setting])
            window = timedelta(seconds=int(current_app.config[window_setting]))
            result = check_rate_limit(key, limit, window)
            g.rate_limit = result
            if not result.allowed:
                response = jsonify({"error": "Too many requests. Please try again later."})
                response.status_code = 429
                response.headers.update(result.headers())
                return response

            response = current_app.make_response(f(*args, **kwargs))
            response.headers.update(result.headers())
            return response

        return decorated_function
    return decorator
