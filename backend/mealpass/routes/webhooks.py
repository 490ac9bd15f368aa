# Overview: Inbound provider webhooks (billing, chat bot); rate-limited per client IP, authenticated, de-duplicated.

from flask import Blueprint, current_app, jsonify, request

from ..decorators import client_ip, rate_limited
from ..services import telegram_bot_service, webhook_service
from ..services.rate_limit_service import RateLimitKeys
from ..services.webhook_service import WebhookPayloadError, WebhookSignatureError


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")

SIGNATURE_HEADER = "X-Billing-Signature"
TELEGRAM_SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


@webhooks_bp.post("/billing")
@rate_limited(lambda: RateLimitKeys.webhook(client_ip()), "WEBHOOK_RATE_LIMIT", "WEBHOOK_RATE_WINDOW_SECONDS")
def billing_webhook_route():
    """
    Billing provider events (subscription created/updated/deleted).

    - 401 bad signature, 400 malformed event (provider should not retry)
    - 500 processing failure (provider retries; attempts are capped)
    """
    try:
        result = webhook_service.process_billing_webhook(
            request.get_data(),
            request.headers.get(SIGNATURE_HEADER),
            current_app.config.get("BILLING_WEBHOOK_SECRET"),
        )
        return jsonify(result), 200
    except WebhookSignatureError:
        current_app.logger.warning("Rejected billing webhook with bad signature from %s", client_ip())
        return jsonify({"error": "Invalid signature"}), 401
    except WebhookPayloadError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to process billing webhook")
        return jsonify({"error": "Internal server error"}), 500


@webhooks_bp.post("/telegram")
@rate_limited(lambda: RateLimitKeys.webhook(client_ip()), "WEBHOOK_RATE_LIMIT", "WEBHOOK_RATE_WINDOW_SECONDS")
def telegram_webhook_route():
    """
    Chat bot updates. The reply (if any) is a Bot API method in the body.

    - 401 bad secret token, 400 update without update_id
    - 500 processing failure (Telegram redelivers; attempts are capped)
    """
    try:
        telegram_bot_service.verify_secret_token(
            request.headers.get(TELEGRAM_SECRET_HEADER),
            current_app.config.get("TELEGRAM_WEBHOOK_SECRET"),
        )
    except WebhookSignatureError:
        current_app.logger.warning("Rejected Telegram update with bad secret token from %s", client_ip())
        return jsonify({"error": "Invalid secret token"}), 401

    try:
        reply = telegram_bot_service.process_telegram_update(request.get_json(silent=True))
        return jsonify(reply or {"ok": True}), 200
    except WebhookPayloadError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to process Telegram update")
        return jsonify({"error": "Internal server error"}), 500
