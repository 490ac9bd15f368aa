# Overview: Scheduler-triggered job endpoints, authenticated by the shared cron secret.

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_cron_secret
from ..services import issuance_service, maintenance_service, retry_queue_service
from mealpass.time_utils import parse_iso_date


cron_bp = Blueprint("cron", __name__, url_prefix="/api/cron")


@cron_bp.post("/issue-tokens")
@require_cron_secret
def issue_tokens_route():
    """
    Run daily token issuance. Safe to call repeatedly for the same day.

    Optional body: {"service_date": "YYYY-MM-DD"} (defaults to today in the service zone).
    """
    data = request.get_json(silent=True) or {}
    try:
        service_date = parse_iso_date(data.get("service_date")) if isinstance(data, dict) else None
    except (TypeError, ValueError):
        return jsonify({"error": "service_date must be YYYY-MM-DD"}), 400

    try:
        report = issuance_service.issue_daily_tokens(service_date=service_date)
        return jsonify(report.to_dict()), 200
    except Exception:
        current_app.logger.exception("Failed to run token issuance")
        return jsonify({"error": "Internal server error"}), 500


@cron_bp.post("/retry-notifications")
@require_cron_secret
def retry_notifications_route():
    try:
        report = retry_queue_service.process_due_retries()
        return jsonify(report.to_dict()), 200
    except Exception:
        current_app.logger.exception("Failed to process notification retries")
        return jsonify({"error": "Internal server error"}), 500


@cron_bp.post("/cleanup")
@require_cron_secret
def cleanup_route():
    try:
        return jsonify(maintenance_service.run_cleanup()), 200
    except Exception:
        current_app.logger.exception("Failed to run maintenance cleanup")
        return jsonify({"error": "Internal server error"}), 500
