# Overview: Operator alerts for job failures and integrity problems; never raises.

import json
import logging
import re

from flask import current_app

from .notification_service import Message, NotificationError, TelegramSender


logger = logging.getLogger(__name__)

_MARKDOWN_SPECIALS = re.compile(r"([_*\[\]()~`>#+=|{}.!-])")


def _format_context(context: dict) -> str:
    lines = ["", "", "*Context:*"]
    for key, value in context.items():
        label = key.replace("_", " ").title()
        rendered = json.dumps(value, default=str) if isinstance(value, (dict, list)) else str(value)
        lines.append(f"• {label}: {rendered}")
    return "\n".join(lines)


def send_admin_alert(message: str, context: dict | None = None, sender=None) -> bool:
    """
    Deliver an operator alert. Returns True if it was handed to a channel.

    Falls back to an ERROR log when no alert channel is configured. Alert
    failures are logged, never raised: a broken alert path must not abort
    the job that is reporting a problem.
    """
    text = message + (_format_context(context) if context else "")
    cfg = current_app.config
    chat_id = cfg.get("ADMIN_ALERT_CHAT_ID")

    try:
        if sender is None:
            if not (chat_id and cfg.get("TELEGRAM_BOT_TOKEN")):
                logger.error("ADMIN ALERT (no channel configured): %s", text)
                return False
            sender = TelegramSender(
                cfg["TELEGRAM_BOT_TOKEN"], cfg["TELEGRAM_API_BASE"], cfg.get("NOTIFY_TIMEOUT_SECONDS", 10)
            )
        sender.send(chat_id or "admin", Message(subject="Admin alert", text=text))
        return True
    except NotificationError:
        logger.exception("Failed to send admin alert")
        return False
    except Exception:
        logger.exception("Unexpected error sending admin alert")
        return False


def format_job_error_alert(*, job_name: str, run_date: str, error_count: int,
                           total_processed: int, errors: list[dict],
                           max_errors_to_show: int = 5) -> str:
    lines = [
        f"🚨 *{job_name} Alert*",
        "",
        f"*Date*: {run_date}",
        f"*Errors*: {error_count} of {total_processed}",
        "",
    ]
    if errors:
        lines.append("*Affected customers*:")
        for err in errors[:max_errors_to_show]:
            identifier = err.get("email") or err.get("customer_id") or err.get("recipient") or "Unknown"
            detail = _MARKDOWN_SPECIALS.sub(r"\\\1", str(err.get("error", "")))[:100]
            lines.append(f"• {identifier}: {detail}")
        if len(errors) > max_errors_to_show:
            lines.append("")
            lines.append(f"_...and {len(errors) - max_errors_to_show} more_")
    lines.append("")
    lines.append("_Job completed with partial success_")
    return "\n".join(lines)
