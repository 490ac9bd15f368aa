# Overview: Chat bot webhook updates; drives the multi-step /skip flow and answers inline.

"""
Telegram Bot Service

Updates arrive at the webhook at least once. Each update_id goes through the
webhook ledger (source "telegram") before any work, so a redelivered toggle
is acknowledged instead of flipping the date back.

Replies are returned as a Bot API method in the webhook response body
(sendMessage for commands, editMessageText for button presses), so handling
an update needs no outbound call.

CALLBACK DATA:
    skip:toggle:YYYY-MM-DD   add/remove one date from the selection
    skip:confirm             turn the selection into skips
    skip:cancel              drop the selection
    skip:locked:YYYY-MM-DD   already skipped, not toggleable
"""

from __future__ import annotations

import hmac
import logging
from datetime import date, datetime

from ..extensions import db
from ..models import Customer
from . import skip_service
from .calendar_service import CalendarError, next_service_date, today_in_service_zone
from .skip_service import SkipSelectionError
from .webhook_service import (
    TELEGRAM_SOURCE,
    WebhookDisposition,
    WebhookPayloadError,
    WebhookSignatureError,
    begin_webhook_event,
    complete_webhook_event,
    fail_webhook_event,
)
from mealpass.time_utils import utcnow


logger = logging.getLogger(__name__)

# How many upcoming service days the skip keyboard offers
SKIP_CALENDAR_DAYS = 10

HELP_TEXT = (
    "/skip - pick days you don't want a meal\n"
    "/help - show this message"
)
NOT_LINKED_TEXT = "This chat is not linked to a meal subscription."
EXPIRED_TEXT = "That selection expired. Send /skip to start again."


def verify_secret_token(provided: str | None, secret: str | None) -> None:
    """Constant-time check of the X-Telegram-Bot-Api-Secret-Token header."""
    if not secret:
        raise WebhookSignatureError("Telegram webhook secret is not configured")
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
        raise WebhookSignatureError("Secret token mismatch")


def upcoming_service_dates(today: date, count: int = SKIP_CALENDAR_DAYS) -> list[date]:
    dates = []
    day = today
    for _ in range(count):
        try:
            day = next_service_date(day)
        except CalendarError:
            break
        dates.append(day)
    return dates


def _label(day: date) -> str:
    return f"{day:%a %b} {day.day}"


def _send(chat_id, text: str, reply_markup: dict | None = None) -> dict:
    reply = {"method": "sendMessage", "chat_id": chat_id, "text": text}
    if reply_markup:
        reply["reply_markup"] = reply_markup
    return reply


def _edit(chat_id, message_id, text: str, reply_markup: dict | None = None) -> dict:
    if message_id is None:
        return _send(chat_id, text, reply_markup)
    reply = {"method": "editMessageText", "chat_id": chat_id, "message_id": message_id, "text": text}
    if reply_markup:
        reply["reply_markup"] = reply_markup
    return reply


def _answer(callback_query_id, text: str) -> dict:
    return {"method": "answerCallbackQuery", "callback_query_id": callback_query_id, "text": text}


def skip_keyboard(chat_id: str, now: datetime) -> tuple[str, dict] | None:
    """Keyboard for the chat's active selection, or None if it has lapsed."""
    selection = skip_service.get_selection(chat_id, now)
    if selection is None:
        return None

    selected = set(selection.selected_dates or [])
    rows = []
    for day in upcoming_service_dates(today_in_service_zone(now)):
        iso = day.isoformat()
        if skip_service.is_skipped(selection.customer_id, day):
            button = {"text": f"⏭ {_label(day)}", "callback_data": f"skip:locked:{iso}"}
        elif iso in selected:
            button = {"text": f"✅ {_label(day)}", "callback_data": f"skip:toggle:{iso}"}
        else:
            button = {"text": _label(day), "callback_data": f"skip:toggle:{iso}"}
        if rows and len(rows[-1]) < 2:
            rows[-1].append(button)
        else:
            rows.append([button])
    rows.append([
        {"text": f"Confirm ({len(selected)})", "callback_data": "skip:confirm"},
        {"text": "Cancel", "callback_data": "skip:cancel"},
    ])
    return "Pick the days to skip, then confirm.", {"inline_keyboard": rows}


def _start_skip(chat_id: str, now: datetime) -> dict:
    customer = db.session.query(Customer).filter_by(telegram_chat_id=chat_id).first()
    if customer is None:
        return _send(chat_id, NOT_LINKED_TEXT)
    skip_service.begin_skip_selection(chat_id, customer.id, now=now)
    text, keyboard = skip_keyboard(chat_id, now)
    return _send(chat_id, text, keyboard)


def _handle_callback(query: dict, now: datetime) -> dict:
    message = query.get("message") or {}
    chat_id = (message.get("chat") or {}).get("id")
    message_id = message.get("message_id")
    parts = str(query.get("data") or "").split(":")
    if chat_id is None or parts[0] != "skip" or len(parts) < 2:
        return _answer(query.get("id"), "Unknown action")
    chat_id = str(chat_id)
    action = parts[1]

    if action == "locked":
        return _answer(query.get("id"), "Already skipped")

    if action == "cancel":
        skip_service.cancel_skip_selection(chat_id)
        return _edit(chat_id, message_id, "Skip cancelled. Nothing changed.")

    if action == "confirm":
        try:
            created = skip_service.confirm_skip_selection(chat_id, now=now)
        except SkipSelectionError:
            return _edit(chat_id, message_id, EXPIRED_TEXT)
        if not created:
            return _edit(chat_id, message_id, "No new days skipped.")
        return _edit(chat_id, message_id, "Skipped: " + ", ".join(_label(d) for d in created))

    if action == "toggle" and len(parts) == 3:
        try:
            day = date.fromisoformat(parts[2])
        except ValueError:
            return _answer(query.get("id"), "Unknown date")
        try:
            skip_service.toggle_skip_date(chat_id, day, now=now)
        except SkipSelectionError as e:
            if skip_service.get_selection(chat_id, now) is None:
                return _edit(chat_id, message_id, EXPIRED_TEXT)
            return _answer(query.get("id"), str(e))
        text, keyboard = skip_keyboard(chat_id, now)
        return _edit(chat_id, message_id, text, keyboard)

    return _answer(query.get("id"), "Unknown action")


def handle_update(update: dict, now: datetime | None = None) -> dict | None:
    """Reply method for one update, or None when there is nothing to say."""
    now = now or utcnow()
    if "callback_query" in update:
        return _handle_callback(update["callback_query"] or {}, now)

    message = update.get("message") or {}
    chat_id = (message.get("chat") or {}).get("id")
    text = (message.get("text") or "").strip()
    if chat_id is None or not text.startswith("/"):
        return None

    command = text.split()[0].split("@")[0].lower()
    if command == "/skip":
        return _start_skip(str(chat_id), now)
    return _send(str(chat_id), HELP_TEXT)


def _update_type(update: dict) -> str:
    for kind in ("callback_query", "message"):
        if kind in update:
            return kind
    return "other"


def process_telegram_update(update, now: datetime | None = None) -> dict | None:
    """
    De-duplicate and handle one update.

    Raises WebhookPayloadError for an update without update_id; any other
    exception marks the ledger row failed and propagates so Telegram retries.
    """
    if not isinstance(update, dict) or update.get("update_id") is None:
        raise WebhookPayloadError("Update must carry update_id")

    now = now or utcnow()
    update_id = str(update["update_id"])
    disposition, record = begin_webhook_event(TELEGRAM_SOURCE, update_id, _update_type(update), now)
    if disposition in (WebhookDisposition.DUPLICATE, WebhookDisposition.EXHAUSTED):
        logger.info("Telegram update %s: %s", update_id, disposition.value)
        return None

    record_id = record.id
    try:
        reply = handle_update(update, now)
        complete_webhook_event(record, now)
    except Exception as exc:
        db.session.rollback()
        fail_webhook_event(record_id, str(exc), now)
        raise
    return reply
