# Overview: Outbound message delivery (Telegram, email provider, or log-only) over httpx.

"""
Notification Service

Delivery is an external collaborator that can be slow or down. Every
request carries a bounded timeout, and any failure surfaces as a single
NotificationError so callers can route it to the retry queue instead of
failing the job.

Senders are small objects with one method, send(recipient, message). Tests
substitute a fake; production picks one from NOTIFY_BACKEND.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx
from flask import current_app

from .short_code_service import format_short_code


logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when an outbound message could not be delivered."""
    pass


@dataclass
class Message:
    subject: str
    text: str
    idempotency_key: str | None = None
    extra: dict = field(default_factory=dict)

    def to_payload(self) -> dict:
        return {
            "subject": self.subject,
            "text": self.text,
            "idempotency_key": self.idempotency_key,
            "extra": self.extra,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "Message":
        return cls(
            subject=payload.get("subject", ""),
            text=payload.get("text", ""),
            idempotency_key=payload.get("idempotency_key"),
            extra=payload.get("extra") or {},
        )


class TelegramSender:
    def __init__(self, bot_token: str, api_base: str, timeout: float):
        if not bot_token:
            raise NotificationError("TELEGRAM_BOT_TOKEN is not configured")
        self._url = f"{api_base.rstrip('/')}/bot{bot_token}/sendMessage"
        self._timeout = timeout

    def send(self, recipient: str, message: Message) -> None:
        body = {"chat_id": recipient, "text": message.text, "parse_mode": "Markdown"}
        try:
            response = httpx.post(self._url, json=body, timeout=self._timeout)
        except httpx.HTTPError as exc:
            raise NotificationError(f"Telegram request failed: {exc.__class__.__name__}") from exc
        if response.status_code >= 400:
            raise NotificationError(f"Telegram returned HTTP {response.status_code}")


class EmailSender:
    def __init__(self, api_key: str, api_url: str, sender: str, timeout: float):
        if not api_key:
            raise NotificationError("EMAIL_API_KEY is not configured")
        self._api_key = api_key
        self._api_url = api_url
        self._from = sender
        self._timeout = timeout

    def send(self, recipient: str, message: Message) -> None:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        if message.idempotency_key:
            headers["Idempotency-Key"] = message.idempotency_key
        body = {
            "from": self._from,
            "to": [recipient],
            "subject": message.subject,
            "text": message.text,
        }
        try:
            response = httpx.post(self._api_url, json=body, headers=headers, timeout=self._timeout)
        except httpx.HTTPError as exc:
            raise NotificationError(f"Email request failed: {exc.__class__.__name__}") from exc
        if response.status_code >= 400:
            raise NotificationError(f"Email provider returned HTTP {response.status_code}")


class LogSender:
    """Development sender: writes the message to the log and always succeeds."""

    def send(self, recipient: str, message: Message) -> None:
        logger.info("Notification to %s: %s", recipient, message.subject)


def get_sender():
    cfg = current_app.config
    backend = (cfg.get("NOTIFY_BACKEND") or "log").lower()
    timeout = cfg.get("NOTIFY_TIMEOUT_SECONDS", 10)
    if backend == "telegram":
        return TelegramSender(cfg.get("TELEGRAM_BOT_TOKEN"), cfg["TELEGRAM_API_BASE"], timeout)
    if backend == "email":
        return EmailSender(cfg.get("EMAIL_API_KEY"), cfg["EMAIL_API_URL"], cfg["EMAIL_FROM"], timeout)
    return LogSender()


def recipient_for(customer) -> str | None:
    """Delivery address for a customer under the configured backend (None if unreachable)."""
    backend = (current_app.config.get("NOTIFY_BACKEND") or "log").lower()
    if backend == "telegram":
        return customer.telegram_chat_id
    if backend == "email":
        return customer.email
    return customer.telegram_chat_id or customer.email or customer.id


def meal_token_message(*, customer_name: str, service_date, short_code: str,
                       idempotency_key: str) -> Message:
    first = (customer_name or "").split()[0] if (customer_name or "").strip() else "there"
    text = (
        f"Hi {first}! Your meal code for {service_date.isoformat()} is "
        f"*{format_short_code(short_code)}*.\n"
        "Show it at the kiosk before midnight."
    )
    return Message(
        subject=f"Your meal code for {service_date.isoformat()}",
        text=text,
        idempotency_key=idempotency_key,
        extra={"service_date": service_date.isoformat()},
    )


def magic_link_message(*, login_url: str, minutes: int) -> Message:
    return Message(
        subject="Your admin sign-in link",
        text=f"Sign in: {login_url}\nThis link expires in {minutes} minutes and works once.",
    )
