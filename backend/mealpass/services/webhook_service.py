# Overview: Inbound webhook idempotency ledger and the billing webhook handler.

"""
Webhook Service

WHY: Payment providers deliver webhooks at least once and retry on any non-2xx
response. Each (source, event_id) is recorded by a unique insert before any
work happens; the insert outcome decides what this delivery may do:

    NEW        first delivery, process it
    DUPLICATE  already processed (or being processed right now), acknowledge only
    RETRY      an earlier attempt failed, process again
    EXHAUSTED  failed WEBHOOK_MAX_ATTEMPTS times, acknowledge and leave for an operator

A failed attempt is re-claimed with a conditional update on (status, attempts),
so two concurrent redeliveries cannot both retry.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta
from enum import Enum

from ..extensions import db
from ..models import Customer, Subscription, WebhookEvent
from ..outcomes import Created
from . import alert_service
from .concurrency import insert_unique
from mealpass.time_utils import from_epoch_seconds, parse_iso_datetime, utcnow


logger = logging.getLogger(__name__)

WEBHOOK_MAX_ATTEMPTS = 3

# A "processing" row older than this is assumed to belong to a crashed worker
PROCESSING_LEASE = timedelta(minutes=5)

BILLING_SOURCE = "billing"
TELEGRAM_SOURCE = "telegram"


class WebhookSignatureError(Exception):
    """Raised when a webhook body does not match its signature."""
    pass


class WebhookPayloadError(Exception):
    """Raised when a webhook body is not a usable event."""
    pass


class WebhookDisposition(str, Enum):
    NEW = "new"
    DUPLICATE = "duplicate"
    RETRY = "retry"
    EXHAUSTED = "exhausted"


def _find_event(source: str, event_id: str) -> WebhookEvent | None:
    return db.session.query(WebhookEvent).filter_by(source=source, event_id=event_id).first()


def begin_webhook_event(source: str, event_id: str, event_type: str,
                        now: datetime | None = None) -> tuple[WebhookDisposition, WebhookEvent | None]:
    now = now or utcnow()
    row = WebhookEvent(
        source=source,
        event_id=event_id,
        event_type=event_type,
        status=WebhookEvent.STATUS_PROCESSING,
        attempts=1,
        last_attempted_at=now,
        created_at=now,
    )
    outcome = insert_unique(row, lambda: _find_event(source, event_id))
    if isinstance(outcome, Created):
        return WebhookDisposition.NEW, outcome.value

    existing = outcome.existing
    if existing is None:
        raise WebhookPayloadError("Event conflicted but could not be read back")

    if existing.status == WebhookEvent.STATUS_PROCESSED:
        return WebhookDisposition.DUPLICATE, existing

    stale = existing.last_attempted_at <= now - PROCESSING_LEASE
    if existing.status == WebhookEvent.STATUS_PROCESSING and not stale:
        return WebhookDisposition.DUPLICATE, existing

    if existing.attempts >= WEBHOOK_MAX_ATTEMPTS:
        return WebhookDisposition.EXHAUSTED, existing

    reclaimed = db.session.query(WebhookEvent).filter(
        WebhookEvent.id == existing.id,
        WebhookEvent.status == existing.status,
        WebhookEvent.attempts == existing.attempts,
    ).update(
        {
            "status": WebhookEvent.STATUS_PROCESSING,
            "attempts": WebhookEvent.attempts + 1,
            "last_attempted_at": now,
        },
        synchronize_session=False,
    )
    db.session.commit()
    if reclaimed != 1:
        return WebhookDisposition.DUPLICATE, existing
    return WebhookDisposition.RETRY, db.session.get(WebhookEvent, existing.id)


def complete_webhook_event(event: WebhookEvent, now: datetime | None = None) -> None:
    event.status = WebhookEvent.STATUS_PROCESSED
    event.processed_at = now or utcnow()
    event.last_error = None
    db.session.commit()


def fail_webhook_event(event_id: int, error: str, now: datetime | None = None) -> None:
    event = db.session.get(WebhookEvent, event_id)
    if event is None:
        return
    event.status = WebhookEvent.STATUS_FAILED
    event.last_error = error[:2000]
    event.last_attempted_at = now or utcnow()
    db.session.commit()
    if event.attempts >= WEBHOOK_MAX_ATTEMPTS:
        alert_service.send_admin_alert(
            "🚨 *Webhook processing exhausted*",
            {"source": event.source, "event_id": event.event_id,
             "event_type": event.event_type, "error": event.last_error},
        )


def verify_signature(raw_body: bytes, signature: str | None, secret: str | None) -> None:
    """HMAC-SHA256 over the raw body; header value is hex, optionally prefixed "sha256="."""
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not signature:
        raise WebhookSignatureError("Missing signature")
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, provided):
        raise WebhookSignatureError("Signature mismatch")


def sign_body(raw_body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def _parse_timestamp(value) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return from_epoch_seconds(value)
    return parse_iso_datetime(str(value))


def _upsert_customer(data: dict) -> Customer:
    customer_id = data.get("id")
    if not customer_id:
        raise WebhookPayloadError("Event has no customer id")
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        customer = Customer(id=customer_id, name=data.get("name") or "", dietary_flags=[])
        db.session.add(customer)
    for attr in ("name", "email", "telegram_chat_id", "dietary_flags"):
        if attr in data and data[attr] is not None:
            setattr(customer, attr, data[attr])
    return customer


def apply_subscription_event(event_type: str, data: dict) -> Subscription | None:
    """
    Mirror a billing subscription event into the subscriptions table. Does not commit.

    Unhandled event types are ignored (returns None).
    """
    if not event_type.startswith("subscription."):
        return None

    external_id = data.get("id")
    if not external_id:
        raise WebhookPayloadError("Subscription event has no id")

    subscription = db.session.query(Subscription).filter_by(external_id=external_id).first()
    if subscription is None:
        customer = _upsert_customer(data.get("customer") or {})
        subscription = Subscription(external_id=external_id, customer_id=customer.id)
        db.session.add(subscription)
    elif data.get("customer"):
        _upsert_customer(data["customer"])

    if event_type == "subscription.deleted":
        subscription.status = "canceled"
    else:
        subscription.status = data.get("status") or subscription.status or "active"
        if "current_period_start" in data:
            subscription.current_period_start = _parse_timestamp(data["current_period_start"])
        if "current_period_end" in data:
            subscription.current_period_end = _parse_timestamp(data["current_period_end"])
    return subscription


def process_billing_webhook(raw_body: bytes, signature: str | None, secret: str | None,
                            now: datetime | None = None) -> dict:
    """
    Verify, de-duplicate and apply one billing webhook delivery.

    Raises WebhookSignatureError / WebhookPayloadError for bad requests; any
    other exception means processing failed and the provider should retry.
    """
    verify_signature(raw_body, signature, secret)
    try:
        event = json.loads(raw_body)
    except ValueError as exc:
        raise WebhookPayloadError("Body is not JSON") from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise WebhookPayloadError("Event must carry id and type")

    now = now or utcnow()
    disposition, record = begin_webhook_event(BILLING_SOURCE, str(event["id"]), str(event["type"]), now)
    if disposition in (WebhookDisposition.DUPLICATE, WebhookDisposition.EXHAUSTED):
        logger.info("Billing webhook %s: %s", event["id"], disposition.value)
        return {"received": True, "status": disposition.value}

    record_id = record.id
    try:
        apply_subscription_event(str(event["type"]), event.get("data") or {})
        complete_webhook_event(record, now)
    except Exception as exc:
        db.session.rollback()
        fail_webhook_event(record_id, str(exc), now)
        raise
    return {"received": True, "status": disposition.value}
