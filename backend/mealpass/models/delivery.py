from __future__ import annotations

from ..extensions import db
from mealpass.time_utils import to_utc_z, utcnow


class NotificationRetry(db.Model):
    """
    Failed outbound notification waiting for another attempt.

    LIFECYCLE: pending -> retrying -> sent | dead. The unique
    idempotency_key means one logical message never has two queue entries.
    """
    __tablename__ = "notification_retries"
    __table_args__ = (
        db.Index("ix_notification_retries_due", "status", "next_retry_at"),
        {"sqlite_autoincrement": True},
    )

    STATUS_PENDING = "pending"
    STATUS_RETRYING = "retrying"
    STATUS_SENT = "sent"
    STATUS_DEAD = "dead"

    id = db.Column(db.Integer, primary_key=True)
    idempotency_key = db.Column(db.String(255), nullable=False, unique=True)

    category = db.Column(db.String(64), nullable=False)   # meal_token, magic_link, alert
    recipient = db.Column(db.String(255), nullable=False)
    payload = db.Column(db.JSON, nullable=False)

    attempt_count = db.Column(db.Integer, nullable=False, default=0)
    max_attempts = db.Column(db.Integer, nullable=False, default=4)
    next_retry_at = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending")

    last_error = db.Column(db.Text, nullable=True)
    last_attempted_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "idempotency_key": self.idempotency_key,
            "category": self.category,
            "recipient": self.recipient,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "next_retry_at": to_utc_z(self.next_retry_at),
            "status": self.status,
            "last_error": self.last_error,
            "completed_at": to_utc_z(self.completed_at),
        }


class WebhookEvent(db.Model):
    """Inbound webhook delivery ledger; (source, event_id) is processed at most once."""
    __tablename__ = "webhook_events"
    __table_args__ = (
        db.UniqueConstraint("source", "event_id", name="uq_webhook_events_source_event"),
        {"sqlite_autoincrement": True},
    )

    STATUS_PROCESSING = "processing"
    STATUS_PROCESSED = "processed"
    STATUS_FAILED = "failed"

    id = db.Column(db.Integer, primary_key=True)
    source = db.Column(db.String(32), nullable=False)
    event_id = db.Column(db.String(255), nullable=False)
    event_type = db.Column(db.String(128), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="processing")
    attempts = db.Column(db.Integer, nullable=False, default=1)
    last_error = db.Column(db.Text, nullable=True)
    last_attempted_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    processed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class SkipSelection(db.Model):
    """
    In-progress multi-step skip flow for one chat.

    Expires after a few minutes; an expired row is treated as absent.
    """
    __tablename__ = "skip_selections"

    chat_id = db.Column(db.String(64), primary_key=True)
    customer_id = db.Column(db.String(36), db.ForeignKey("customers.id"), nullable=False)
    selected_dates = db.Column(db.JSON, nullable=False, default=list)  # ISO date strings
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)
