from __future__ import annotations

import uuid

from ..extensions import db
from mealpass.time_utils import to_utc_z, utcnow


def _new_uuid() -> str:
    return str(uuid.uuid4())


class Customer(db.Model):
    """
    Subscriber master data.

    Owned by the onboarding/billing side; the meal engine only reads it
    (first name and dietary flags are shown at the kiosk, contact fields
    are used for delivery).
    """
    __tablename__ = "customers"

    id = db.Column(db.String(36), primary_key=True, default=_new_uuid)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True, unique=True)
    telegram_chat_id = db.Column(db.String(64), nullable=True, index=True)

    # e.g. ["vegetarian", "no-nuts"]
    dietary_flags = db.Column(db.JSON, nullable=False, default=list)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    subscriptions = db.relationship("Subscription", backref="customer", lazy=True)

    @property
    def first_name(self) -> str:
        parts = (self.name or "").strip().split()
        return parts[0] if parts else ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "telegram_chat_id": self.telegram_chat_id,
            "dietary_flags": list(self.dietary_flags or []),
            "created_at": to_utc_z(self.created_at),
        }


class Subscription(db.Model):
    """
    Billing subscription mirrored from the payment provider.

    INTEGRITY: An active subscription must carry both period bounds. Rows
    with a null bound are reported by the issuance job, never dropped.
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        db.Index("ix_subscriptions_status_period", "status", "current_period_start", "current_period_end"),
        {"sqlite_autoincrement": True},
    )

    STATUS_ACTIVE = "active"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.String(36), db.ForeignKey("customers.id"), nullable=False, index=True)
    external_id = db.Column(db.String(128), nullable=True, unique=True)

    # active, past_due, canceled, unpaid, ...
    status = db.Column(db.String(32), nullable=False, default="active", index=True)

    current_period_start = db.Column(db.DateTime, nullable=True)
    current_period_end = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def covers(self, start, end) -> bool:
        """True when the billing period overlaps the half-open window [start, end)."""
        if self.current_period_start is None or self.current_period_end is None:
            return False
        return self.current_period_start < end and self.current_period_end > start

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "external_id": self.external_id,
            "status": self.status,
            "current_period_start": to_utc_z(self.current_period_start),
            "current_period_end": to_utc_z(self.current_period_end),
        }


class Skip(db.Model):
    """Customer opt-out for one service date. One row per (customer, date)."""
    __tablename__ = "skips"
    __table_args__ = (
        db.UniqueConstraint("customer_id", "skip_date", name="uq_skips_customer_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.String(36), db.ForeignKey("customers.id"), nullable=False, index=True)
    skip_date = db.Column(db.Date, nullable=False, index=True)
    source = db.Column(db.String(32), nullable=False, default="telegram")
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "skip_date": self.skip_date.isoformat(),
            "source": self.source,
            "created_at": to_utc_z(self.created_at),
        }


class ServiceClosure(db.Model):
    """A calendar date on which no meals are served (holidays, kitchen closures)."""
    __tablename__ = "service_closures"

    id = db.Column(db.Integer, primary_key=True)
    closed_date = db.Column(db.Date, nullable=False, unique=True)
    reason = db.Column(db.String(255), nullable=True)
