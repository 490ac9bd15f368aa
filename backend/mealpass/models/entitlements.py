from __future__ import annotations

from ..extensions import db
from mealpass.time_utils import to_utc_z, utcnow


class Entitlement(db.Model):
    """
    Per-customer, per-service-day meal allowance.

    INVARIANT: 0 <= meals_redeemed <= meals_allowed. Redemption increments
    meals_redeemed only through a conditional update; issuance upserts
    meals_allowed and never writes meals_redeemed on conflict.
    """
    __tablename__ = "entitlements"
    __table_args__ = (
        db.UniqueConstraint("customer_id", "service_date", name="uq_entitlements_customer_date"),
        db.CheckConstraint("meals_redeemed >= 0", name="ck_entitlements_redeemed_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.String(36), db.ForeignKey("customers.id"), nullable=False, index=True)
    service_date = db.Column(db.Date, nullable=False, index=True)

    meals_allowed = db.Column(db.Integer, nullable=False, default=1)
    meals_redeemed = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "service_date": self.service_date.isoformat(),
            "meals_allowed": self.meals_allowed,
            "meals_redeemed": self.meals_redeemed,
        }


class MealToken(db.Model):
    """
    The one signed meal credential for a (customer, service_date).

    The unique (customer_id, service_date) key is what makes issuance
    exactly-once under concurrent runs; used_at flips NULL -> timestamp at
    most once (redemption), notified_at likewise (delivery claim).
    """
    __tablename__ = "meal_tokens"
    __table_args__ = (
        db.UniqueConstraint("customer_id", "service_date", name="uq_meal_tokens_customer_date"),
        db.Index("ix_meal_tokens_service_date", "service_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.String(36), db.ForeignKey("customers.id"), nullable=False, index=True)
    service_date = db.Column(db.Date, nullable=False)

    jti = db.Column(db.String(64), nullable=False, unique=True)
    short_code = db.Column(db.String(16), nullable=False, unique=True)
    credential = db.Column(db.Text, nullable=False)

    issued_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)
    used_at = db.Column(db.DateTime, nullable=True)
    notified_at = db.Column(db.DateTime, nullable=True)

    customer = db.relationship("Customer", backref=db.backref("meal_tokens", lazy=True))

    def to_dict(self) -> dict:
        # Credential text is deliberately omitted.
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "service_date": self.service_date.isoformat(),
            "jti": self.jti,
            "issued_at": to_utc_z(self.issued_at),
            "expires_at": to_utc_z(self.expires_at),
            "used_at": to_utc_z(self.used_at),
            "notified_at": to_utc_z(self.notified_at),
        }


class Redemption(db.Model):
    """
    Append-only record of a served meal.

    IMMUTABLE: Never update or delete. Unique jti backs the exactly-once
    guarantee even if the conditional token claim were bypassed.
    """
    __tablename__ = "redemptions"
    __table_args__ = (
        db.Index("ix_redemptions_customer_date", "customer_id", "service_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    jti = db.Column(db.String(64), nullable=False, unique=True)
    customer_id = db.Column(db.String(36), db.ForeignKey("customers.id"), nullable=False)
    service_date = db.Column(db.Date, nullable=False)
    terminal_id = db.Column(db.String(128), nullable=False)
    terminal_location = db.Column(db.String(255), nullable=True)
    redeemed_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "jti": self.jti,
            "customer_id": self.customer_id,
            "service_date": self.service_date.isoformat(),
            "terminal_id": self.terminal_id,
            "terminal_location": self.terminal_location,
            "redeemed_at": to_utc_z(self.redeemed_at),
        }
