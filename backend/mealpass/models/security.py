from __future__ import annotations

from ..extensions import db
from mealpass.time_utils import to_utc_z, utcnow


class AuditEvent(db.Model):
    """
    Audit log for redemptions, session creation and revocations.

    IMMUTABLE: Never update or delete. Append-only for audit integrity.
    """
    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("ix_audit_events_action_occurred", "action", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    actor = db.Column(db.String(255), nullable=False)     # e.g. "kiosk:lobby-1", "operator:ops@example.com"
    action = db.Column(db.String(64), nullable=False)     # MEAL_REDEEMED, SESSION_REVOKED, ...
    subject = db.Column(db.String(255), nullable=True)    # customer id or session jti
    details = db.Column(db.JSON, nullable=True)

    occurred_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor": self.actor,
            "action": self.action,
            "subject": self.subject,
            "details": self.details,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class RateLimit(db.Model):
    """
    Fixed-window request counter keyed by caller identity.

    Rows are created and reset by a single upsert; stale rows are removed
    by the maintenance cleanup.
    """
    __tablename__ = "rate_limits"

    key = db.Column(db.String(255), primary_key=True)
    count = db.Column(db.Integer, nullable=False, default=0)
    window_start = db.Column(db.DateTime, nullable=False, index=True)
