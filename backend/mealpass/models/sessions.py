from __future__ import annotations

from ..extensions import db
from mealpass.time_utils import to_utc_z, utcnow


class SessionRecordMixin:
    """
    Columns shared by every server-side session record.

    WHY: A signed credential alone cannot be revoked. The record, keyed by
    the credential's jti, carries revocation and a server-side expiry that
    is checked independently of the token's own exp claim.

    IMMUTABLE IDENTITY: Records are never hard-deleted; revocation is
    permanent (revoked_at only ever moves NULL -> timestamp).
    """
    id = db.Column(db.Integer, primary_key=True)
    jti = db.Column(db.String(64), nullable=False, unique=True)

    issued_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)

    revoked_at = db.Column(db.DateTime, nullable=True)
    revoked_by = db.Column(db.String(255), nullable=True)
    revocation_reason = db.Column(db.String(255), nullable=True)

    last_used_at = db.Column(db.DateTime, nullable=True)
    use_count = db.Column(db.Integer, nullable=False, default=0)

    def _base_dict(self) -> dict:
        return {
            "id": self.id,
            "jti": self.jti,
            "issued_at": to_utc_z(self.issued_at),
            "expires_at": to_utc_z(self.expires_at),
            "revoked_at": to_utc_z(self.revoked_at),
            "revoked_by": self.revoked_by,
            "revocation_reason": self.revocation_reason,
            "last_used_at": to_utc_z(self.last_used_at),
            "use_count": self.use_count,
        }


class DeviceSession(SessionRecordMixin, db.Model):
    """Long-lived kiosk credential record (one per provisioned kiosk session)."""
    __tablename__ = "device_sessions"
    __table_args__ = (
        db.Index("ix_device_sessions_device_revoked", "device_id", "revoked_at"),
        {"sqlite_autoincrement": True},
    )

    device_id = db.Column(db.String(128), nullable=False)
    location = db.Column(db.String(255), nullable=True)
    created_by = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        data = self._base_dict()
        data.update({
            "device_id": self.device_id,
            "location": self.location,
            "created_by": self.created_by,
        })
        return data


class OperatorSession(SessionRecordMixin, db.Model):
    """Short-lived operator (admin) credential record."""
    __tablename__ = "operator_sessions"
    __table_args__ = (
        db.Index("ix_operator_sessions_email_revoked", "operator_email", "revoked_at"),
        {"sqlite_autoincrement": True},
    )

    operator_email = db.Column(db.String(255), nullable=False)
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    def to_dict(self) -> dict:
        data = self._base_dict()
        data.update({
            "operator_email": self.operator_email,
            "ip_address": self.ip_address,
        })
        return data


class OperatorMagicLink(db.Model):
    """
    Single-use login link for operators.

    Only the SHA-256 hash of the emailed token is stored. `used` flips
    False -> True through one conditional update, so a link can start at
    most one session.
    """
    __tablename__ = "operator_magic_links"
    __table_args__ = (
        db.Index("ix_operator_magic_links_expires", "expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    token_hash = db.Column(db.String(64), nullable=False, unique=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    used = db.Column(db.Boolean, nullable=False, default=False)
    used_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
