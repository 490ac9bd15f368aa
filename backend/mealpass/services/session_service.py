# Overview: Device (kiosk) and operator session credentials: issue, validate, revoke.

"""
Session Authority

WHY: Kiosks hold a credential for weeks and operators for hours. Both are
self-contained signed JWTs carrying a jti, backed by a server-side record so
a session can be revoked before its signature expires.

VALIDATION (check_session):
- Signature/issuer/exp fail -> Denied. Never fails open.
- No jti in the credential -> Allowed(legacy=True). Credentials minted before
  session records existed stay valid on their signature alone.
- jti present, record missing -> Allowed(legacy=True), for the same reason.
- Record revoked -> Denied(SESSION_REVOKED). Record expired -> Denied(SESSION_EXPIRED).
  The record's expires_at is checked independently of the token's exp.
- Record lookup itself errors -> CheckFailed. resolve_check() turns that into
  an allow when FAIL_OPEN_ON_CHECK_FAILURE (config SESSION_FAIL_OPEN) is on.
  validate_session() records each such use as an audit event, and
  reverify_unverified_uses() (run by the cleanup job) re-checks it later.

USAGE TRACKING: last_used_at/use_count are bumped by one atomic UPDATE run
through attempt(); a failure there never affects the validation result.

REVOCATION: revoked_at moves NULL -> timestamp exactly once (conditional
update). Re-revoking is a no-op. Records are never deleted.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Union

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import AuditEvent, DeviceSession, OperatorMagicLink, OperatorSession
from ..outcomes import attempt
from . import alert_service
from .notification_service import get_sender, magic_link_message
from .signing_service import (
    CredentialExpired,
    CredentialInvalid,
    TokenSigner,
    get_kiosk_signer,
    get_operator_signer,
    new_jti,
)
from mealpass.time_utils import to_utc_naive, utcnow


logger = logging.getLogger(__name__)

# Availability over strict revocation when the session store is unreachable.
FAIL_OPEN_ON_CHECK_FAILURE = True

DEVICE_SUBJECT = "kiosk"


class SessionError(Exception):
    """Raised for invalid session creation requests."""
    pass


class MagicLinkError(Exception):
    """Raised when a magic link is unknown, expired or already used."""
    pass


class SessionKind(str, Enum):
    DEVICE = "device"
    OPERATOR = "operator"


class DenyReason(str, Enum):
    INVALID_SESSION = "INVALID_SESSION"
    SESSION_REVOKED = "SESSION_REVOKED"
    SESSION_EXPIRED = "SESSION_EXPIRED"


DENY_MESSAGES = {
    DenyReason.INVALID_SESSION: "Invalid session",
    DenyReason.SESSION_REVOKED: "Session has been revoked",
    DenyReason.SESSION_EXPIRED: "Session has expired",
}


@dataclass(frozen=True)
class _KindSpec:
    model: type
    principal_field: str
    signer: Callable[[], TokenSigner]


SESSION_KINDS = {
    SessionKind.DEVICE: _KindSpec(DeviceSession, "device_id", get_kiosk_signer),
    SessionKind.OPERATOR: _KindSpec(OperatorSession, "operator_email", get_operator_signer),
}


@dataclass(frozen=True)
class Allowed:
    claims: dict
    legacy: bool = False
    # True when allowed on signature alone because the record check failed
    unverified: bool = False

    @property
    def jti(self) -> str | None:
        return self.claims.get("jti")


@dataclass(frozen=True)
class Denied:
    reason: DenyReason

    @property
    def message(self) -> str:
        return DENY_MESSAGES[self.reason]


@dataclass(frozen=True)
class CheckFailed:
    claims: dict
    error: Exception = field(compare=False)


SessionCheck = Union[Allowed, Denied, CheckFailed]


# =============================================================================
# Creation
# =============================================================================

def _audit(actor: str, action: str, subject: str | None, details: dict | None, now: datetime) -> None:
    db.session.add(AuditEvent(actor=actor, action=action, subject=subject, details=details, occurred_at=now))


def create_device_session(device_id: str, *, location: str | None = None,
                          created_by: str | None = None,
                          now: datetime | None = None) -> tuple[DeviceSession, str]:
    """
    Provision a kiosk credential. Returns (record, credential).

    The credential is shown once; only its jti is stored.
    """
    device_id = (device_id or "").strip()
    if not device_id:
        raise SessionError("device_id is required")

    now = now or utcnow()
    lifetime = timedelta(days=current_app.config.get("DEVICE_SESSION_LIFETIME_DAYS", 30))
    expires_at = now + lifetime
    jti = new_jti()

    credential = get_kiosk_signer().sign(
        {"sub": DEVICE_SUBJECT, "kiosk_id": device_id, "location": location},
        expires_at=expires_at,
        issued_at=now,
        jti=jti,
    )
    record = DeviceSession(
        jti=jti,
        device_id=device_id,
        location=location,
        created_by=created_by,
        issued_at=now,
        expires_at=expires_at,
    )
    db.session.add(record)
    _audit(created_by or "system", "SESSION_CREATED", jti,
           {"kind": SessionKind.DEVICE.value, "device_id": device_id}, now)
    db.session.commit()
    logger.info("Device session created for %s (expires %s)", device_id, expires_at.isoformat())
    return record, credential


def create_operator_session(email: str, *, ip_address: str | None = None,
                            user_agent: str | None = None,
                            now: datetime | None = None) -> tuple[OperatorSession, str]:
    now = now or utcnow()
    email = email.strip().lower()
    lifetime = timedelta(hours=current_app.config.get("OPERATOR_SESSION_LIFETIME_HOURS", 8))
    expires_at = now + lifetime
    jti = new_jti()

    credential = get_operator_signer().sign({"sub": email}, expires_at=expires_at, issued_at=now, jti=jti)
    record = OperatorSession(
        jti=jti,
        operator_email=email,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
        issued_at=now,
        expires_at=expires_at,
    )
    db.session.add(record)
    _audit(email, "SESSION_CREATED", jti, {"kind": SessionKind.OPERATOR.value}, now)
    db.session.commit()
    return record, credential


# =============================================================================
# Operator magic links
# =============================================================================

def hash_token(token: str) -> str:
    """SHA-256 hex digest; magic link tokens are high-entropy so no salt is needed."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def is_operator_email(email: str) -> bool:
    allowed = current_app.config.get("OPERATOR_EMAILS") or []
    return (email or "").strip().lower() in allowed


def request_magic_link(email: str, *, sender=None, now: datetime | None = None) -> bool:
    """
    Create and send a single-use login link if `email` is an operator.

    Returns False (and sends nothing) for unknown emails; callers must answer
    both cases identically. Raises NotificationError if delivery fails.
    """
    email = (email or "").strip().lower()
    if not is_operator_email(email):
        logger.warning("Magic link requested for non-operator address")
        return False

    now = now or utcnow()
    minutes = current_app.config.get("OPERATOR_MAGIC_LINK_MINUTES", 15)
    token = secrets.token_urlsafe(32)

    db.session.add(OperatorMagicLink(
        email=email,
        token_hash=hash_token(token),
        expires_at=now + timedelta(minutes=minutes),
        created_at=now,
    ))
    db.session.commit()

    login_url = f"{current_app.config['OPERATOR_LOGIN_URL']}?token={token}"
    (sender or get_sender()).send(email, magic_link_message(login_url=login_url, minutes=minutes))
    return True


def verify_magic_link(token: str, *, ip_address: str | None = None, user_agent: str | None = None,
                      now: datetime | None = None) -> tuple[OperatorSession, str]:
    """Consume a magic link and start an operator session. Single use."""
    if not token:
        raise MagicLinkError("Invalid or expired link")

    now = now or utcnow()
    token_hash = hash_token(token)
    claimed = db.session.query(OperatorMagicLink).filter(
        OperatorMagicLink.token_hash == token_hash,
        OperatorMagicLink.used.is_(False),
        OperatorMagicLink.expires_at > now,
    ).update({"used": True, "used_at": now}, synchronize_session=False)
    db.session.commit()
    if claimed != 1:
        raise MagicLinkError("Invalid or expired link")

    link = db.session.query(OperatorMagicLink).filter_by(token_hash=token_hash).one()
    if not is_operator_email(link.email):
        raise MagicLinkError("Invalid or expired link")

    return create_operator_session(link.email, ip_address=ip_address, user_agent=user_agent, now=now)


# =============================================================================
# Validation
# =============================================================================

def _track_usage(model, jti: str, now: datetime) -> None:
    db.session.query(model).filter(model.jti == jti).update(
        {"last_used_at": now, "use_count": model.use_count + 1},
        synchronize_session=False,
    )
    db.session.commit()


def check_session(kind: SessionKind, token: str, now: datetime | None = None) -> SessionCheck:
    """Raw validation outcome; see module docstring for the rules."""
    kind_spec = SESSION_KINDS[kind]
    now = to_utc_naive(now) if now is not None else utcnow()

    try:
        claims = kind_spec.signer().verify(token, now=now, required=("sub",))
    except CredentialExpired:
        return Denied(DenyReason.SESSION_EXPIRED)
    except CredentialInvalid:
        return Denied(DenyReason.INVALID_SESSION)

    if kind == SessionKind.DEVICE and claims.get("sub") != DEVICE_SUBJECT:
        return Denied(DenyReason.INVALID_SESSION)

    jti = claims.get("jti")
    if not jti:
        return Allowed(claims, legacy=True)

    try:
        record = db.session.query(kind_spec.model).filter_by(jti=jti).first()
    except SQLAlchemyError as exc:
        db.session.rollback()
        return CheckFailed(claims, exc)

    if record is None:
        return Allowed(claims, legacy=True)
    if record.revoked_at is not None:
        return Denied(DenyReason.SESSION_REVOKED)
    if record.expires_at <= now:
        return Denied(DenyReason.SESSION_EXPIRED)

    attempt(_track_usage, kind_spec.model, jti, now, description=f"{kind.value} session usage update")
    return Allowed(claims)


def fail_open_enabled() -> bool:
    return bool(current_app.config.get("SESSION_FAIL_OPEN", FAIL_OPEN_ON_CHECK_FAILURE))


def resolve_check(check: SessionCheck, *, fail_open: bool | None = None) -> Allowed | Denied:
    """Apply the fail-open policy to a CheckFailed outcome."""
    if not isinstance(check, CheckFailed):
        return check

    if fail_open is None:
        fail_open = fail_open_enabled()
    jti = check.claims.get("jti")
    if fail_open:
        logger.warning(
            "Session record check failed (jti=%s); allowing on signature, re-verify later: %s",
            jti, check.error,
        )
        return Allowed(check.claims, unverified=True)

    logger.error("Session record check failed (jti=%s); denying: %s", jti, check.error)
    return Denied(DenyReason.INVALID_SESSION)


def validate_session(kind: SessionKind, token: str, now: datetime | None = None) -> Allowed | Denied:
    now = to_utc_naive(now) if now is not None else utcnow()
    resolved = resolve_check(check_session(kind, token, now))
    if isinstance(resolved, Allowed) and resolved.unverified:
        attempt(record_unverified_use, kind, resolved.claims, now,
                description=f"record unverified {kind.value} session use")
    return resolved


# =============================================================================
# Re-verification of fail-open allows
# =============================================================================

UNVERIFIED_USE_ACTION = "SESSION_UNVERIFIED_USE"
REVERIFIED_ACTION = "SESSION_REVERIFIED"


def record_unverified_use(kind: SessionKind, claims: dict, now: datetime) -> None:
    """Leave an audit row for a use allowed without a record check. Commits."""
    principal = claims.get("kiosk_id") or claims.get("sub")
    _audit(f"{kind.value}:{principal}", UNVERIFIED_USE_ACTION, claims.get("jti"), {"kind": kind.value}, now)
    db.session.commit()


def reverify_unverified_uses(now: datetime | None = None) -> dict:
    """
    Re-check every recorded fail-open use against its session record.

    A use is a violation when the session was already revoked or expired at
    the moment it was allowed. Each use is re-checked once; violations raise
    one operator alert per run.
    """
    now = now or utcnow()
    reviewed = db.session.query(AuditEvent.details).filter(AuditEvent.action == REVERIFIED_ACTION)
    reviewed_ids = {row.details.get("use_id") for row in reviewed if row.details}
    pending = db.session.query(AuditEvent).filter(
        AuditEvent.action == UNVERIFIED_USE_ACTION,
    ).order_by(AuditEvent.id.asc()).all()

    checked = 0
    violations = []
    for use in pending:
        if use.id in reviewed_ids:
            continue
        kind = SessionKind((use.details or {}).get("kind", SessionKind.DEVICE.value))
        record = get_session_record(kind, use.subject) if use.subject else None
        violated = record is not None and (
            (record.revoked_at is not None and record.revoked_at <= use.occurred_at)
            or record.expires_at <= use.occurred_at
        )
        _audit("system", REVERIFIED_ACTION, use.subject,
               {"use_id": use.id, "kind": kind.value, "violated": violated}, now)
        checked += 1
        if violated:
            violations.append({"jti": use.subject, "actor": use.actor, "used_at": use.occurred_at.isoformat()})
            logger.error("Session %s was used while revoked or expired (allowed during store outage)",
                         use.subject)
    db.session.commit()

    if violations:
        alert_service.send_admin_alert(
            "🚨 *Revoked or expired session used during a store outage*",
            {"sessions": violations},
        )
    return {"checked": checked, "violations": len(violations)}


# =============================================================================
# Revocation and listing
# =============================================================================

def get_session_record(kind: SessionKind, jti: str):
    return db.session.query(SESSION_KINDS[kind].model).filter_by(jti=jti).first()


def revoke_session(kind: SessionKind, jti: str, *, revoked_by: str, reason: str | None = None,
                   now: datetime | None = None) -> bool:
    """
    Revoke one session by jti.

    Returns True if this call revoked it, False if it was already revoked
    or does not exist. Irreversible.
    """
    model = SESSION_KINDS[kind].model
    now = now or utcnow()
    revoked = db.session.query(model).filter(
        model.jti == jti,
        model.revoked_at.is_(None),
    ).update(
        {"revoked_at": now, "revoked_by": revoked_by, "revocation_reason": reason},
        synchronize_session=False,
    )
    if revoked:
        _audit(revoked_by, "SESSION_REVOKED", jti, {"kind": kind.value, "reason": reason}, now)
        logger.info("%s session %s revoked by %s", kind.value, jti, revoked_by)
    db.session.commit()
    return revoked == 1


def revoke_all_sessions(kind: SessionKind, principal: str, *, revoked_by: str,
                        reason: str | None = None, now: datetime | None = None) -> int:
    """
    Revoke every unrevoked session of one principal (kiosk id or operator email).

    Returns the number of sessions this call revoked.
    """
    kind_spec = SESSION_KINDS[kind]
    model = kind_spec.model
    now = now or utcnow()
    if kind == SessionKind.OPERATOR:
        principal = principal.strip().lower()

    revoked = db.session.query(model).filter(
        getattr(model, kind_spec.principal_field) == principal,
        model.revoked_at.is_(None),
    ).update(
        {"revoked_at": now, "revoked_by": revoked_by, "revocation_reason": reason},
        synchronize_session=False,
    )
    _audit(revoked_by, "SESSIONS_REVOKED_ALL", principal,
           {"kind": kind.value, "count": revoked, "reason": reason}, now)
    db.session.commit()
    logger.warning("Revoked %d %s sessions for %s", revoked, kind.value, principal)
    return revoked


def list_active_sessions(kind: SessionKind, principal: str | None = None,
                         now: datetime | None = None) -> list:
    kind_spec = SESSION_KINDS[kind]
    model = kind_spec.model
    now = now or utcnow()
    query = db.session.query(model).filter(
        model.revoked_at.is_(None),
        model.expires_at > now,
    )
    if principal:
        query = query.filter(getattr(model, kind_spec.principal_field) == principal)
    return query.order_by(model.issued_at.desc()).all()
