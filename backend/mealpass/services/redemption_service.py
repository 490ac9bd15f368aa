# Overview: Kiosk meal redemption; verifies a presented token and redeems it at most once.

"""
Redemption Service

WHY: A meal token must be served exactly once even when two kiosks scan it in
the same instant, and a rejected scan must say why (already used vs. expired
vs. skipped day) without revealing what is inside the token.

ORDER OF WORK:
1. Resolve short codes to the stored credential (read only).
2. Verify signature, issuer, expiry and claims locally. Bad or expired
   credentials never reach a write path.
3. One transaction of conditional statements: claim the token
   (used_at IS NULL AND expires_at > now), take one meal from the allowance
   (meals_redeemed < meals_allowed), append the Redemption (unique jti) and an
   audit event. Any condition failing rolls the whole transaction back and the
   cause is diagnosed into a stable error code.

The loser of a concurrent race sees used_at already set and gets
ALREADY_REDEEMED.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import AuditEvent, Customer, Entitlement, MealToken, Redemption, Subscription
from .calendar_service import day_bounds
from .concurrency import run_with_retry
from .short_code_service import is_valid_short_code, looks_like_short_code, normalize_short_code
from .signing_service import CredentialExpired, CredentialInvalid, get_meal_signer
from mealpass.time_utils import parse_iso_date, to_utc_naive, to_utc_z, utcnow


logger = logging.getLogger(__name__)


class RedemptionError(str, Enum):
    INVALID_TOKEN = "INVALID_TOKEN"
    INVALID_SHORT_CODE = "INVALID_SHORT_CODE"
    EXPIRED = "EXPIRED"
    CUSTOMER_NOT_FOUND = "CUSTOMER_NOT_FOUND"
    ALREADY_REDEEMED = "ALREADY_REDEEMED"
    NO_ALLOWANCE = "NO_ALLOWANCE"
    NO_ENTITLEMENT = "NO_ENTITLEMENT"
    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"


# User-facing text. Must never include claim values.
ERROR_MESSAGES = {
    RedemptionError.INVALID_TOKEN: "Invalid QR code",
    RedemptionError.INVALID_SHORT_CODE: "Invalid or expired code",
    RedemptionError.EXPIRED: "QR code expired",
    RedemptionError.CUSTOMER_NOT_FOUND: "Customer not found",
    RedemptionError.ALREADY_REDEEMED: "QR code already used",
    RedemptionError.NO_ALLOWANCE: "No meals remaining for today",
    RedemptionError.NO_ENTITLEMENT: "No meal scheduled for today",
    RedemptionError.SUBSCRIPTION_INACTIVE: "Subscription is not active",
}


@dataclass
class RedemptionResult:
    success: bool
    error: RedemptionError | None = None
    first_name: str | None = None
    dietary_flags: list = field(default_factory=list)
    redemption_id: int | None = None
    redeemed_at: datetime | None = None

    @classmethod
    def fail(cls, error: RedemptionError) -> "RedemptionResult":
        return cls(success=False, error=error)

    @property
    def message(self) -> str | None:
        return ERROR_MESSAGES.get(self.error) if self.error else None

    @property
    def http_status(self) -> int:
        if self.success:
            return 200
        return 404 if self.error == RedemptionError.CUSTOMER_NOT_FOUND else 400

    def to_dict(self) -> dict:
        if not self.success:
            return {"success": False, "error": self.message, "code": self.error.value}
        return {
            "success": True,
            "customer": {"name": self.first_name, "dietary_flags": self.dietary_flags},
            "redemption": {"id": self.redemption_id, "redeemed_at": to_utc_z(self.redeemed_at)},
        }


@dataclass(frozen=True)
class VerifiedToken:
    jti: str
    customer_id: str
    service_date: date


def resolve_presented_token(presented: str) -> str | RedemptionError:
    """Short code -> stored credential; raw credentials pass through unchanged."""
    if not looks_like_short_code(presented):
        return presented
    if not is_valid_short_code(presented):
        return RedemptionError.INVALID_SHORT_CODE

    token = db.session.query(MealToken).filter_by(short_code=normalize_short_code(presented)).first()
    if token is None:
        return RedemptionError.INVALID_SHORT_CODE
    if token.used_at is not None:
        return RedemptionError.ALREADY_REDEEMED
    return token.credential


def verify_presented_token(credential: str, now: datetime) -> VerifiedToken | RedemptionError:
    try:
        claims = get_meal_signer().verify(credential, now=now, required=("jti", "sub"))
    except CredentialExpired:
        return RedemptionError.EXPIRED
    except CredentialInvalid:
        return RedemptionError.INVALID_TOKEN

    customer_id = claims.get("sub")
    jti = claims.get("jti")
    try:
        service_date = parse_iso_date(claims.get("service_date"))
    except (TypeError, ValueError, AttributeError):
        service_date = None
    if not isinstance(customer_id, str) or not isinstance(jti, str) or service_date is None:
        return RedemptionError.INVALID_TOKEN
    return VerifiedToken(jti=jti, customer_id=customer_id, service_date=service_date)


def _has_active_subscription(customer_id: str, service_date: date) -> bool:
    day_start, day_end = day_bounds(service_date)
    return db.session.query(Subscription.id).filter(
        Subscription.customer_id == customer_id,
        Subscription.status == Subscription.STATUS_ACTIVE,
        Subscription.current_period_start < day_end,
        Subscription.current_period_end > day_start,
    ).first() is not None


def _diagnose_token(token: VerifiedToken, now: datetime) -> RedemptionError:
    row = db.session.query(MealToken).filter_by(jti=token.jti).first()
    if row is None or row.customer_id != token.customer_id or row.service_date != token.service_date:
        return RedemptionError.INVALID_TOKEN
    if row.used_at is not None:
        return RedemptionError.ALREADY_REDEEMED
    if row.expires_at <= now:
        return RedemptionError.EXPIRED
    return RedemptionError.INVALID_TOKEN


def _diagnose_allowance(token: VerifiedToken) -> RedemptionError:
    entitlement = db.session.query(Entitlement).filter_by(
        customer_id=token.customer_id, service_date=token.service_date
    ).first()
    if entitlement is None:
        return RedemptionError.NO_ENTITLEMENT
    return RedemptionError.NO_ALLOWANCE


def _redeem_once(token: VerifiedToken, terminal_id: str, terminal_location: str | None,
                 now: datetime) -> RedemptionResult:
    customer = db.session.get(Customer, token.customer_id)
    if customer is None:
        return RedemptionResult.fail(RedemptionError.CUSTOMER_NOT_FOUND)

    if not _has_active_subscription(token.customer_id, token.service_date):
        return RedemptionResult.fail(RedemptionError.SUBSCRIPTION_INACTIVE)

    claimed = db.session.query(MealToken).filter(
        MealToken.jti == token.jti,
        MealToken.customer_id == token.customer_id,
        MealToken.service_date == token.service_date,
        MealToken.used_at.is_(None),
        MealToken.expires_at > now,
    ).update({"used_at": now}, synchronize_session=False)
    if claimed != 1:
        db.session.rollback()
        return RedemptionResult.fail(_diagnose_token(token, now))

    taken = db.session.query(Entitlement).filter(
        Entitlement.customer_id == token.customer_id,
        Entitlement.service_date == token.service_date,
        Entitlement.meals_redeemed < Entitlement.meals_allowed,
    ).update(
        {"meals_redeemed": Entitlement.meals_redeemed + 1, "updated_at": now},
        synchronize_session=False,
    )
    if taken != 1:
        db.session.rollback()
        return RedemptionResult.fail(_diagnose_allowance(token))

    redemption = Redemption(
        jti=token.jti,
        customer_id=token.customer_id,
        service_date=token.service_date,
        terminal_id=terminal_id,
        terminal_location=terminal_location,
        redeemed_at=now,
    )
    db.session.add(redemption)
    db.session.add(AuditEvent(
        actor=f"kiosk:{terminal_id}",
        action="MEAL_REDEEMED",
        subject=token.customer_id,
        details={"service_date": token.service_date.isoformat(), "location": terminal_location},
        occurred_at=now,
    ))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return RedemptionResult.fail(RedemptionError.ALREADY_REDEEMED)

    return RedemptionResult(
        success=True,
        first_name=customer.first_name,
        dietary_flags=list(customer.dietary_flags or []),
        redemption_id=redemption.id,
        redeemed_at=now,
    )


def redeem(presented_token: str, *, terminal_id: str, terminal_location: str | None = None,
           now: datetime | None = None) -> RedemptionResult:
    """
    Redeem a presented meal token (short code or signed credential) at a terminal.

    Never raises for business outcomes; store failures other than transient
    contention propagate to the caller.
    """
    now = to_utc_naive(now) if now is not None else utcnow()

    credential = resolve_presented_token(presented_token or "")
    if isinstance(credential, RedemptionError):
        return RedemptionResult.fail(credential)

    verified = verify_presented_token(credential, now)
    if isinstance(verified, RedemptionError):
        return RedemptionResult.fail(verified)

    result = run_with_retry(lambda: _redeem_once(verified, terminal_id, terminal_location, now))
    if result.success:
        logger.info("Meal redeemed at %s for service date %s", terminal_id, verified.service_date)
    else:
        logger.info("Redemption rejected at %s: %s", terminal_id, result.error.value)
    return result
