# Overview: Daily meal token issuance job; exactly one token per customer per service day.

"""
Token Issuance Service

WHY: The scheduler may fire the issuance job more than once for the same day,
and runs may overlap. Exactly-once issuance is enforced by the store alone:

- Entitlements are written with one upsert that never touches meals_redeemed.
- Tokens are inserted against the unique (customer_id, service_date) key. A
  losing run gets a Conflict, reads back the winner's jti and re-signs an
  equivalent credential. Losing the race is a success path, not an error.
- Delivery is claimed with one conditional update on notified_at, so only
  one run ever sends a given token. Failed sends go to the retry queue and
  never roll back the token.

FAILURE ISOLATION: Errors are caught per customer and recorded in the run
report; the batch always continues. Active subscriptions with missing period
data raise an operator alert but do not stop the run.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime

from flask import current_app

from ..extensions import db
from ..models import Customer, Entitlement, MealToken, Skip, Subscription
from ..outcomes import Conflict, Created, Failed, attempt
from . import alert_service
from .calendar_service import day_bounds, end_of_service_day, is_service_day, today_in_service_zone
from .concurrency import dialect_insert, insert_unique
from .notification_service import NotificationError, get_sender, meal_token_message, recipient_for
from .retry_queue_service import enqueue_retry_best_effort
from .short_code_service import generate_short_code
from .signing_service import get_meal_signer, new_jti
from mealpass.time_utils import utcnow


logger = logging.getLogger(__name__)

JOB_NAME = "Meal Token Issuance"

# Attempts at drawing an unused short code before giving up on a customer
SHORT_CODE_ATTEMPTS = 3


class IssuanceError(Exception):
    """Raised when a token could not be issued for one customer."""
    pass


@dataclass
class IssuanceReport:
    service_date: date
    skipped_non_service_day: bool = False
    eligible: int = 0
    issued: int = 0
    recovered: int = 0
    skipped: int = 0
    notified: int = 0
    already_delivered: int = 0
    delivery_failed: int = 0
    undeliverable: int = 0
    errors: list[dict] = field(default_factory=list)
    integrity_flags: list[dict] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "service_date": self.service_date.isoformat(),
            "skipped_non_service_day": self.skipped_non_service_day,
            "eligible": self.eligible,
            "issued": self.issued,
            "recovered": self.recovered,
            "skipped": self.skipped,
            "notified": self.notified,
            "already_delivered": self.already_delivered,
            "delivery_failed": self.delivery_failed,
            "undeliverable": self.undeliverable,
            "errors": len(self.errors),
            "integrity_flags": self.integrity_flags,
            "duration_seconds": round(self.duration_seconds, 3),
        }


def token_idempotency_key(customer_id: str, service_date: date) -> str:
    return f"meal_token/{customer_id}/{service_date.isoformat()}"


def upsert_entitlement(customer_id: str, service_date: date, meals_allowed: int, now: datetime) -> None:
    """
    Create or refresh the day's entitlement. Does not commit.

    meals_redeemed is never written on conflict, and meals_allowed is not
    lowered below what has already been redeemed.
    """
    stmt = dialect_insert(Entitlement).values(
        customer_id=customer_id,
        service_date=service_date,
        meals_allowed=meals_allowed,
        meals_redeemed=0,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["customer_id", "service_date"],
        set_={"meals_allowed": stmt.excluded.meals_allowed, "updated_at": now},
        where=Entitlement.meals_redeemed <= stmt.excluded.meals_allowed,
    )
    db.session.execute(stmt)


def _find_token(customer_id: str, service_date: date) -> MealToken | None:
    return db.session.query(MealToken).filter_by(
        customer_id=customer_id, service_date=service_date
    ).first()


def _sign(signer, customer_id: str, service_date: date, *, jti: str,
          issued_at: datetime, expires_at: datetime) -> str:
    return signer.sign(
        {"sub": customer_id, "service_date": service_date.isoformat()},
        expires_at=expires_at,
        issued_at=issued_at,
        jti=jti,
    )


def issue_token(customer_id: str, service_date: date, *, now: datetime | None = None):
    """
    Ensure the (customer, day) token exists. Commits.

    Returns (outcome, credential): outcome is Created(token) when this call
    inserted it, Conflict(token) when another run already had. The credential
    is always a valid signature over the stored jti.
    """
    now = now or utcnow()
    signer = get_meal_signer()
    expires_at = end_of_service_day(service_date)

    for _ in range(SHORT_CODE_ATTEMPTS):
        jti = new_jti()
        credential = _sign(signer, customer_id, service_date, jti=jti, issued_at=now, expires_at=expires_at)
        row = MealToken(
            customer_id=customer_id,
            service_date=service_date,
            jti=jti,
            short_code=generate_short_code(),
            credential=credential,
            issued_at=now,
            expires_at=expires_at,
        )
        outcome = insert_unique(row, lambda: _find_token(customer_id, service_date))

        if isinstance(outcome, Created):
            return outcome, credential

        if isinstance(outcome, Conflict) and outcome.existing is not None:
            winner = outcome.existing
            resigned = _sign(
                signer, customer_id, service_date,
                jti=winner.jti, issued_at=winner.issued_at, expires_at=winner.expires_at,
            )
            return outcome, resigned
        # Conflict on some other unique key (short code or jti collision): draw again

    raise IssuanceError("Could not allocate a unique short code")


def claim_delivery(token_id: int, now: datetime) -> bool:
    """Mark the token as being delivered. True only for the one caller that flips notified_at."""
    claimed = db.session.query(MealToken).filter(
        MealToken.id == token_id,
        MealToken.notified_at.is_(None),
    ).update({"notified_at": now}, synchronize_session=False)
    db.session.commit()
    return claimed == 1


def release_delivery(token_id: int) -> None:
    """Undo a delivery claim whose message could not be sent or queued."""
    db.session.query(MealToken).filter(MealToken.id == token_id).update(
        {"notified_at": None}, synchronize_session=False
    )
    db.session.commit()


def _deliver(report: IssuanceReport, customer: Customer, token: MealToken, credential: str,
             sender, now: datetime) -> None:
    recipient = recipient_for(customer)
    if not recipient:
        report.undeliverable += 1
        logger.warning("Customer %s has no delivery address for %s", customer.id, token.service_date)
        return

    key = token_idempotency_key(customer.id, token.service_date)
    message = meal_token_message(
        customer_name=customer.name,
        service_date=token.service_date,
        short_code=token.short_code,
        idempotency_key=key,
    )
    message.extra["credential"] = credential

    if not claim_delivery(token.id, now):
        report.already_delivered += 1
        return

    try:
        sender.send(recipient, message)
        report.notified += 1
        return
    except NotificationError as exc:
        error = str(exc)
        logger.warning("Delivery failed for customer %s: %s", customer.id, error)
    except Exception as exc:
        error = f"{exc.__class__.__name__}: {exc}"
        logger.exception("Sender raised unexpectedly for customer %s", customer.id)

    report.delivery_failed += 1
    queued = enqueue_retry_best_effort(
        key,
        category="meal_token",
        recipient=recipient,
        payload=message.to_payload(),
        error=error,
        now=now,
    )
    if isinstance(queued, Failed):
        # Not queued: give the next run the chance to send it
        attempt(release_delivery, token.id, description=f"release delivery claim {key}")


def _integrity_flags() -> list[dict]:
    rows = db.session.query(Subscription).filter(
        Subscription.status == Subscription.STATUS_ACTIVE,
        db.or_(
            Subscription.current_period_start.is_(None),
            Subscription.current_period_end.is_(None),
        ),
    ).all()
    return [{"subscription_id": s.id, "customer_id": s.customer_id} for s in rows]


def _eligible_customer_ids(day_start: datetime, day_end: datetime) -> list[str]:
    rows = db.session.query(Subscription.customer_id).filter(
        Subscription.status == Subscription.STATUS_ACTIVE,
        Subscription.current_period_start < day_end,
        Subscription.current_period_end > day_start,
    ).distinct().all()
    return sorted(row.customer_id for row in rows)


def issue_daily_tokens(*, service_date: date | None = None, now: datetime | None = None,
                       sender=None) -> IssuanceReport:
    """
    Run the issuance job for one service day.

    Safe to run any number of times, concurrently. Re-runs reuse existing
    tokens (same jti) and never re-send a delivered token.
    """
    started = time.monotonic()
    now = now or utcnow()
    service_date = service_date or today_in_service_zone(now)
    report = IssuanceReport(service_date=service_date)

    if not is_service_day(service_date):
        report.skipped_non_service_day = True
        logger.info("%s: %s is not a service day, nothing to issue", JOB_NAME, service_date)
        return report

    sender = sender or get_sender()

    report.integrity_flags = _integrity_flags()
    if report.integrity_flags:
        logger.error("%s: %d active subscriptions missing period data",
                     JOB_NAME, len(report.integrity_flags))
        alert_service.send_admin_alert(
            f"⚠️ *{JOB_NAME}*: active subscriptions with missing billing period",
            {"service_date": service_date.isoformat(), "subscriptions": report.integrity_flags},
        )

    day_start, day_end = day_bounds(service_date)
    customer_ids = _eligible_customer_ids(day_start, day_end)
    report.eligible = len(customer_ids)

    skipping = {
        row.customer_id for row in db.session.query(Skip.customer_id).filter(
            Skip.skip_date == service_date
        ).all()
    }

    for customer_id in customer_ids:
        try:
            customer = db.session.get(Customer, customer_id)
            if customer is None:
                raise IssuanceError("Customer record missing")

            if customer_id in skipping:
                upsert_entitlement(customer_id, service_date, 0, now)
                db.session.commit()
                report.skipped += 1
                continue

            upsert_entitlement(customer_id, service_date, 1, now)
            db.session.commit()

            outcome, credential = issue_token(customer_id, service_date, now=now)
            if isinstance(outcome, Created):
                report.issued += 1
                token = outcome.value
            else:
                report.recovered += 1
                token = outcome.existing

            _deliver(report, customer, token, credential, sender, now)
        except Exception as exc:
            db.session.rollback()
            logger.exception("%s: failed for customer %s", JOB_NAME, customer_id)
            report.errors.append({"customer_id": customer_id, "error": str(exc)})

    threshold = current_app.config.get("ISSUANCE_ERROR_ALERT_THRESHOLD", 0)
    if len(report.errors) > threshold:
        alert_service.send_admin_alert(alert_service.format_job_error_alert(
            job_name=JOB_NAME,
            run_date=service_date.isoformat(),
            error_count=len(report.errors),
            total_processed=report.eligible,
            errors=report.errors,
        ))

    report.duration_seconds = time.monotonic() - started
    slow_after = current_app.config.get("ISSUANCE_SLOW_RUN_SECONDS", 20)
    if report.duration_seconds > slow_after:
        logger.warning("%s took %.1fs (threshold %.1fs)", JOB_NAME, report.duration_seconds, slow_after)
    logger.info("%s complete: %s", JOB_NAME, report.to_dict())
    return report
