# Overview: Durable retry queue for failed outbound notifications, with idempotent enqueue and backoff.

"""
Retry Queue Service

WHY: A failed notification must neither be lost nor sent twice. Each logical
message has one idempotency key; enqueueing the same key twice is a Conflict,
not a second queue entry. Due entries are claimed with a conditional update
(a lease) before sending, so overlapping runs do not double-send.

LIFECYCLE:
    pending --(send ok)--> sent
    pending/retrying --(send failed, attempts left)--> retrying
    pending/retrying --(send failed, attempts exhausted)--> dead  (+ operator alert)

BACKOFF: BACKOFF_SCHEDULE_MINUTES[attempt_count], clamped to the last value.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ..extensions import db
from ..models import NotificationRetry
from ..outcomes import AttemptOutcome, Conflict, Created, InsertOutcome, attempt
from . import alert_service
from .concurrency import dialect_insert
from .notification_service import Message, NotificationError, get_sender
from mealpass.time_utils import utcnow


logger = logging.getLogger(__name__)

BACKOFF_SCHEDULE_MINUTES = (5, 15, 60, 240)
DEFAULT_MAX_ATTEMPTS = 4
DEFAULT_BATCH_LIMIT = 50

# How long a claimed entry is hidden from other runs while it is being sent
CLAIM_LEASE = timedelta(minutes=5)

_ACTIVE_STATUSES = (NotificationRetry.STATUS_PENDING, NotificationRetry.STATUS_RETRYING)


def backoff_delay(attempt_count: int) -> timedelta:
    """Delay before the next attempt after `attempt_count` failed retries. Non-decreasing."""
    index = min(max(attempt_count, 0), len(BACKOFF_SCHEDULE_MINUTES) - 1)
    return timedelta(minutes=BACKOFF_SCHEDULE_MINUTES[index])


def enqueue_retry(
    idempotency_key: str,
    *,
    category: str,
    recipient: str,
    payload: dict,
    error: str | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    now: datetime | None = None,
) -> InsertOutcome:
    """
    Queue a failed message for retry. Commits.

    Returns Created(entry) for a new key, Conflict(existing) if the key is
    already queued (in any status).
    """
    now = now or utcnow()
    stmt = (
        dialect_insert(NotificationRetry)
        .values(
            idempotency_key=idempotency_key,
            category=category,
            recipient=recipient,
            payload=payload,
            attempt_count=0,
            max_attempts=max_attempts,
            next_retry_at=now + backoff_delay(0),
            status=NotificationRetry.STATUS_PENDING,
            last_error=error,
            last_attempted_at=now,
            created_at=now,
        )
        .on_conflict_do_nothing(index_elements=["idempotency_key"])
        .returning(NotificationRetry.id)
    )
    inserted_id = db.session.execute(stmt).scalar()
    db.session.commit()

    if inserted_id is not None:
        logger.info("Queued %s retry %s", category, idempotency_key)
        return Created(db.session.get(NotificationRetry, inserted_id))

    existing = db.session.query(NotificationRetry).filter_by(idempotency_key=idempotency_key).first()
    return Conflict(existing)


def enqueue_retry_best_effort(idempotency_key: str, **kwargs) -> AttemptOutcome:
    """enqueue_retry that logs instead of raising; for callers already on a failure path."""
    return attempt(enqueue_retry, idempotency_key, description=f"enqueue retry {idempotency_key}", **kwargs)


@dataclass
class RetryRunReport:
    due: int = 0
    sent: int = 0
    retrying: int = 0
    dead: int = 0
    lost_claims: int = 0
    dead_entries: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "due": self.due,
            "sent": self.sent,
            "retrying": self.retrying,
            "dead": self.dead,
            "lost_claims": self.lost_claims,
        }


def _claim(entry_id: int, now: datetime) -> bool:
    claimed = db.session.query(NotificationRetry).filter(
        NotificationRetry.id == entry_id,
        NotificationRetry.status.in_(_ACTIVE_STATUSES),
        NotificationRetry.next_retry_at <= now,
    ).update(
        {"next_retry_at": now + CLAIM_LEASE, "last_attempted_at": now},
        synchronize_session=False,
    )
    db.session.commit()
    return claimed == 1


def _record_failure(report: RetryRunReport, entry: NotificationRetry, attempts_made: int,
                    error: str, now: datetime) -> None:
    entry.attempt_count = attempts_made
    entry.last_error = error[:2000]
    entry.last_attempted_at = now
    if attempts_made >= entry.max_attempts:
        entry.status = NotificationRetry.STATUS_DEAD
        report.dead += 1
        report.dead_entries.append({"recipient": entry.recipient, "error": entry.last_error})
        logger.error("Retry %s exhausted after %s attempts", entry.idempotency_key, attempts_made)
    else:
        entry.status = NotificationRetry.STATUS_RETRYING
        entry.next_retry_at = now + backoff_delay(attempts_made)
        report.retrying += 1
    db.session.commit()


def process_due_retries(sender=None, *, now: datetime | None = None,
                        limit: int = DEFAULT_BATCH_LIMIT) -> RetryRunReport:
    """Attempt every due entry once. Exhausted entries become dead and raise one operator alert."""
    now = now or utcnow()
    sender = sender or get_sender()
    report = RetryRunReport()

    due_ids = [
        row.id for row in db.session.query(NotificationRetry.id).filter(
            NotificationRetry.status.in_(_ACTIVE_STATUSES),
            NotificationRetry.next_retry_at <= now,
        ).order_by(NotificationRetry.next_retry_at.asc()).limit(limit).all()
    ]
    report.due = len(due_ids)

    for entry_id in due_ids:
        if not _claim(entry_id, now):
            report.lost_claims += 1
            continue

        entry = db.session.get(NotificationRetry, entry_id)
        attempts_made = entry.attempt_count + 1
        try:
            sender.send(entry.recipient, Message.from_payload(entry.payload or {}))
        except NotificationError as exc:
            _record_failure(report, entry, attempts_made, str(exc), now)
            continue
        except Exception as exc:
            logger.exception("Retry %s raised unexpectedly", entry.idempotency_key)
            _record_failure(report, entry, attempts_made, f"{exc.__class__.__name__}: {exc}", now)
            continue

        entry.attempt_count = attempts_made
        entry.status = NotificationRetry.STATUS_SENT
        entry.completed_at = now
        entry.last_attempted_at = now
        db.session.commit()
        report.sent += 1

    if report.dead_entries:
        alert_service.send_admin_alert(alert_service.format_job_error_alert(
            job_name="Notification Retry Job",
            run_date=now.date().isoformat(),
            error_count=report.dead,
            total_processed=report.due,
            errors=report.dead_entries,
        ))

    logger.info("Retry run complete: %s", report.to_dict())
    return report
