# Overview: Customer meal opt-outs ("skips") and the multi-step skip selection flow.

"""
Skip Service

The chat bot lets a customer pick several future dates to skip, then confirm.
The in-progress selection lives in the store (skip_selections) with a short
expiry, so any worker can continue the conversation and an abandoned flow
simply lapses.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from ..extensions import db
from ..models import Skip, SkipSelection
from .calendar_service import is_service_day, today_in_service_zone
from .concurrency import dialect_insert
from mealpass.time_utils import utcnow


logger = logging.getLogger(__name__)

SKIP_SELECTION_TTL = timedelta(minutes=5)


class SkipSelectionError(Exception):
    """Raised when a skip selection is missing, expired or given an unusable date."""
    pass


def _active_selection(chat_id: str, now: datetime) -> SkipSelection | None:
    selection = db.session.get(SkipSelection, str(chat_id))
    if selection is None or selection.expires_at <= now:
        return None
    return selection


def begin_skip_selection(chat_id: str, customer_id: str, now: datetime | None = None) -> SkipSelection:
    """Start (or restart) a selection for this chat with no dates picked."""
    now = now or utcnow()
    stmt = dialect_insert(SkipSelection).values(
        chat_id=str(chat_id),
        customer_id=customer_id,
        selected_dates=[],
        expires_at=now + SKIP_SELECTION_TTL,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["chat_id"],
        set_={
            "customer_id": stmt.excluded.customer_id,
            "selected_dates": stmt.excluded.selected_dates,
            "expires_at": stmt.excluded.expires_at,
            "updated_at": now,
        },
    )
    db.session.execute(stmt)
    db.session.commit()
    return db.session.get(SkipSelection, str(chat_id))


def get_selection(chat_id: str, now: datetime | None = None) -> SkipSelection | None:
    return _active_selection(chat_id, now or utcnow())


def toggle_skip_date(chat_id: str, skip_date: date, now: datetime | None = None) -> list[date]:
    """Add or remove one date. Returns the selected dates, sorted. Refreshes the expiry."""
    now = now or utcnow()
    selection = _active_selection(chat_id, now)
    if selection is None:
        raise SkipSelectionError("No active skip selection; start again")
    if skip_date <= today_in_service_zone(now):
        raise SkipSelectionError("Only future dates can be skipped")
    if not is_service_day(skip_date):
        raise SkipSelectionError("No service on that date")

    dates = set(selection.selected_dates or [])
    key = skip_date.isoformat()
    if key in dates:
        dates.remove(key)
    else:
        dates.add(key)

    selection.selected_dates = sorted(dates)
    selection.expires_at = now + SKIP_SELECTION_TTL
    db.session.commit()
    return [date.fromisoformat(d) for d in selection.selected_dates]


def confirm_skip_selection(chat_id: str, now: datetime | None = None) -> list[date]:
    """
    Turn the selection into skips and end the flow.

    Idempotent per (customer, date): dates already skipped are left alone.
    Returns the dates that were newly skipped.
    """
    now = now or utcnow()
    selection = _active_selection(chat_id, now)
    if selection is None:
        raise SkipSelectionError("No active skip selection; start again")

    customer_id = selection.customer_id
    created = []
    for iso in selection.selected_dates or []:
        skip_date = date.fromisoformat(iso)
        stmt = dialect_insert(Skip).values(
            customer_id=customer_id, skip_date=skip_date, source="telegram", created_at=now
        ).on_conflict_do_nothing(index_elements=["customer_id", "skip_date"])
        if db.session.execute(stmt).rowcount:
            created.append(skip_date)

    db.session.delete(selection)
    db.session.commit()
    logger.info("Customer %s skipped %d dates", customer_id, len(created))
    return created


def cancel_skip_selection(chat_id: str) -> bool:
    """End the flow without skipping anything. False if there was no selection."""
    deleted = db.session.query(SkipSelection).filter_by(chat_id=str(chat_id)).delete(synchronize_session=False)
    db.session.commit()
    return deleted == 1


def get_skip(customer_id: str, skip_date: date) -> Skip | None:
    return db.session.query(Skip).filter_by(customer_id=customer_id, skip_date=skip_date).first()


def is_skipped(customer_id: str, skip_date: date) -> bool:
    return get_skip(customer_id, skip_date) is not None


def cleanup_expired_selections(now: datetime | None = None) -> int:
    now = now or utcnow()
    deleted = db.session.query(SkipSelection).filter(
        SkipSelection.expires_at <= now
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted
