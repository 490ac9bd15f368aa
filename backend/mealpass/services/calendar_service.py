# Overview: Service calendar; all day boundaries are civil days in the configured service timezone.

"""
Clock / Calendar Service

WHY: "Today" and "end of day" must mean the same thing to the issuance job,
the token expiry and the kiosk, regardless of the host's timezone. Every
boundary is computed in one fixed civil zone and handed out as UTC-naive
datetimes, the canonical storage form.

DST: day_bounds() returns [midnight, next midnight) in the service zone, so a
spring-forward day is 23 hours long and a fall-back day 25 hours. A token is
valid strictly before the end bound.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app

from ..extensions import db
from ..models import ServiceClosure
from mealpass.time_utils import to_utc_naive, utcnow


NEXT_SERVICE_DAY_SEARCH_LIMIT = 14


class CalendarError(Exception):
    """Raised when the service calendar is misconfigured or exhausted."""
    pass


def service_zone() -> ZoneInfo:
    name = current_app.config.get("SERVICE_TIMEZONE", "America/Los_Angeles")
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError as exc:
        raise CalendarError(f"Unknown service timezone: {name}") from exc


def today_in_service_zone(now: datetime | None = None) -> date:
    """Civil date in the service zone at `now` (UTC-naive or aware; defaults to server now)."""
    now = to_utc_naive(now) if now is not None else utcnow()
    aware = now.replace(tzinfo=ZoneInfo("UTC"))
    return aware.astimezone(service_zone()).date()


def _local_midnight_utc(day: date) -> datetime:
    local = datetime.combine(day, time.min).replace(tzinfo=service_zone())
    return to_utc_naive(local)


def day_bounds(service_date: date) -> tuple[datetime, datetime]:
    """Half-open [start, end) of the civil day, as UTC-naive datetimes."""
    return _local_midnight_utc(service_date), _local_midnight_utc(service_date + timedelta(days=1))


def end_of_service_day(service_date: date) -> datetime:
    """First instant that is no longer `service_date`. Tokens expire exactly here."""
    return day_bounds(service_date)[1]


def is_service_day(service_date: date) -> bool:
    weekdays = current_app.config.get("SERVICE_WEEKDAYS", (0, 1, 2, 3, 4))
    if service_date.weekday() not in weekdays:
        return False
    closed = db.session.query(ServiceClosure.id).filter_by(closed_date=service_date).first()
    return closed is None


def next_service_date(after: date) -> date:
    """First service day strictly after `after`."""
    candidate = after
    for _ in range(NEXT_SERVICE_DAY_SEARCH_LIMIT):
        candidate = candidate + timedelta(days=1)
        if is_service_day(candidate):
            return candidate
    raise CalendarError(
        f"No service day within {NEXT_SERVICE_DAY_SEARCH_LIMIT} days after {after.isoformat()}"
    )
