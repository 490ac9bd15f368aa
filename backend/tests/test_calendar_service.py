"""
Service calendar tests.

Day boundaries are civil days in America/Los_Angeles, returned as UTC-naive
datetimes, including across DST transitions.
"""

from datetime import date, datetime, timedelta

import pytest

from mealpass.extensions import db
from mealpass.models import ServiceClosure
from mealpass.services import calendar_service
from mealpass.services.calendar_service import CalendarError


class TestCivilDay:

    def test_today_follows_service_zone_not_utc(self, app):
        # 06:00 UTC is still the previous evening in Los Angeles
        assert calendar_service.today_in_service_zone(datetime(2026, 10, 20, 6, 0)) == date(2026, 10, 19)
        assert calendar_service.today_in_service_zone(datetime(2026, 10, 20, 7, 0)) == date(2026, 10, 20)

    def test_day_bounds_are_local_midnights(self, app):
        start, end = calendar_service.day_bounds(date(2026, 10, 20))
        assert start == datetime(2026, 10, 20, 7, 0)
        assert end == datetime(2026, 10, 21, 7, 0)
        assert calendar_service.end_of_service_day(date(2026, 10, 20)) == end

    def test_fall_back_day_is_25_hours(self, app):
        start, end = calendar_service.day_bounds(date(2026, 11, 1))
        assert start == datetime(2026, 11, 1, 7, 0)
        assert end == datetime(2026, 11, 2, 8, 0)
        assert end - start == timedelta(hours=25)

    def test_spring_forward_day_is_23_hours(self, app):
        start, end = calendar_service.day_bounds(date(2026, 3, 8))
        assert end - start == timedelta(hours=23)

    def test_unknown_timezone_is_a_calendar_error(self, app):
        app.config["SERVICE_TIMEZONE"] = "Mars/Olympus_Mons"
        with pytest.raises(CalendarError):
            calendar_service.today_in_service_zone(datetime(2026, 10, 20, 12, 0))


class TestServiceDays:

    def test_weekdays_are_service_days(self, app):
        assert calendar_service.is_service_day(date(2026, 10, 20))

    def test_weekend_is_not_a_service_day(self, app):
        assert not calendar_service.is_service_day(date(2026, 10, 24))
        assert not calendar_service.is_service_day(date(2026, 10, 25))

    def test_closure_removes_a_weekday(self, app):
        db.session.add(ServiceClosure(closed_date=date(2026, 10, 21), reason="Kitchen maintenance"))
        db.session.commit()
        assert not calendar_service.is_service_day(date(2026, 10, 21))

    def test_next_service_date_skips_weekend(self, app):
        assert calendar_service.next_service_date(date(2026, 10, 23)) == date(2026, 10, 26)

    def test_next_service_date_gives_up_when_nothing_is_open(self, app):
        app.config["SERVICE_WEEKDAYS"] = ()
        with pytest.raises(CalendarError):
            calendar_service.next_service_date(date(2026, 10, 20))
