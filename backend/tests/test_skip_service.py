from datetime import date, timedelta

import pytest

from mealpass.extensions import db
from mealpass.models import Skip, SkipSelection
from mealpass.services import maintenance_service, skip_service
from mealpass.services.skip_service import SkipSelectionError

from conftest import NOW


WEDNESDAY = date(2026, 10, 21)
THURSDAY = date(2026, 10, 22)
SATURDAY = date(2026, 10, 24)


@pytest.fixture
def customer(make_customer):
    return make_customer()


class TestSkipSelection:

    def test_select_and_confirm(self, customer):
        skip_service.begin_skip_selection("1001", customer.id, now=NOW)
        skip_service.toggle_skip_date("1001", THURSDAY, now=NOW)
        selected = skip_service.toggle_skip_date("1001", WEDNESDAY, now=NOW)
        assert selected == [WEDNESDAY, THURSDAY]

        created = skip_service.confirm_skip_selection("1001", now=NOW)

        assert created == [WEDNESDAY, THURSDAY]
        assert skip_service.is_skipped(customer.id, WEDNESDAY)
        assert skip_service.get_selection("1001", now=NOW) is None

    def test_toggle_twice_deselects(self, customer):
        skip_service.begin_skip_selection("1001", customer.id, now=NOW)
        skip_service.toggle_skip_date("1001", WEDNESDAY, now=NOW)
        assert skip_service.toggle_skip_date("1001", WEDNESDAY, now=NOW) == []

    def test_confirm_is_idempotent_per_date(self, customer):
        for _ in range(2):
            skip_service.begin_skip_selection("1001", customer.id, now=NOW)
            skip_service.toggle_skip_date("1001", WEDNESDAY, now=NOW)
            created = skip_service.confirm_skip_selection("1001", now=NOW)

        assert created == []
        assert db.session.query(Skip).count() == 1

    def test_restart_clears_previous_picks(self, customer):
        skip_service.begin_skip_selection("1001", customer.id, now=NOW)
        skip_service.toggle_skip_date("1001", WEDNESDAY, now=NOW)

        selection = skip_service.begin_skip_selection("1001", customer.id, now=NOW)

        assert selection.selected_dates == []

    @pytest.mark.parametrize("day", [date(2026, 10, 20), date(2026, 10, 19), SATURDAY])
    def test_only_future_service_days(self, customer, day):
        skip_service.begin_skip_selection("1001", customer.id, now=NOW)
        with pytest.raises(SkipSelectionError):
            skip_service.toggle_skip_date("1001", day, now=NOW)

    def test_selection_expires(self, customer):
        skip_service.begin_skip_selection("1001", customer.id, now=NOW)
        later = NOW + skip_service.SKIP_SELECTION_TTL

        with pytest.raises(SkipSelectionError):
            skip_service.toggle_skip_date("1001", WEDNESDAY, now=later)
        with pytest.raises(SkipSelectionError):
            skip_service.confirm_skip_selection("1001", now=later)

    def test_toggle_extends_expiry(self, customer):
        skip_service.begin_skip_selection("1001", customer.id, now=NOW)
        skip_service.toggle_skip_date("1001", WEDNESDAY, now=NOW + timedelta(minutes=4))
        assert skip_service.get_selection("1001", now=NOW + timedelta(minutes=8)) is not None


class TestCleanup:

    def test_expired_selections_are_removed(self, customer):
        skip_service.begin_skip_selection("1001", customer.id, now=NOW)
        skip_service.begin_skip_selection("1002", customer.id, now=NOW + timedelta(minutes=10))

        result = maintenance_service.run_cleanup(now=NOW + timedelta(minutes=6))

        assert result["skip_selections"] == 1
        assert [s.chat_id for s in db.session.query(SkipSelection).all()] == ["1002"]
