"""
Concurrency tests.

Runs competing workers in real threads against a file-backed SQLite
database, each with its own app context and session.

Verifies:
- A token scanned at several kiosks at once is served exactly once
- Overlapping issuance runs create one token per customer and send it once
- A rate limit admits exactly its limit under a burst
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from mealpass import create_app
from mealpass.extensions import db
from mealpass.models import Customer, Entitlement, MealToken, Redemption, Subscription
from mealpass.services.issuance_service import issue_daily_tokens, issue_token, upsert_entitlement
from mealpass.services.rate_limit_service import check_rate_limit
from mealpass.services.redemption_service import RedemptionError, redeem

from conftest import NOW, PERIOD_END, PERIOD_START, SERVICE_DATE, RecordingSender, build_config


WORKERS = 8


@pytest.fixture
def file_app(signing_keys, tmp_path):
    app = create_app(build_config(
        signing_keys,
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / 'mealpass.sqlite3'}",
        SQLALCHEMY_ENGINE_OPTIONS={"connect_args": {"timeout": 30}},
    ))
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


def _run_concurrently(app, func, count=WORKERS):
    barrier = threading.Barrier(count)

    def worker(i):
        with app.app_context():
            barrier.wait()
            try:
                return func(i)
            finally:
                db.session.remove()

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(worker, range(count)))


def _seed_customers(app, count):
    """Commit `count` subscribed customers; returns their ids."""
    ids = []
    with app.app_context():
        for n in range(count):
            customer = Customer(name=f"Customer {n}", email=f"c{n}@example.com",
                                telegram_chat_id=str(5000 + n), dietary_flags=[])
            db.session.add(customer)
            db.session.flush()
            db.session.add(Subscription(
                customer_id=customer.id, external_id=f"sub_c{n}", status="active",
                current_period_start=PERIOD_START, current_period_end=PERIOD_END,
            ))
            ids.append(customer.id)
        db.session.commit()
        db.session.remove()
    return ids


class TestRedemptionRace:

    def test_one_token_is_served_once(self, file_app):
        [customer_id] = _seed_customers(file_app, 1)
        with file_app.app_context():
            upsert_entitlement(customer_id, SERVICE_DATE, 1, NOW)
            db.session.commit()
            _, credential = issue_token(customer_id, SERVICE_DATE, now=NOW)
            db.session.remove()

        results = _run_concurrently(
            file_app,
            lambda i: redeem(credential, terminal_id=f"kiosk-{i}", now=NOW),
        )

        assert sum(1 for r in results if r.success) == 1
        assert {r.error for r in results if not r.success} == {RedemptionError.ALREADY_REDEEMED}
        with file_app.app_context():
            assert db.session.query(Redemption).count() == 1
            entitlement = db.session.query(Entitlement).filter_by(customer_id=customer_id).one()
            assert entitlement.meals_redeemed == 1


class TestIssuanceRace:

    def test_overlapping_runs_issue_and_send_once(self, file_app):
        customer_ids = _seed_customers(file_app, 5)
        sender = RecordingSender()

        reports = _run_concurrently(
            file_app,
            lambda i: issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=sender),
            count=4,
        )

        assert all(report.errors == [] for report in reports)
        assert sum(report.issued for report in reports) == len(customer_ids)
        assert len(sender.sent) == len(customer_ids)
        with file_app.app_context():
            assert db.session.query(MealToken).count() == len(customer_ids)
            assert db.session.query(Entitlement).count() == len(customer_ids)


class TestRateLimitBurst:

    def test_burst_admits_exactly_the_limit(self, file_app):
        results = _run_concurrently(
            file_app,
            lambda i: check_rate_limit("kiosk:burst", 5, timedelta(seconds=60), now=NOW),
            count=10,
        )
        assert sum(1 for r in results if r.allowed) == 5
