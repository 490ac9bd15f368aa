"""
Pytest fixtures for mealpass backend tests.

Provides a fresh in-memory app per test, ES256 signing keys, a recording
notification sender and customer/subscription factories.
"""

import itertools
import threading
from datetime import date, datetime, timedelta

import pytest

from mealpass import create_app
from mealpass.extensions import db
from mealpass.models import Customer, Subscription
from mealpass.services.notification_service import NotificationError
from mealpass.services.signing_service import generate_es256_keypair
from mealpass.time_utils import utcnow


# Tuesday; 06:00 in Los Angeles (PDT, UTC-7)
SERVICE_DATE = date(2026, 10, 20)
NOW = datetime(2026, 10, 20, 13, 0)
END_OF_SERVICE_DAY = datetime(2026, 10, 21, 7, 0)

PERIOD_START = datetime(2026, 10, 1)
PERIOD_END = datetime(2026, 11, 1)

CRON_SECRET = "test-cron-secret"
OPERATOR_EMAIL = "ops@example.com"
WEBHOOK_SECRET = "whsec-test"
TELEGRAM_SECRET = "tg-secret-test"


@pytest.fixture(scope='session')
def signing_keys():
    meal_private, meal_public = generate_es256_keypair()
    kiosk_private, kiosk_public = generate_es256_keypair()
    return {
        'MEAL_TOKEN_PRIVATE_KEY': meal_private,
        'MEAL_TOKEN_PUBLIC_KEY': meal_public,
        'KIOSK_PRIVATE_KEY': kiosk_private,
        'KIOSK_PUBLIC_KEY': kiosk_public,
    }


def build_config(signing_keys, **overrides):
    config = {
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SECRET_KEY': 'test-secret-key-long-enough-for-hs256-signing',
        'SERVICE_TIMEZONE': 'America/Los_Angeles',
        'SERVICE_WEEKDAYS': (0, 1, 2, 3, 4),
        'CRON_SECRET': CRON_SECRET,
        'OPERATOR_EMAILS': [OPERATOR_EMAIL],
        'NOTIFY_BACKEND': 'log',
        'TELEGRAM_BOT_TOKEN': None,
        'ADMIN_ALERT_CHAT_ID': None,
        'BILLING_WEBHOOK_SECRET': WEBHOOK_SECRET,
        'TELEGRAM_WEBHOOK_SECRET': TELEGRAM_SECRET,
        'SESSION_FAIL_OPEN': True,
    }
    config.update(signing_keys)
    config.update(overrides)
    return config


@pytest.fixture(scope='function')
def app(signing_keys):
    """Create application for testing."""
    app = create_app(build_config(signing_keys))

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


class RecordingSender:
    """Notification sender that records messages, or fails every send."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []
        self._lock = threading.Lock()

    def send(self, recipient, message):
        if self.fail:
            raise NotificationError("provider unavailable")
        with self._lock:
            self.sent.append((recipient, message))


@pytest.fixture(scope='function')
def sender():
    return RecordingSender()


@pytest.fixture(scope='function')
def failing_sender():
    return RecordingSender(fail=True)


@pytest.fixture(scope='function')
def alerts(monkeypatch):
    """Capture operator alerts instead of logging them."""
    from mealpass.services import alert_service

    captured = []

    def _record(message, context=None, sender=None):
        captured.append((message, context))
        return True

    monkeypatch.setattr(alert_service, "send_admin_alert", _record)
    return captured


@pytest.fixture(scope='function')
def make_customer(app):
    """Factory: customer plus (by default) an active subscription covering October 2026."""
    counter = itertools.count(1)

    def _make(name="Ada Lovelace", *, dietary_flags=None, subscribed=True, status="active",
              period_start=PERIOD_START, period_end=PERIOD_END):
        n = next(counter)
        customer = Customer(
            name=name,
            email=f"customer{n}@example.com",
            telegram_chat_id=str(1000 + n),
            dietary_flags=dietary_flags or [],
        )
        db.session.add(customer)
        db.session.flush()
        if subscribed:
            db.session.add(Subscription(
                customer_id=customer.id,
                external_id=f"sub_{n}",
                status=status,
                current_period_start=period_start,
                current_period_end=period_end,
            ))
        db.session.commit()
        return customer

    return _make


def current_period():
    """Subscription bounds around the real clock, for tests that go through HTTP."""
    now = utcnow()
    return now - timedelta(days=30), now + timedelta(days=30)
