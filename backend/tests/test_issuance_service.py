"""
Daily issuance tests.

Verifies:
- One entitlement and one token per eligible customer per service day
- Re-runs reuse the stored token and never re-send it
- Skips, inactive subscriptions and non-service days issue nothing
- Delivery failures land in the retry queue without losing the token
- Per-customer failures are isolated and reported
"""

from datetime import date, datetime

from mealpass.extensions import db
from mealpass.models import Entitlement, MealToken, NotificationRetry, ServiceClosure, Skip
from mealpass.outcomes import Conflict, Created, Failed
from mealpass.services import issuance_service
from mealpass.services.issuance_service import issue_daily_tokens, issue_token, token_idempotency_key, upsert_entitlement
from mealpass.services.signing_service import get_meal_signer

from conftest import END_OF_SERVICE_DAY, NOW, SERVICE_DATE


class _CrashingSender:
    def send(self, recipient, message):
        raise RuntimeError("unexpected provider response")


def _tokens():
    return db.session.query(MealToken).all()


def _entitlement(customer_id):
    return db.session.query(Entitlement).filter_by(customer_id=customer_id, service_date=SERVICE_DATE).one()


# =============================================================================
# HAPPY PATH
# =============================================================================


class TestIssueDailyTokens:

    def test_issues_and_delivers_one_token_per_customer(self, make_customer, sender):
        ada = make_customer("Ada Lovelace")
        grace = make_customer("Grace Hopper")

        report = issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=sender)

        assert report.eligible == 2
        assert report.issued == 2
        assert report.notified == 2
        assert report.errors == []
        assert len(_tokens()) == 2
        assert _entitlement(ada.id).meals_allowed == 1
        assert _entitlement(grace.id).meals_redeemed == 0
        assert {recipient for recipient, _ in sender.sent} == {ada.telegram_chat_id, grace.telegram_chat_id}

    def test_token_expires_at_end_of_service_day(self, make_customer, sender):
        customer = make_customer()
        issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=sender)

        token = db.session.query(MealToken).filter_by(customer_id=customer.id).one()
        assert token.expires_at == END_OF_SERVICE_DAY
        assert token.notified_at == NOW

        _, message = sender.sent[0]
        claims = get_meal_signer().verify(message.extra["credential"], now=NOW)
        assert claims["jti"] == token.jti
        assert claims["sub"] == customer.id
        assert claims["service_date"] == SERVICE_DATE.isoformat()
        assert message.idempotency_key == token_idempotency_key(customer.id, SERVICE_DATE)

    def test_rerun_is_idempotent(self, make_customer, sender):
        make_customer()
        first = issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=sender)
        jti = _tokens()[0].jti

        second = issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=sender)

        assert first.issued == 1
        assert second.issued == 0
        assert second.recovered == 1
        assert second.already_delivered == 1
        assert len(_tokens()) == 1
        assert _tokens()[0].jti == jti
        assert len(sender.sent) == 1

    def test_rerun_does_not_reset_redeemed_count(self, make_customer, sender):
        customer = make_customer()
        issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=sender)
        entitlement = _entitlement(customer.id)
        entitlement.meals_redeemed = 1
        db.session.commit()

        issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=sender)

        assert _entitlement(customer.id).meals_redeemed == 1

    def test_defaults_to_today_in_service_zone(self, make_customer, sender):
        make_customer()
        report = issue_daily_tokens(now=NOW, sender=sender)
        assert report.service_date == SERVICE_DATE


# =============================================================================
# WHO GETS NOTHING
# =============================================================================


class TestEligibility:

    def test_weekend_is_skipped(self, make_customer, sender):
        make_customer()
        report = issue_daily_tokens(service_date=date(2026, 10, 24), now=NOW, sender=sender)
        assert report.skipped_non_service_day
        assert _tokens() == []
        assert sender.sent == []

    def test_closure_is_skipped(self, make_customer, sender):
        make_customer()
        db.session.add(ServiceClosure(closed_date=SERVICE_DATE))
        db.session.commit()
        assert issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=sender).skipped_non_service_day

    def test_skipped_day_gets_zero_allowance_and_no_token(self, make_customer, sender):
        customer = make_customer()
        db.session.add(Skip(customer_id=customer.id, skip_date=SERVICE_DATE, source="telegram"))
        db.session.commit()

        report = issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=sender)

        assert report.skipped == 1
        assert report.issued == 0
        assert _entitlement(customer.id).meals_allowed == 0
        assert _tokens() == []

    def test_inactive_and_out_of_period_subscriptions(self, make_customer, sender):
        make_customer(status="canceled")
        make_customer(period_start=datetime(2026, 9, 1), period_end=datetime(2026, 10, 1))
        make_customer(subscribed=False)

        report = issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=sender)

        assert report.eligible == 0
        assert _tokens() == []

    def test_missing_period_data_is_flagged_not_fatal(self, make_customer, sender, alerts):
        make_customer()
        broken = make_customer(period_start=None, period_end=None)

        report = issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=sender)

        assert report.issued == 1
        assert [flag["customer_id"] for flag in report.integrity_flags] == [broken.id]
        assert len(alerts) == 1


# =============================================================================
# FAILURES
# =============================================================================


class TestFailures:

    def test_delivery_failure_is_queued_for_retry(self, make_customer, failing_sender):
        customer = make_customer()

        report = issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=failing_sender)

        assert report.issued == 1
        assert report.delivery_failed == 1
        assert len(_tokens()) == 1
        entry = db.session.query(NotificationRetry).one()
        assert entry.idempotency_key == token_idempotency_key(customer.id, SERVICE_DATE)
        assert entry.category == "meal_token"
        assert entry.recipient == customer.telegram_chat_id
        assert entry.payload["extra"]["credential"]

    def test_failed_delivery_is_not_resent_by_the_next_run(self, make_customer, failing_sender, sender):
        make_customer()
        issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=failing_sender)
        report = issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=sender)

        assert report.already_delivered == 1
        assert sender.sent == []
        assert db.session.query(NotificationRetry).count() == 1

    def test_unexpected_sender_error_is_queued_for_retry(self, make_customer):
        customer = make_customer()

        report = issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=_CrashingSender())

        assert report.errors == []
        assert report.delivery_failed == 1
        entry = db.session.query(NotificationRetry).one()
        assert entry.idempotency_key == token_idempotency_key(customer.id, SERVICE_DATE)
        assert "RuntimeError" in entry.last_error

    def test_unqueued_failure_releases_the_delivery_claim(self, make_customer, sender, monkeypatch):
        make_customer()
        real_enqueue = issuance_service.enqueue_retry_best_effort
        monkeypatch.setattr(issuance_service, "enqueue_retry_best_effort",
                            lambda *args, **kwargs: Failed(RuntimeError("store unavailable")))

        issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=_CrashingSender())
        assert _tokens()[0].notified_at is None

        monkeypatch.setattr(issuance_service, "enqueue_retry_best_effort", real_enqueue)
        report = issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=sender)

        assert report.recovered == 1
        assert report.notified == 1
        assert len(sender.sent) == 1

    def test_one_customer_failing_does_not_stop_the_batch(self, make_customer, sender, alerts, monkeypatch):
        good = make_customer("Ada Lovelace")
        bad = make_customer("Grace Hopper")
        real_issue_token = issuance_service.issue_token

        def flaky_issue_token(customer_id, service_date, **kwargs):
            if customer_id == bad.id:
                raise RuntimeError("signing backend unavailable")
            return real_issue_token(customer_id, service_date, **kwargs)

        monkeypatch.setattr(issuance_service, "issue_token", flaky_issue_token)

        report = issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=sender)

        assert report.issued == 1
        assert report.errors == [{"customer_id": bad.id, "error": "signing backend unavailable"}]
        assert db.session.query(MealToken).filter_by(customer_id=good.id).count() == 1
        assert len(alerts) == 1
        assert "Meal Token Issuance" in alerts[0][0]


# =============================================================================
# BUILDING BLOCKS
# =============================================================================


class TestIssueToken:

    def test_second_call_conflicts_with_same_jti(self, make_customer):
        customer = make_customer()
        upsert_entitlement(customer.id, SERVICE_DATE, 1, NOW)
        db.session.commit()

        first, credential = issue_token(customer.id, SERVICE_DATE, now=NOW)
        second, resigned = issue_token(customer.id, SERVICE_DATE, now=NOW)

        assert isinstance(first, Created)
        assert isinstance(second, Conflict)
        assert second.existing.jti == first.value.jti
        signer = get_meal_signer()
        assert signer.verify(resigned, now=NOW)["jti"] == signer.verify(credential, now=NOW)["jti"]

    def test_upsert_never_lowers_allowance_below_redeemed(self, make_customer):
        customer = make_customer()
        upsert_entitlement(customer.id, SERVICE_DATE, 1, NOW)
        db.session.commit()
        _entitlement(customer.id).meals_redeemed = 1
        db.session.commit()

        upsert_entitlement(customer.id, SERVICE_DATE, 0, NOW)
        db.session.commit()
        db.session.expire_all()

        entitlement = _entitlement(customer.id)
        assert entitlement.meals_allowed == 1
        assert entitlement.meals_redeemed == 1

    def test_report_serializes(self, make_customer, sender):
        make_customer()
        data = issue_daily_tokens(service_date=SERVICE_DATE, now=NOW, sender=sender).to_dict()
        assert data["service_date"] == "2026-10-20"
        assert data["issued"] == 1
        assert data["errors"] == 0
