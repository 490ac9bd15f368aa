"""
HTTP route tests.

Routes run on the real clock, so every weekday is made a service day and
tokens are issued for "today" in the service zone.
"""

import json
from urllib.parse import parse_qs, urlparse

import pytest

from mealpass.extensions import db
from mealpass.models import DeviceSession, MealToken
from mealpass.services import issuance_service, session_service
from mealpass.services.calendar_service import today_in_service_zone
from mealpass.services.session_service import SessionKind
from mealpass.services.webhook_service import sign_body

from conftest import CRON_SECRET, OPERATOR_EMAIL, TELEGRAM_SECRET, WEBHOOK_SECRET, RecordingSender, current_period


@pytest.fixture(autouse=True)
def every_day_is_a_service_day(app):
    app.config["SERVICE_WEEKDAYS"] = (0, 1, 2, 3, 4, 5, 6)


@pytest.fixture
def kiosk(app):
    record, credential = session_service.create_device_session("lobby-1", location="Main Lobby", created_by="ops")
    return record, credential


@pytest.fixture
def meal(make_customer):
    start, end = current_period()
    customer = make_customer("Ada Lovelace", dietary_flags=["vegan"], period_start=start, period_end=end)
    sender = RecordingSender()
    issuance_service.issue_daily_tokens(service_date=today_in_service_zone(), sender=sender)
    _, message = sender.sent[0]
    return customer, message.extra["credential"]


@pytest.fixture
def operator_headers(app):
    _, credential = session_service.create_operator_session(OPERATOR_EMAIL)
    return {"Authorization": f"Bearer {credential}"}


def _redeem(client, presented, device_token):
    return client.post("/api/kiosk/redeem", json={
        "presented_token": presented,
        "device_session_token": device_token,
    })


# =============================================================================
# HEALTH
# =============================================================================


class TestHealth:

    def test_health_reports_checks(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["status"] == "healthy"
        assert set(body["checks"]) == {"database", "session_store", "signing_keys"}

    def test_missing_keys_are_degraded(self, app, client):
        app.config["MEAL_TOKEN_PRIVATE_KEY"] = None
        app.config["MEAL_TOKEN_PUBLIC_KEY"] = None
        app.extensions.pop("mealpass_signers", None)

        body = client.get("/health").get_json()

        assert body["status"] == "degraded"
        assert body["checks"]["signing_keys"]["status"] == "degraded"


# =============================================================================
# KIOSK REDEMPTION
# =============================================================================


class TestKioskRedeem:

    def test_redeems_once(self, client, kiosk, meal):
        _, device_token = kiosk
        _, credential = meal

        first = _redeem(client, credential, device_token)
        second = _redeem(client, credential, device_token)

        assert first.status_code == 200
        assert first.get_json()["customer"] == {"name": "Ada", "dietary_flags": ["vegan"]}
        assert "X-RateLimit-Remaining" in first.headers
        assert second.status_code == 400
        assert second.get_json()["code"] == "ALREADY_REDEEMED"

    def test_short_code(self, client, kiosk, meal):
        customer, _ = meal
        token = db.session.query(MealToken).filter_by(customer_id=customer.id).one()
        assert _redeem(client, token.short_code, kiosk[1]).status_code == 200

    def test_missing_fields(self, client, kiosk):
        resp = client.post("/api/kiosk/redeem", json={"device_session_token": kiosk[1]})
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "INVALID_REQUEST"

    def test_invalid_kiosk_session(self, client, meal):
        resp = _redeem(client, meal[1], "abc.def.ghi")
        assert resp.status_code == 401
        assert resp.get_json()["code"] == "INVALID_SESSION"

    def test_revoked_kiosk_session(self, client, kiosk, meal):
        record, device_token = kiosk
        session_service.revoke_session(SessionKind.DEVICE, record.jti, revoked_by="ops")

        resp = _redeem(client, meal[1], device_token)

        assert resp.status_code == 401
        assert resp.get_json()["code"] == "SESSION_REVOKED"
        assert db.session.query(MealToken).one().used_at is None

    def test_rate_limited_per_kiosk_session(self, app, client, kiosk):
        app.config["KIOSK_REDEEM_RATE_LIMIT"] = 2
        statuses = [_redeem(client, "ABCDE-FGHJK", kiosk[1]).status_code for _ in range(3)]

        assert statuses == [400, 400, 429]
        resp = _redeem(client, "ABCDE-FGHJK", kiosk[1])
        assert "Retry-After" in resp.headers

    def test_usage_is_tracked(self, client, kiosk, meal):
        record, device_token = kiosk
        _redeem(client, meal[1], device_token)
        assert db.session.query(DeviceSession).filter_by(jti=record.jti).one().use_count == 1


# =============================================================================
# CRON
# =============================================================================


class TestCron:

    @pytest.mark.parametrize("path", ["/api/cron/issue-tokens", "/api/cron/retry-notifications", "/api/cron/cleanup"])
    def test_requires_secret(self, client, path):
        assert client.post(path).status_code == 401
        assert client.post(path, headers={"Cron-Secret": "wrong"}).status_code == 401

    def test_issue_tokens(self, client, make_customer):
        start, end = current_period()
        make_customer(period_start=start, period_end=end)

        resp = client.post("/api/cron/issue-tokens", headers={"Cron-Secret": CRON_SECRET})

        assert resp.status_code == 200
        assert resp.get_json()["issued"] == 1
        again = client.post("/api/cron/issue-tokens", headers={"Cron-Secret": CRON_SECRET})
        assert again.get_json()["recovered"] == 1

    def test_bad_service_date(self, client):
        resp = client.post("/api/cron/issue-tokens", json={"service_date": "20-10-2026"},
                           headers={"Cron-Secret": CRON_SECRET})
        assert resp.status_code == 400

    def test_retry_and_cleanup(self, client):
        headers = {"Cron-Secret": CRON_SECRET}
        assert client.post("/api/cron/retry-notifications", headers=headers).get_json()["due"] == 0
        assert client.post("/api/cron/cleanup", headers=headers).get_json() == {
            "rate_limits": 0, "magic_links": 0, "skip_selections": 0, "sessions_reverified": 0,
        }


# =============================================================================
# ADMIN
# =============================================================================


class TestAdminAuth:

    def test_request_link_answers_the_same_for_everyone(self, client, monkeypatch):
        sender = RecordingSender()
        monkeypatch.setattr(session_service, "get_sender", lambda: sender)

        known = client.post("/api/admin/auth/request-link", json={"email": OPERATOR_EMAIL})
        unknown = client.post("/api/admin/auth/request-link", json={"email": "stranger@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.get_json() == unknown.get_json()
        assert [recipient for recipient, _ in sender.sent] == [OPERATOR_EMAIL]

    def test_sign_in_and_out(self, client, monkeypatch):
        sender = RecordingSender()
        monkeypatch.setattr(session_service, "get_sender", lambda: sender)
        client.post("/api/admin/auth/request-link", json={"email": OPERATOR_EMAIL})
        url = sender.sent[0][1].text.split("Sign in: ", 1)[1].split("\n", 1)[0]
        token = parse_qs(urlparse(url).query)["token"][0]

        verified = client.post("/api/admin/auth/verify", json={"token": token})
        assert verified.status_code == 200
        headers = {"Authorization": f"Bearer {verified.get_json()['token']}"}
        assert client.get("/api/admin/kiosk-sessions", headers=headers).status_code == 200

        assert client.post("/api/admin/auth/verify", json={"token": token}).status_code == 401

        assert client.post("/api/admin/auth/logout", headers=headers).status_code == 200
        resp = client.get("/api/admin/kiosk-sessions", headers=headers)
        assert resp.status_code == 401
        assert resp.get_json()["code"] == "SESSION_REVOKED"

    def test_magic_link_requests_are_rate_limited(self, app, client):
        app.config["MAGIC_LINK_RATE_LIMIT"] = 1
        client.post("/api/admin/auth/request-link", json={"email": "stranger@example.com"})
        resp = client.post("/api/admin/auth/request-link", json={"email": "Stranger@example.com"})
        assert resp.status_code == 429

    def test_operator_removed_from_allow_list(self, app, client, operator_headers):
        app.config["OPERATOR_EMAILS"] = []
        assert client.get("/api/admin/kiosk-sessions", headers=operator_headers).status_code == 403

    def test_requires_auth(self, client):
        assert client.get("/api/admin/kiosk-sessions").status_code == 401
        assert client.post("/api/admin/kiosk-sessions", json={"kiosk_id": "x"}).status_code == 401


class TestKioskAdministration:

    def test_provision_list_revoke(self, client, operator_headers):
        created = client.post("/api/admin/kiosk-sessions", headers=operator_headers,
                              json={"kiosk_id": "lobby-1", "location": "Main Lobby"})
        assert created.status_code == 201
        body = created.get_json()
        jti = body["session"]["jti"]
        assert body["session"]["created_by"] == OPERATOR_EMAIL
        assert body["token"]

        listed = client.get("/api/admin/kiosk-sessions", headers=operator_headers).get_json()["sessions"]
        assert [s["jti"] for s in listed] == [jti]

        revoked = client.post(f"/api/admin/kiosk-sessions/{jti}/revoke", headers=operator_headers,
                              json={"reason": "Tablet lost"})
        assert revoked.get_json() == {"revoked": True}
        again = client.post(f"/api/admin/kiosk-sessions/{jti}/revoke", headers=operator_headers)
        assert again.get_json() == {"revoked": False, "already_revoked": True}

        missing = client.post("/api/admin/kiosk-sessions/nope/revoke", headers=operator_headers)
        assert missing.status_code == 404

    def test_kiosk_id_required(self, client, operator_headers):
        resp = client.post("/api/admin/kiosk-sessions", headers=operator_headers, json={})
        assert resp.status_code == 400

    def test_revoke_all(self, client, operator_headers, kiosk):
        session_service.create_device_session("lobby-1")
        resp = client.post("/api/admin/kiosks/lobby-1/revoke-all", headers=operator_headers)
        assert resp.get_json() == {"revoked": 2}


# =============================================================================
# WEBHOOKS
# =============================================================================


class TestBillingWebhookRoute:

    def _body(self):
        return json.dumps({
            "id": "evt_1",
            "type": "subscription.created",
            "data": {"id": "sub_ext_1", "status": "active", "customer": {"id": "cust-ext-1", "name": "Ada"}},
        }).encode("utf-8")

    def test_signed_event(self, client):
        raw = self._body()
        resp = client.post("/api/webhooks/billing", data=raw, content_type="application/json",
                           headers={"X-Billing-Signature": sign_body(raw, WEBHOOK_SECRET)})
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "new"

    def test_bad_signature(self, client):
        resp = client.post("/api/webhooks/billing", data=self._body(), content_type="application/json",
                           headers={"X-Billing-Signature": "sha256=00"})
        assert resp.status_code == 401

    def test_malformed_event(self, client):
        raw = b'{"type": "subscription.created"}'
        resp = client.post("/api/webhooks/billing", data=raw, content_type="application/json",
                           headers={"X-Billing-Signature": sign_body(raw, WEBHOOK_SECRET)})
        assert resp.status_code == 400


class TestTelegramWebhookRoute:

    def _post(self, client, update, secret=TELEGRAM_SECRET):
        return client.post("/api/webhooks/telegram", json=update,
                           headers={"X-Telegram-Bot-Api-Secret-Token": secret})

    def test_skip_command(self, client, make_customer):
        chat_id = make_customer().telegram_chat_id
        resp = self._post(client, {"update_id": 1, "message": {"chat": {"id": int(chat_id)}, "text": "/skip"}})
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["method"] == "sendMessage"
        assert body["reply_markup"]["inline_keyboard"]

    def test_update_with_nothing_to_say(self, client):
        resp = self._post(client, {"update_id": 2, "message": {"chat": {"id": 5}, "text": "hi"}})
        assert resp.status_code == 200
        assert resp.get_json() == {"ok": True}

    def test_bad_secret(self, client):
        resp = self._post(client, {"update_id": 3}, secret="wrong")
        assert resp.status_code == 401

    def test_update_without_id(self, client):
        resp = self._post(client, {"message": {"chat": {"id": 5}, "text": "/skip"}})
        assert resp.status_code == 400
