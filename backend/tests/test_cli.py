import base64

from mealpass.extensions import db
from mealpass.models import DeviceSession
from mealpass.services.signing_service import TokenSigner

from conftest import SERVICE_DATE


class TestKioskCommands:

    def test_create_list_revoke(self, app):
        runner = app.test_cli_runner()

        created = runner.invoke(args=["kiosk", "create", "--kiosk-id", "lobby-1", "--location", "Main Lobby"])
        assert created.exit_code == 0
        assert created.output.startswith("PASS Created kiosk session")
        jti = db.session.query(DeviceSession).one().jti

        listed = runner.invoke(args=["kiosk", "list"])
        assert jti in listed.output

        revoked = runner.invoke(args=["kiosk", "revoke", jti, "--reason", "Tablet lost"])
        assert f"PASS Revoked {jti}" in revoked.output
        again = runner.invoke(args=["kiosk", "revoke", jti])
        assert "already revoked" in again.output

        missing = runner.invoke(args=["kiosk", "revoke", "nope"])
        assert missing.exit_code != 0

    def test_revoke_all(self, app):
        runner = app.test_cli_runner()
        runner.invoke(args=["kiosk", "create", "--kiosk-id", "lobby-1"])
        runner.invoke(args=["kiosk", "create", "--kiosk-id", "lobby-1"])

        result = runner.invoke(args=["kiosk", "revoke-all", "lobby-1"])

        assert "PASS Revoked 2 sessions for lobby-1" in result.output


class TestJobCommands:

    def test_issue_tokens_for_a_date(self, app, make_customer):
        make_customer()
        result = app.test_cli_runner().invoke(args=["tokens", "issue", "--date", SERVICE_DATE.isoformat()])
        assert result.exit_code == 0
        assert "issued=1" in result.output

    def test_issue_tokens_on_weekend(self, app):
        result = app.test_cli_runner().invoke(args=["tokens", "issue", "--date", "2026-10-24"])
        assert result.output.startswith("SKIP")

    def test_bad_date(self, app):
        result = app.test_cli_runner().invoke(args=["tokens", "issue", "--date", "tomorrow"])
        assert result.exit_code != 0

    def test_retries_and_cleanup(self, app):
        runner = app.test_cli_runner()
        assert runner.invoke(args=["retries", "process"]).output.startswith("PASS due=0")
        assert "Deleted 0 rate limit windows" in runner.invoke(args=["maintenance", "cleanup"]).output


class TestKeyCommands:

    def test_generated_keys_load(self, app):
        result = app.test_cli_runner().invoke(args=["keys", "generate"])
        lines = dict(line.split("=", 1) for line in result.output.strip().splitlines())

        signer = TokenSigner(issuer="x", private_key=lines["PRIVATE_KEY"], public_key=lines["PUBLIC_KEY"])

        assert signer.can_sign
        assert base64.b64decode(lines["PUBLIC_KEY"]).startswith(b"-----BEGIN PUBLIC KEY-----")
