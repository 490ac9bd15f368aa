# Overview: Flask CLI command groups for jobs, kiosk provisioning, keys and maintenance.

# backend/mealpass/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Jobs:
# - python -m flask tokens issue [--date 2025-03-10]
#   Run daily token issuance (idempotent; safe to repeat).
# - python -m flask retries process [--limit 50]
#   Attempt due notification retries.
#
# Kiosk sessions:
# - python -m flask kiosk create --kiosk-id lobby-1 --location "Main Lobby"
#   Provision a kiosk and print its credential (shown once).
# - python -m flask kiosk list [--kiosk-id lobby-1]
# - python -m flask kiosk revoke <jti> --reason "Tablet lost"
# - python -m flask kiosk revoke-all lobby-1 --reason "Compromised"
#
# Keys:
# - python -m flask keys generate
#   Print a fresh ES256 key pair as base64 PEM, ready for environment variables.
#
# Maintenance:
# - python -m flask maintenance cleanup
#   Delete stale rate-limit windows, expired magic links and skip selections.

import base64

import click
from flask.cli import with_appcontext

from .services import issuance_service, maintenance_service, retry_queue_service, session_service
from .services.session_service import SessionError, SessionKind
from .services.signing_service import generate_es256_keypair
from .time_utils import parse_iso_date


CLI_ACTOR = "cli"


@click.group('tokens')
def tokens_group():
    """Meal token issuance."""


@tokens_group.command('issue')
@click.option('--date', 'service_date', default=None, help='Service date (YYYY-MM-DD); defaults to today')
@with_appcontext
def issue_tokens_cli(service_date):
    try:
        day = parse_iso_date(service_date)
    except ValueError:
        raise click.BadParameter("expected YYYY-MM-DD", param_hint="--date")

    report = issuance_service.issue_daily_tokens(service_date=day)
    if report.skipped_non_service_day:
        click.echo(f"SKIP {report.service_date} is not a service day")
        return

    click.echo(
        f"PASS {report.service_date}: issued={report.issued} recovered={report.recovered} "
        f"skipped={report.skipped} notified={report.notified} "
        f"delivery_failed={report.delivery_failed} errors={len(report.errors)}"
    )
    for flag in report.integrity_flags:
        click.echo(f"WARN subscription {flag['subscription_id']} (customer {flag['customer_id']}) has no billing period")
    for err in report.errors:
        click.echo(f"FAIL customer {err['customer_id']}: {err['error']}")


@click.group('retries')
def retries_group():
    """Notification retry queue."""


@retries_group.command('process')
@click.option('--limit', type=int, default=retry_queue_service.DEFAULT_BATCH_LIMIT, show_default=True)
@with_appcontext
def process_retries_cli(limit):
    report = retry_queue_service.process_due_retries(limit=limit)
    click.echo(
        f"PASS due={report.due} sent={report.sent} retrying={report.retrying} "
        f"dead={report.dead} lost_claims={report.lost_claims}"
    )


@click.group('kiosk')
def kiosk_group():
    """Kiosk session provisioning and revocation."""


@kiosk_group.command('create')
@click.option('--kiosk-id', required=True)
@click.option('--location', default=None)
@with_appcontext
def create_kiosk_cli(kiosk_id, location):
    try:
        record, credential = session_service.create_device_session(
            kiosk_id, location=location, created_by=CLI_ACTOR
        )
    except SessionError as e:
        raise click.ClickException(str(e))

    click.echo(f"PASS Created kiosk session {record.jti} (expires {record.expires_at.isoformat()}Z)")
    click.echo("Credential (store it on the kiosk; it is not shown again):")
    click.echo(credential)


@kiosk_group.command('list')
@click.option('--kiosk-id', default=None)
@with_appcontext
def list_kiosks_cli(kiosk_id):
    sessions = session_service.list_active_sessions(SessionKind.DEVICE, kiosk_id)
    if not sessions:
        click.echo("No active kiosk sessions.")
        return
    for s in sessions:
        click.echo(
            f"{s.jti}  {s.device_id:<20} {s.location or '-':<20} "
            f"uses={s.use_count} expires={s.expires_at.isoformat()}Z"
        )


@kiosk_group.command('revoke')
@click.argument('jti')
@click.option('--reason', default=None)
@with_appcontext
def revoke_kiosk_cli(jti, reason):
    if session_service.revoke_session(SessionKind.DEVICE, jti, revoked_by=CLI_ACTOR, reason=reason):
        click.echo(f"PASS Revoked {jti}")
    elif session_service.get_session_record(SessionKind.DEVICE, jti) is None:
        raise click.ClickException(f"No kiosk session {jti}")
    else:
        click.echo(f"SKIP {jti} was already revoked")


@kiosk_group.command('revoke-all')
@click.argument('kiosk_id')
@click.option('--reason', default="Emergency revoke", show_default=True)
@with_appcontext
def revoke_all_kiosk_cli(kiosk_id, reason):
    count = session_service.revoke_all_sessions(
        SessionKind.DEVICE, kiosk_id, revoked_by=CLI_ACTOR, reason=reason
    )
    click.echo(f"PASS Revoked {count} sessions for {kiosk_id}")


@click.group('keys')
def keys_group():
    """Signing key utilities."""


@keys_group.command('generate')
def generate_keys_cli():
    private_pem, public_pem = generate_es256_keypair()
    click.echo("PRIVATE_KEY=" + base64.b64encode(private_pem.encode("utf-8")).decode("ascii"))
    click.echo("PUBLIC_KEY=" + base64.b64encode(public_pem.encode("utf-8")).decode("ascii"))


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup')
@with_appcontext
def cleanup_cli():
    result = maintenance_service.run_cleanup()
    click.echo(
        f"Deleted {result['rate_limits']} rate limit windows, {result['magic_links']} magic links, "
        f"{result['skip_selections']} skip selections; re-checked {result['sessions_reverified']} sessions."
    )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(tokens_group)
    app.cli.add_command(retries_group)
    app.cli.add_command(kiosk_group)
    app.cli.add_command(keys_group)
    app.cli.add_command(maintenance_group)
