# Overview: Flask CLI command groups for bootstrap, tenant admin, scheduled sweeps, and maintenance.

# backend/tenantgate/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init --username ops --password "..."
#   Migrate an empty database (else create missing tables) and the first
#   platform operator. Idempotent.
#
# Schema migrations:
# - python -m flask db upgrade
#   Apply pending migrations from backend/migrations.
# - python -m flask db migrate -m "..."
#   Autogenerate a revision after changing models.
#
# Tenant management:
# - python -m flask tenants list
#   List tenants with access state and device usage (demo tenants excluded).
# - python -m flask tenants create --name "Corner Shop" --plan business_system --admin-username shop --admin-password "..."
#   Create a tenant with plan-default billing and its first admin.
#
# Demo sandboxes (schedule every few minutes):
# - python -m flask demo sweep [--limit 10]
#   Purge expired demo tenants. Failures are recorded and retried next run.
#
# Impersonation:
# - python -m flask impersonation list [--open-only]
#   List recent impersonation audits.
# - python -m flask impersonation force-close --audit-id 12 [--reason "..."]
#   Close an audit and revoke the sessions minted under it.
# - python -m flask impersonation force-close-expired
#   Close every audit past its time box (schedule hourly).
#
# Maintenance:
# - python -m flask maintenance cleanup-security-events --retention-days 90
#   Delete security events older than the retention window.
# - python -m flask maintenance cleanup-auth-attempts --retention-days 2
#   Delete credential attempt rows older than the retention window.
# - python -m flask maintenance cleanup-tokens
#   Delete expired sessions and exchange tokens.

import click
import sqlalchemy as sa
from flask.cli import with_appcontext
from flask_migrate import upgrade

from .errors import AccessError
from .extensions import db
from .models import Account
from .models.auth import ROLE_PLATFORM_OPERATOR, ROLE_TENANT_ADMIN
from .models.tenancy import PLAN_APP_ONLY, PLAN_BUSINESS_SYSTEM
from .services import (
    auth_service,
    demo_service,
    impersonation_service,
    maintenance_service,
    tenant_service,
)
from .time_utils import to_utc_z


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@click.option('--username', prompt=True, help='Platform operator username')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--display-name', default='Platform Operator', show_default=True)
@with_appcontext
def init_system(username, password, display_name):
    """
    Initialize the authority: schema and the first platform operator.

    An empty database is brought up through the migrations so later
    `flask db upgrade` runs start from a stamped revision. Safe to re-run;
    an existing operator is left untouched.
    """
    click.echo("START Initializing tenantgate...")
    if not sa.inspect(db.engine).get_table_names():
        upgrade()
        click.echo("PASS Schema migrated")
    else:
        db.create_all()
        click.echo("PASS Schema ready")

    existing = db.session.query(Account).filter_by(role=ROLE_PLATFORM_OPERATOR).first()
    if existing:
        click.echo(f"PASS Using existing platform operator: {existing.username} (ID: {existing.id})")
        return

    try:
        account = auth_service.create_account(
            username=username,
            password=password,
            role=ROLE_PLATFORM_OPERATOR,
            tenant_id=None,
            display_name=display_name,
        )
    except AccessError as e:
        db.session.rollback()
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)

    click.echo(f"PASS Created platform operator: {account.username} (ID: {account.id})")


@click.group('tenants')
def tenants_group():
    """Tenant (business) management commands."""


@tenants_group.command('list')
@with_appcontext
def list_tenants():
    """List tenants with access state and device usage."""
    rows = tenant_service.list_tenant_health()
    if not rows:
        click.echo("No tenants found.")
        return

    click.echo("\n" + "=" * 96)
    click.echo(f"{'ID':<5} {'Name':<28} {'Plan':<16} {'Access':<8} {'Devices':<9} {'Paid through':<22} {'Deleted'}")
    click.echo("=" * 96)
    for row in rows:
        devices = f"{row['active_devices']}/{row['max_devices'] or '-'}"
        click.echo(
            f"{row['tenant_id']:<5} {row['name'][:28]:<28} {row['plan_type']:<16} {row['access_state']:<8} "
            f"{devices:<9} {row['paid_through'] or '-':<22} {'Yes' if row['deleted_at'] else 'No'}"
        )
    click.echo("=" * 96 + "\n")


@tenants_group.command('create')
@click.option('--name', required=True, help='Business name')
@click.option('--plan', type=click.Choice([PLAN_BUSINESS_SYSTEM, PLAN_APP_ONLY]), default=PLAN_BUSINESS_SYSTEM, show_default=True)
@click.option('--admin-username', help='Username for the first tenant admin')
@click.option('--admin-password', help='Password for the first tenant admin')
@with_appcontext
def create_tenant_cli(name, plan, admin_username, admin_password):
    """Create a tenant with plan-default billing (and optionally its first admin)."""
    try:
        tenant = tenant_service.create_tenant(name, plan, commit=False)
        if admin_username:
            if not admin_password:
                admin_password = click.prompt('Admin password', hide_input=True, confirmation_prompt=True)
            auth_service.create_account(
                username=admin_username,
                password=admin_password,
                role=ROLE_TENANT_ADMIN,
                tenant_id=tenant.id,
                commit=False,
            )
        db.session.commit()
    except AccessError as e:
        db.session.rollback()
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)

    billing = tenant.billing
    click.echo(
        f"PASS Created tenant: {tenant.name} (ID: {tenant.id}, plan: {tenant.plan_type}, "
        f"paid through {to_utc_z(billing.paid_through)}, max devices {billing.max_devices})"
    )


@click.group('demo')
def demo_group():
    """Demo sandbox lifecycle commands."""


@demo_group.command('sweep')
@click.option('--limit', type=int, default=None, help='Max sessions to purge (default DEMO_SWEEP_BATCH)')
@with_appcontext
def demo_sweep_cli(limit):
    """Purge expired demo tenants."""
    report = demo_service.sweep_expired(limit=limit)
    click.echo(f"Purged {len(report.purged)} demo session(s); {len(report.failed)} failed.")
    for session_id in report.failed:
        click.echo(f"  WARN demo session {session_id} failed; will retry next sweep")


@click.group('impersonation')
def impersonation_group():
    """Impersonation audit commands."""


@impersonation_group.command('list')
@click.option('--open-only', is_flag=True, help='Only audits without ended_at')
@click.option('--limit', type=int, default=50, show_default=True)
@with_appcontext
def list_impersonations(open_only, limit):
    audits = impersonation_service.list_audits(open_only=open_only, limit=limit)
    if not audits:
        click.echo("No impersonation audits found.")
        return
    for audit in audits:
        ended = to_utc_z(audit.ended_at) or "OPEN"
        click.echo(
            f"#{audit.id} operator={audit.operator_id} tenant={audit.target_tenant_id} "
            f"role={audit.target_role} started={to_utc_z(audit.started_at)} ended={ended} reason={audit.reason!r}"
        )


@impersonation_group.command('force-close')
@click.option('--audit-id', type=int, required=True)
@click.option('--reason', default='force_closed', show_default=True)
@with_appcontext
def force_close_cli(audit_id, reason):
    """Close an audit and revoke its sessions."""
    audit = impersonation_service.force_close(audit_id, reason)
    if audit is None:
        click.echo(f"FAIL Audit {audit_id} not found")
        raise SystemExit(1)
    click.echo(f"PASS Audit {audit.id} ended at {to_utc_z(audit.ended_at)} ({audit.end_reason})")


@impersonation_group.command('force-close-expired')
@with_appcontext
def force_close_expired_cli():
    closed = impersonation_service.force_close_expired()
    click.echo(f"Closed {closed} expired impersonation audit(s).")


@click.group('maintenance')
def maintenance_group():
    """Maintenance and cleanup commands."""


@maintenance_group.command('cleanup-security-events')
@click.option('--retention-days', type=int, default=90, show_default=True)
@with_appcontext
def cleanup_security_events_cli(retention_days):
    deleted = maintenance_service.cleanup_security_events(retention_days=retention_days)
    click.echo(f"Deleted {deleted} security events older than {retention_days} days.")


@maintenance_group.command('cleanup-auth-attempts')
@click.option('--retention-days', type=int, default=2, show_default=True)
@with_appcontext
def cleanup_auth_attempts_cli(retention_days):
    deleted = maintenance_service.cleanup_auth_attempts(retention_days=retention_days)
    click.echo(f"Deleted {deleted} credential attempts older than {retention_days} days.")


@maintenance_group.command('cleanup-tokens')
@with_appcontext
def cleanup_tokens_cli():
    counts = maintenance_service.cleanup_expired_tokens()
    click.echo(", ".join(f"{name}: {count}" for name, count in counts.items()))


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(tenants_group)
    app.cli.add_command(demo_group)
    app.cli.add_command(impersonation_group)
    app.cli.add_command(maintenance_group)
