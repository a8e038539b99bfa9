# Overview: Pytest coverage for the operator CLI command groups.

from datetime import timedelta

from tenantgate.models import Account, ImpersonationAuditRecord, SessionToken, Tenant
from tenantgate.services import demo_service, impersonation_service, session_service
from tenantgate.time_utils import utcnow


def test_system_init_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    first = runner.invoke(args=['system', 'init', '--username', 'ops', '--password', 'OpsPass123'])
    second = runner.invoke(args=['system', 'init', '--username', 'ops2', '--password', 'OpsPass123'])

    assert first.exit_code == 0
    assert "Created platform operator: ops" in first.output
    assert "Using existing platform operator: ops" in second.output
    assert db_session.query(Account).filter_by(role="platform_operator").count() == 1


def test_tenants_create_and_list(app, db_session):
    runner = app.test_cli_runner()

    created = runner.invoke(args=[
        'tenants', 'create', '--name', 'Corner Shop',
        '--admin-username', 'corner', '--admin-password', 'Corner1234',
    ])
    assert created.exit_code == 0, created.output
    tenant = db_session.query(Tenant).filter_by(name="Corner Shop").one()
    assert db_session.query(Account).filter_by(username="corner", tenant_id=tenant.id).count() == 1

    listed = runner.invoke(args=['tenants', 'list'])
    assert "Corner Shop" in listed.output


def test_tenants_create_weak_password_rolls_back(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=[
        'tenants', 'create', '--name', 'Weak Shop',
        '--admin-username', 'weak', '--admin-password', 'short',
    ])

    assert result.exit_code == 1
    assert "FAIL" in result.output
    assert db_session.query(Tenant).filter_by(name="Weak Shop").count() == 0


def test_demo_sweep(app, db_session):
    demo_service.provision_demo("198.51.100.9", now=utcnow() - timedelta(days=2))

    result = app.test_cli_runner().invoke(args=['demo', 'sweep'])

    assert result.exit_code == 0
    assert "Purged 1 demo session(s); 0 failed." in result.output


def test_force_close_expired(app, db_session, tenant_a, operator):
    audit, _ = impersonation_service.start_impersonation(operator, None, tenant_a.id, "cashier", "Late night help")
    audit.expires_at = utcnow() - timedelta(minutes=1)
    db_session.commit()

    result = app.test_cli_runner().invoke(args=['impersonation', 'force-close-expired'])

    assert result.exit_code == 0
    db_session.refresh(audit)
    assert audit.ended_at is not None
    assert db_session.get(ImpersonationAuditRecord, audit.id).end_reason == "expired"


def test_cleanup_tokens(app, db_session, admin_a):
    stale = session_service.issue_session(admin_a)
    row = db_session.query(SessionToken).filter_by(id=stale.session.id).one()
    row.refresh_expires_at = utcnow() - timedelta(minutes=1)
    db_session.commit()
    session_service.issue_session(admin_a)

    result = app.test_cli_runner().invoke(args=['maintenance', 'cleanup-tokens'])

    assert result.exit_code == 0
    assert "sessions: 1" in result.output
    assert db_session.query(SessionToken).count() == 1
