from datetime import timedelta

import pytest

from siteguard.service.errors import ConflictError, ForbiddenError, ValidationError
from siteguard.service.impersonation import NO_STORE_HEADERS
from siteguard.storage.models import AccountStatus, BanRecord, Role, utcnow


@pytest.fixture
def admin_and_target(runtime, make_principal):
    runtime.settings.impersonation_require_two_factor = False
    admin = make_principal("root@example.com", roles=(Role.ADMIN,))
    target = make_principal("member@example.com")
    return admin, target


@pytest.fixture
def impersonate(runtime, make_context):
    async def _impersonate(session_id, target_id, *, now=None):
        csrf = runtime.store.read_session(session_id).csrf_token
        ctx = make_context(
            f"/admin/impersonate/{target_id}",
            method="POST",
            session_cookie=session_id,
            csrf_header=csrf,
            now=now,
        )
        assert await runtime.pipeline.run(ctx) is None
        overlay = runtime.impersonation.begin(ctx, target_id)
        await runtime.pipeline.finalize(ctx)
        runtime.sessions.save(ctx.session)
        return ctx.session.id, overlay

    return _impersonate


async def test_active_impersonation_sees_target_with_no_store_headers(
    runtime, admin_and_target, login, impersonate, send
):
    admin, target = admin_and_target
    start = utcnow() - timedelta(minutes=45)
    admin_session = await login(admin, now=start)
    session_id, overlay = await impersonate(admin_session, target.id, now=start)

    ctx, denial = await send(session_id, now=start + timedelta(minutes=30) - timedelta(seconds=1))

    assert denial is None
    assert ctx.principal.id == target.id
    assert overlay.expires_at == start + timedelta(minutes=30)
    for name, value in NO_STORE_HEADERS.items():
        assert ctx.response_headers[name] == value


async def test_expired_impersonation_restores_the_admin(
    runtime, admin_and_target, login, impersonate, send
):
    admin, target = admin_and_target
    start = utcnow() - timedelta(minutes=45)
    admin_session = await login(admin, now=start)
    session_id, _ = await impersonate(admin_session, target.id, now=start)

    ctx, denial = await send(session_id, now=start + timedelta(minutes=30))

    assert denial.status_code == 440
    assert denial.code == "IMPERSONATION_EXPIRED"
    assert denial.redirect_to == runtime.settings.admin_home_url
    assert denial.headers["Cache-Control"] == NO_STORE_HEADERS["Cache-Control"]
    assert ctx.principal.id == admin.id
    assert ctx.session.impersonation is None
    assert ctx.session.id != session_id

    # the restored session must pass integrity and row checks on the next request
    follow_up, denial = await send(ctx.session.id, now=start + timedelta(minutes=30))
    assert denial is None
    assert follow_up.principal.id == admin.id


async def test_tampered_token_ends_impersonation(runtime, admin_and_target, login, impersonate, send):
    admin, target = admin_and_target
    admin_session = await login(admin)
    session_id, _ = await impersonate(admin_session, target.id)
    runtime.store.sessions[session_id].impersonation.expires_at += timedelta(days=1)

    ctx, denial = await send(session_id)

    assert denial.code == "IMPERSONATION_EXPIRED"
    assert ctx.principal.id == admin.id


async def test_missing_admin_drops_the_login(
    runtime, admin_and_target, login, impersonate, send, monkeypatch
):
    admin, target = admin_and_target
    start = utcnow() - timedelta(minutes=45)
    admin_session = await login(admin, now=start)
    session_id, _ = await impersonate(admin_session, target.id, now=start)

    original = runtime.store.get_principal
    monkeypatch.setattr(
        runtime.store,
        "get_principal",
        lambda principal_id: None if principal_id == admin.id else original(principal_id),
    )

    ctx, denial = await send(session_id, now=start + timedelta(minutes=31))

    assert denial.code == "IMPERSONATION_EXPIRED"
    assert denial.redirect_to == runtime.settings.login_url
    assert ctx.principal is None
    assert not ctx.session.critical.is_authenticated


async def test_banned_target_ends_impersonation_without_leaking_the_ban(
    runtime, admin_and_target, login, impersonate, send, monkeypatch
):
    admin, target = admin_and_target
    admin_session = await login(admin)
    session_id, _ = await impersonate(admin_session, target.id)
    runtime.store.set_ban(target.id, BanRecord(reason="spam"))
    offered = []
    monkeypatch.setattr(
        runtime.appeals, "offer", lambda principal, now: offered.append(principal.id)
    )

    ctx, denial = await send(session_id)

    assert denial.status_code == 403
    assert denial.code == "IMPERSONATION_TARGET_BLOCKED"
    assert denial.extras == {}
    assert denial.redirect_to == runtime.settings.admin_home_url
    assert offered == []
    assert ctx.principal.id == admin.id
    assert ctx.session.impersonation is None
    assert runtime.store.session_row_exists(ctx.session.id, admin.id)

    follow_up, denial = await send(ctx.session.id)
    assert denial is None
    assert follow_up.principal.id == admin.id

async def test_admin_login_elsewhere_supersedes_impersonation(
    runtime, admin_and_target, login, impersonate, send
):
    admin, target = admin_and_target
    admin_session = await login(admin)
    session_id, _ = await impersonate(admin_session, target.id)
    await login(admin, user_agent="other-device")

    _, denial = await send(session_id)

    assert denial.code == "SESSION_SUPERSEDED"


async def test_password_expiry_is_not_enforced_on_the_target(
    runtime, admin_and_target, login, impersonate, send
):
    admin, target = admin_and_target
    runtime.store.update_principal(
        target.id, password_changed_at=utcnow() - timedelta(days=365)
    )
    admin_session = await login(admin)
    session_id, _ = await impersonate(admin_session, target.id)

    _, denial = await send(session_id)

    assert denial is None


async def test_leaving_impersonation_returns_to_admin(
    runtime, admin_and_target, login, impersonate, make_context
):
    admin, target = admin_and_target
    admin_session = await login(admin)
    session_id, _ = await impersonate(admin_session, target.id)
    ctx = make_context("/impersonation/leave", method="POST", session_cookie=session_id)
    ctx.session = runtime.store.read_session(session_id)

    restored = runtime.impersonation.terminate(ctx, reason="left")

    assert restored.id == admin.id
    assert ctx.session.critical.login_id == admin.id
    assert runtime.store.session_row_exists(ctx.session.id, admin.id)


class TestBeginChecks:
    async def _context(self, runtime, make_context, login, principal):
        session_id = await login(principal)
        ctx = make_context("/admin/impersonate", session_cookie=session_id)
        await runtime.pipeline.run(ctx)
        return ctx

    async def test_only_admins_may_impersonate(self, runtime, admin_and_target, make_principal, make_context, login):
        _, target = admin_and_target
        ctx = await self._context(runtime, make_context, login, make_principal())

        with pytest.raises(ForbiddenError):
            runtime.impersonation.begin(ctx, target.id)

    async def test_protected_roles_cannot_be_targeted(self, runtime, admin_and_target, make_principal, make_context, login):
        admin, _ = admin_and_target
        other_admin = make_principal(roles=(Role.ADMIN,))
        ctx = await self._context(runtime, make_context, login, admin)

        with pytest.raises(ForbiddenError):
            runtime.impersonation.begin(ctx, other_admin.id)

    async def test_self_impersonation_is_rejected(self, runtime, admin_and_target, make_context, login):
        admin, _ = admin_and_target
        ctx = await self._context(runtime, make_context, login, admin)

        with pytest.raises(ValidationError):
            runtime.impersonation.begin(ctx, admin.id)

    async def test_inactive_targets_are_rejected(self, runtime, admin_and_target, make_principal, make_context, login):
        admin, _ = admin_and_target
        pending = make_principal(status=AccountStatus.PENDING)
        ctx = await self._context(runtime, make_context, login, admin)

        with pytest.raises(ForbiddenError):
            runtime.impersonation.begin(ctx, pending.id)

    async def test_two_factor_required_when_configured(self, runtime, admin_and_target, make_context, login):
        admin, target = admin_and_target
        runtime.settings.impersonation_require_two_factor = True
        ctx = await self._context(runtime, make_context, login, admin)

        with pytest.raises(ForbiddenError) as exc_info:
            runtime.impersonation.begin(ctx, target.id)
        assert exc_info.value.error_code == "TWO_FACTOR_REQUIRED"

    async def test_nested_impersonation_is_rejected(self, runtime, admin_and_target, make_principal, make_context, login):
        admin, target = admin_and_target
        second = make_principal()
        ctx = await self._context(runtime, make_context, login, admin)
        runtime.impersonation.begin(ctx, target.id)
        ctx.principal = admin

        with pytest.raises(ConflictError):
            runtime.impersonation.begin(ctx, second.id)
