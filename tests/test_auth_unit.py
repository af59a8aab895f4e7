"""Unit tests for the auth service.

Tests for:
- Password hashing and verification
- Login completion and session rotation
- Password changes
- Logout
"""

import pytest

from siteguard.service.errors import AuthenticationError, ForbiddenError, ValidationError
from siteguard.storage.models import ImpersonationOverlay, utcnow

PASSWORD = "correct-horse-battery"


class TestPasswordHashing:
    def test_hash_is_argon2id_and_salted(self, runtime):
        first = runtime.auth.hash_password(PASSWORD)
        second = runtime.auth.hash_password(PASSWORD)

        assert first.startswith("$argon2id$")
        assert first != second

    def test_verify_credentials(self, runtime, make_principal):
        principal = make_principal("login@example.com")

        assert runtime.auth.verify_credentials("LOGIN@example.com", PASSWORD).id == principal.id
        assert runtime.auth.verify_credentials("login@example.com", "wrong-password") is None
        assert runtime.auth.verify_credentials("nobody@example.com", PASSWORD) is None

    def test_short_passwords_are_refused(self, runtime):
        with pytest.raises(ValidationError):
            runtime.auth.create_principal("short@example.com", "short")


class TestCompleteLogin:
    def test_login_rotates_and_binds_the_session(self, runtime, make_principal, make_context):
        principal = make_principal()
        ctx = make_context("/auth/login", method="POST")
        guest_id = ctx.session.id

        runtime.auth.complete_login(ctx, principal, remember=True)

        assert ctx.session.id != guest_id
        assert ctx.session.critical.login_id == principal.id
        assert ctx.session.critical.password_hash == principal.password_hash
        assert ctx.session.data["remember"] is True
        assert ctx.session.last_activity_at == ctx.now
        assert runtime.store.session_row_exists(ctx.session.id, principal.id)
        assert runtime.store.get_principal(principal.id).last_login_at == ctx.now

    def test_login_returns_evicted_sessions(self, runtime, make_principal, make_context):
        principal = make_principal()
        first = make_context("/auth/login", method="POST")
        runtime.auth.complete_login(first, principal)
        second = make_context("/auth/login", method="POST")

        evicted = runtime.auth.complete_login(second, principal)

        assert evicted == [first.session.id]


class TestChangePassword:
    async def test_change_rotates_session_and_logs_out_elsewhere(
        self, runtime, make_principal, login, make_context
    ):
        runtime.settings.max_concurrent_sessions = 2
        principal = make_principal()
        other_device = await login(principal, user_agent="phone")
        session_id = await login(principal)
        ctx = make_context("/account/password", method="POST", session_cookie=session_id)
        ctx.session = runtime.store.read_session(session_id)
        ctx.principal = runtime.store.get_principal(principal.id)

        updated = runtime.auth.change_password(ctx, PASSWORD, "a-brand-new-secret")

        assert ctx.session.id != session_id
        assert ctx.session.critical.password_hash == updated.password_hash
        assert runtime.store.session_row_exists(ctx.session.id, principal.id)
        assert not runtime.store.session_row_exists(other_device, principal.id)
        assert runtime.auth.verify_credentials(principal.email, "a-brand-new-secret")
        assert updated.password_changed_at == ctx.now

    def test_wrong_current_password(self, runtime, make_principal, make_context):
        principal = make_principal()
        ctx = make_context("/account/password", method="POST")
        ctx.principal = principal

        with pytest.raises(AuthenticationError) as exc_info:
            runtime.auth.change_password(ctx, "not-my-password", "a-brand-new-secret")
        assert exc_info.value.error_code == "INVALID_CREDENTIALS"

    def test_new_password_must_differ(self, runtime, make_principal, make_context):
        principal = make_principal()
        ctx = make_context("/account/password", method="POST")
        ctx.principal = principal

        with pytest.raises(ValidationError):
            runtime.auth.change_password(ctx, PASSWORD, PASSWORD)

    def test_refused_while_impersonating(self, runtime, make_principal, make_context):
        principal = make_principal()
        ctx = make_context("/account/password", method="POST")
        ctx.principal = principal
        now = utcnow()
        ctx.session.impersonation = ImpersonationOverlay("admin", principal.id, now, now, "t")

        with pytest.raises(ForbiddenError):
            runtime.auth.change_password(ctx, PASSWORD, "a-brand-new-secret")


async def test_logout_destroys_session_and_row(runtime, make_principal, login, make_context):
    principal = make_principal()
    session_id = await login(principal)
    ctx = make_context("/auth/logout", method="POST", session_cookie=session_id)
    ctx.session = runtime.store.read_session(session_id)
    ctx.principal = principal

    runtime.auth.logout(ctx)

    assert ctx.session_destroyed
    assert ctx.principal is None
    assert not ctx.session.critical.is_authenticated
    assert runtime.store.read_session(session_id) is None
    assert not runtime.store.session_row_exists(session_id, principal.id)
