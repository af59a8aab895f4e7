from siteguard.storage.errors import StoreUnavailableError
from siteguard.storage.models import Role


async def test_second_login_supersedes_first_device(runtime, make_principal, login, send):
    principal = make_principal()
    device_a = await login(principal, user_agent="device-a")
    device_b = await login(principal, user_agent="device-b")

    ctx_a, denial_a = await send(device_a, user_agent="device-a")
    ctx_b, denial_b = await send(device_b, user_agent="device-b")

    assert denial_a.status_code == 419
    assert denial_a.code == "SESSION_SUPERSEDED"
    assert denial_a.message == "You have been logged out because of a new login elsewhere."
    assert ctx_a.principal is None
    assert denial_b is None
    assert ctx_b.principal.id == principal.id


async def test_superseded_browser_session_gets_warning_flash(runtime, make_principal, login, send):
    principal = make_principal()
    device_a = await login(principal)
    await login(principal)

    ctx, _ = await send(device_a, expects_json=False)

    flash = runtime.sessions.pull_flash(ctx.session)
    assert flash["level"] == "warning"


async def test_role_override_allows_more_sessions(runtime, make_principal, login, send):
    runtime.settings.max_sessions_by_role = "editor:2"
    editor = make_principal(roles=(Role.EDITOR,))
    first = await login(editor)
    second = await login(editor)
    third = await login(editor)

    _, denial_first = await send(first)
    _, denial_second = await send(second)
    _, denial_third = await send(third)

    assert denial_first.code == "SESSION_SUPERSEDED"
    assert denial_second is None
    assert denial_third is None


def test_limit_uses_the_most_generous_role(runtime, make_principal):
    runtime.settings.max_sessions_by_role = "editor:2,moderator:3"
    principal = make_principal(roles=(Role.EDITOR, Role.MODERATOR))

    assert runtime.concurrent.limit_for(principal) == 3


async def test_row_lookup_failure_does_not_log_out(runtime, make_principal, login, send, monkeypatch):
    principal = make_principal()
    session_id = await login(principal)

    def unavailable(session_id, principal_id):
        raise StoreUnavailableError("session_row_exists")

    monkeypatch.setattr(runtime.store, "session_row_exists", unavailable)

    ctx, denial = await send(session_id)

    assert denial is None
    assert ctx.principal.id == principal.id


async def test_logout_everywhere_by_deleting_rows(runtime, make_principal, login, send):
    runtime.settings.max_concurrent_sessions = 3
    principal = make_principal()
    keep = await login(principal)
    other = await login(principal)

    evicted = runtime.store.delete_session_rows(principal.id, except_session_id=keep)

    assert evicted == [other]
    _, denial = await send(other)
    assert denial.code == "SESSION_SUPERSEDED"
    _, denial = await send(keep)
    assert denial is None
