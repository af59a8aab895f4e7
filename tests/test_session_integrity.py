from dataclasses import replace
from unittest.mock import MagicMock

from siteguard.service.audit import SecurityAuditLog
from siteguard.service.integrity import sign_critical_fields
from siteguard.storage.models import CriticalSessionFields


async def test_tampered_login_id_is_rejected(runtime, make_principal, login, send):
    victim = make_principal()
    attacker = make_principal()
    session_id = await login(attacker)
    stored = runtime.store.sessions[session_id]
    stored.critical = replace(stored.critical, login_id=victim.id)

    ctx, denial = await send(session_id)

    assert denial.status_code == 419
    assert denial.code == "SESSION_INTEGRITY_VIOLATION"
    assert denial.redirect_to == runtime.settings.login_url
    assert ctx.principal is None
    assert ctx.session.id != session_id
    assert runtime.store.read_session(session_id) is None
    assert ctx.session.integrity_signature is None


async def test_tampered_password_hash_is_rejected(runtime, make_principal, login, send):
    principal = make_principal()
    session_id = await login(principal)
    stored = runtime.store.sessions[session_id]
    stored.critical = replace(stored.critical, password_hash="$argon2id$forged")

    _, denial = await send(session_id)

    assert denial.code == "SESSION_INTEGRITY_VIOLATION"


async def test_non_critical_changes_do_not_trip_the_check(runtime, make_principal, login, send):
    principal = make_principal()
    session_id = await login(principal)
    runtime.store.sessions[session_id].data["theme"] = "dark"

    ctx, denial = await send(session_id)

    assert denial is None
    assert ctx.session.data["theme"] == "dark"


async def test_violation_is_audited(runtime, make_principal, login, send):
    principal = make_principal()
    session_id = await login(principal)
    sink = MagicMock()
    runtime.integrity.audit = SecurityAuditLog(runtime.settings.signing_key, log=sink)
    runtime.store.sessions[session_id].integrity_signature = "0" * 64

    await send(session_id, user_agent="curl/8.0")

    sink.warning.assert_called_once()
    args, kwargs = sink.warning.call_args
    assert args[0] == "security.violation"
    assert kwargs["violation"] == "session_integrity"
    assert kwargs["principal_id"] == principal.id
    assert kwargs["user_agent"] == "curl/8.0"
    assert session_id not in str(kwargs)


async def test_missing_signature_is_signed_after_response(runtime, make_principal, login, send):
    principal = make_principal()
    session_id = await login(principal)
    runtime.store.sessions[session_id].integrity_signature = None

    ctx, denial = await send(session_id)

    assert denial is None
    assert ctx.session.integrity_signature == sign_critical_fields(
        ctx.session.critical, runtime.settings.signing_key
    )


async def test_disabled_validation_skips_the_check(runtime, make_principal, login, send):
    principal = make_principal()
    session_id = await login(principal)
    runtime.settings.session_integrity_enabled = False
    runtime.store.sessions[session_id].integrity_signature = "0" * 64

    _, denial = await send(session_id)

    assert denial is None


def test_signature_covers_only_critical_fields():
    key = b"k" * 32
    fields = CriticalSessionFields(login_id="p-1", password_hash="h")

    assert sign_critical_fields(fields, key) == sign_critical_fields(
        CriticalSessionFields(login_id="p-1", password_hash="h"), key
    )
    assert sign_critical_fields(fields, key) != sign_critical_fields(
        CriticalSessionFields(login_id="p-2", password_hash="h"), key
    )
    assert sign_critical_fields(fields, key) != sign_critical_fields(fields, b"x" * 32)
