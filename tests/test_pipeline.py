"""Pipeline ordering, short-circuiting and session bookkeeping."""

from unittest.mock import MagicMock

from siteguard.service.audit import SecurityAuditLog, hash_identity, hash_session_id
from siteguard.service.pipeline import Denial, Outcome, PipelineStage, SecurityPipeline
from siteguard.service.sessions import FLASH_KEY


class RecordingStage(PipelineStage):
    def __init__(self, name, log, denial=None):
        self.name = name
        self.log = log
        self.denial = denial

    async def process(self, ctx):
        self.log.append(("process", self.name))
        return Outcome.terminal(self.denial) if self.denial else Outcome.proceed()

    async def after_response(self, ctx):
        self.log.append(("after", self.name))


def test_runtime_wires_stages_in_order(runtime):
    assert runtime.pipeline.order == [
        "identity",
        "account_state",
        "integrity",
        "concurrent_sessions",
        "lifecycle",
        "impersonation",
        "password_expiry",
        "csrf",
        "two_factor_challenge",
    ]


async def test_first_denial_stops_later_stages(runtime, make_context):
    log = []
    denial = Denial(403, "NOPE", "no")
    pipeline = SecurityPipeline(
        [
            RecordingStage("a", log),
            RecordingStage("b", log, denial=denial),
            RecordingStage("c", log),
        ],
        runtime.sessions,
        runtime.audit,
    )
    ctx = make_context()

    result = await pipeline.run(ctx)
    await pipeline.finalize(ctx)

    assert result is denial
    assert log == [
        ("process", "a"),
        ("process", "b"),
        ("after", "b"),
        ("after", "a"),
    ]


async def test_resolve_invalidates_and_flashes_for_browsers(runtime, make_principal, login, make_context):
    principal = make_principal()
    session_id = await login(principal)
    ctx = make_context(expects_json=False, session_cookie=session_id)
    await runtime.pipeline.run(ctx)

    runtime.pipeline.resolve(
        ctx,
        Denial(419, "X", "Please log in again.", redirect_to="/login", invalidate_session=True),
    )

    assert ctx.session_destroyed
    assert ctx.principal is None
    assert ctx.session.data[FLASH_KEY] == {"level": "error", "message": "Please log in again."}
    assert runtime.store.read_session(session_id) is None


async def test_resolve_skips_flash_for_json_callers(runtime, make_context):
    ctx = make_context(expects_json=True)

    runtime.pipeline.resolve(ctx, Denial(403, "X", "denied", redirect_to="/login"))

    assert FLASH_KEY not in ctx.session.data


class TestSessionService:
    def test_regenerate_moves_contents_to_a_new_id(self, runtime):
        record = runtime.sessions.start_guest("192.0.2.1", "ua")
        record.data["cart"] = 3
        runtime.sessions.save(record)

        rotated = runtime.sessions.regenerate(record)

        assert rotated.id != record.id
        assert rotated.csrf_token != record.csrf_token
        assert rotated.data == {"cart": 3}
        assert runtime.store.read_session(record.id) is None

    def test_invalidate_returns_a_fresh_guest(self, runtime):
        record = runtime.sessions.start_guest("192.0.2.1", "ua")
        record.data["cart"] = 3
        runtime.sessions.save(record)

        guest = runtime.sessions.invalidate(record)

        assert guest.id != record.id
        assert guest.data == {}
        assert guest.ip_addr == "192.0.2.1"

    def test_flash_is_read_once(self, runtime):
        record = runtime.sessions.start_guest()
        runtime.sessions.flash(record, "warning", "heads up")

        assert runtime.sessions.pull_flash(record) == {"level": "warning", "message": "heads up"}
        assert runtime.sessions.pull_flash(record) is None

    def test_login_row_stores_hashed_user_agent(self, runtime, make_principal):
        principal = make_principal()
        record = runtime.sessions.start_guest("192.0.2.1", "Mozilla/5.0")

        row = runtime.sessions.register_login(record, principal.id)

        assert row.user_agent_hash and "Mozilla" not in row.user_agent_hash
        assert runtime.store.session_row_exists(record.id, principal.id)


class TestAuditLog:
    def test_events_hash_session_ids(self):
        sink = MagicMock()
        audit = SecurityAuditLog(b"k" * 32, log=sink)

        audit.logout(reason="timeout", principal_id="p-1", session_id="raw-session", ip="192.0.2.1")

        args, kwargs = sink.warning.call_args
        assert args[0] == "security.logout"
        assert kwargs["reason"] == "timeout"
        assert kwargs["session_id_hash"] == hash_session_id("raw-session")
        assert "raw-session" not in str(kwargs)

    def test_failed_login_hashes_the_email(self):
        sink = MagicMock()
        audit = SecurityAuditLog(b"k" * 32, log=sink)

        audit.failed_login("Someone@Example.com", reason="invalid_credentials")

        _, kwargs = sink.warning.call_args
        assert kwargs["email_hash"] == hash_identity("someone@example.com", b"k" * 32)
        assert "someone" not in str(kwargs).lower()

    def test_broken_sink_never_raises(self):
        sink = MagicMock()
        sink.warning.side_effect = OSError("disk full")
        audit = SecurityAuditLog(b"k" * 32, log=sink)

        audit.violation("session_integrity", principal_id="p-1")
