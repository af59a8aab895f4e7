"""Two-factor challenge state, its expiry, and code verification."""

import base64
from datetime import timedelta

import pytest

from siteguard.service.auth import generate_totp, verify_totp
from siteguard.service.errors import AuthenticationError, RateLimitedError
from siteguard.service.two_factor import (
    ATTEMPT_TIME,
    CHALLENGE_KEYS,
    CHALLENGE_NONCE,
    CHALLENGE_SIGNATURE,
    LOGIN_ID,
    LOGIN_REMEMBER,
    PASSWORD_HASH,
    PASSWORD_SIGNATURE,
)
from siteguard.storage.models import utcnow

# RFC 6238 appendix B seed for the SHA-1 test vectors
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()


class TestTotp:
    def test_rfc_vectors(self):
        assert generate_totp(RFC_SECRET, 59) == "287082"
        assert generate_totp(RFC_SECRET, 1111111109) == "081804"
        assert generate_totp(RFC_SECRET, 59, digits=8) == "94287082"

    def test_adjacent_steps_are_accepted(self):
        code = generate_totp(RFC_SECRET, 1111111109)
        assert verify_totp(RFC_SECRET, code, at=1111111109 + 30)
        assert not verify_totp(RFC_SECRET, code, at=1111111109 + 90)

    def test_non_numeric_codes_are_rejected(self):
        assert not verify_totp(RFC_SECRET, "abcdef", at=59)

    def test_malformed_secret_never_verifies(self):
        assert generate_totp("not base32!", 59) == ""
        assert not verify_totp("not base32!", "000000", at=59)


@pytest.fixture
def enrolled(runtime, make_principal):
    principal = make_principal()
    secret = runtime.auth.begin_two_factor_setup(principal)["secret"]
    now = utcnow()
    return runtime.auth.confirm_two_factor_setup(
        principal, generate_totp(secret, now.timestamp()), now=now
    )


def _challenged_context(runtime, make_context, principal, *, started, now=None):
    ctx = make_context(runtime.settings.two_factor_url, method="POST", now=now or started)
    runtime.two_factor.begin_challenge(ctx.session, principal, remember=True, now=started)
    return ctx


class TestChallengeGate:
    async def test_fresh_challenge_is_attached_to_the_request(self, runtime, enrolled, make_context):
        started = utcnow() - timedelta(seconds=299)
        ctx = _challenged_context(runtime, make_context, enrolled, started=started, now=utcnow())

        denial = await runtime.pipeline.run(ctx)

        assert denial is None
        assert ctx.two_factor_challenge.principal.id == enrolled.id
        assert ctx.two_factor_challenge.remember is True

    async def test_challenge_expires_after_ttl(self, runtime, enrolled, make_context):
        started = utcnow() - timedelta(seconds=300)
        ctx = _challenged_context(runtime, make_context, enrolled, started=started, now=utcnow())
        ctx.now = started + timedelta(seconds=300)

        denial = await runtime.pipeline.run(ctx)

        assert denial.status_code == 419
        assert denial.code == "TWO_FACTOR_CHALLENGE_EXPIRED"
        assert denial.redirect_to == runtime.settings.login_url
        assert not any(key in ctx.session.data for key in CHALLENGE_KEYS)

    async def test_missing_proof_is_rejected(self, runtime, enrolled, make_context):
        ctx = _challenged_context(runtime, make_context, enrolled, started=utcnow())
        del ctx.session.data[CHALLENGE_SIGNATURE]

        denial = await runtime.pipeline.run(ctx)

        assert denial.code == "TWO_FACTOR_CHALLENGE_EXPIRED"

    async def test_forged_principal_id_is_rejected(self, runtime, enrolled, make_principal, make_context):
        other = make_principal()
        secret = runtime.auth.begin_two_factor_setup(other)["secret"]
        now = utcnow()
        runtime.auth.confirm_two_factor_setup(other, generate_totp(secret, now.timestamp()), now=now)
        ctx = _challenged_context(runtime, make_context, enrolled, started=now)
        ctx.session.data[LOGIN_ID] = other.id

        denial = await runtime.pipeline.run(ctx)

        assert denial.code == "TWO_FACTOR_CHALLENGE_EXPIRED"

    async def test_stored_password_hash_proof_is_honoured(self, runtime, enrolled, make_context):
        ctx = make_context(runtime.settings.two_factor_url)
        ctx.session.data.update(
            {
                LOGIN_ID: enrolled.id,
                PASSWORD_HASH: enrolled.password_hash,
                ATTEMPT_TIME: ctx.now.timestamp(),
            }
        )

        denial = await runtime.pipeline.run(ctx)

        assert denial is None

    async def test_expired_stored_proof_challenge_is_fully_cleared(
        self, runtime, enrolled, make_context
    ):
        ctx = make_context(runtime.settings.two_factor_url)
        ttl = runtime.settings.two_factor_challenge_ttl_seconds
        started = ctx.now - timedelta(seconds=ttl + 1)
        ctx.session.data.update(
            {
                LOGIN_ID: enrolled.id,
                LOGIN_REMEMBER: True,
                PASSWORD_SIGNATURE: "signed-before-upgrade",
                PASSWORD_HASH: enrolled.password_hash,
                ATTEMPT_TIME: started.timestamp(),
            }
        )

        denial = await runtime.pipeline.run(ctx)

        assert denial.code == "TWO_FACTOR_CHALLENGE_EXPIRED"
        assert not any(key in ctx.session.data for key in CHALLENGE_KEYS)

    async def test_other_paths_ignore_the_challenge(self, runtime, enrolled, make_context):
        started = utcnow() - timedelta(hours=1)
        ctx = make_context("/login", now=utcnow())
        runtime.two_factor.begin_challenge(ctx.session, enrolled, remember=False, now=started)

        denial = await runtime.pipeline.run(ctx)

        assert denial is None
        assert ctx.session.data[CHALLENGE_NONCE]


class TestVerifyCode:
    async def test_valid_code_consumes_the_challenge(self, runtime, enrolled, make_context):
        ctx = _challenged_context(runtime, make_context, enrolled, started=utcnow())
        await runtime.pipeline.run(ctx)
        code = generate_totp(enrolled.two_factor_secret, ctx.now.timestamp())

        challenge = await runtime.two_factor.verify_code(ctx, ctx.two_factor_challenge, code)

        assert challenge.principal.id == enrolled.id
        assert not runtime.two_factor.has_challenge(ctx.session)

    async def test_wrong_code_also_clears_the_challenge(self, runtime, enrolled, make_context):
        ctx = _challenged_context(runtime, make_context, enrolled, started=utcnow())
        await runtime.pipeline.run(ctx)

        with pytest.raises(AuthenticationError) as exc_info:
            await runtime.two_factor.verify_code(ctx, ctx.two_factor_challenge, "000000x")

        assert exc_info.value.error_code == "INVALID_TWO_FACTOR_CODE"
        assert not runtime.two_factor.has_challenge(ctx.session)

    async def test_repeated_failures_lock_verification(self, runtime, enrolled, make_context):
        runtime.settings.two_factor_max_attempts = 2
        for _ in range(2):
            ctx = _challenged_context(runtime, make_context, enrolled, started=utcnow())
            await runtime.pipeline.run(ctx)
            with pytest.raises(AuthenticationError):
                await runtime.two_factor.verify_code(ctx, ctx.two_factor_challenge, "abcdef")

        ctx = _challenged_context(runtime, make_context, enrolled, started=utcnow())
        await runtime.pipeline.run(ctx)
        code = generate_totp(enrolled.two_factor_secret, ctx.now.timestamp())
        with pytest.raises(RateLimitedError) as exc_info:
            await runtime.two_factor.verify_code(ctx, ctx.two_factor_challenge, code)

        assert exc_info.value.error_code == "TWO_FACTOR_LOCKED"
        assert not runtime.two_factor.has_challenge(ctx.session)

    async def test_lapsed_attempt_state_is_forgotten(self, runtime):
        service = runtime.two_factor
        now = utcnow()
        runtime.settings.two_factor_max_attempts = 1
        assert await service._record_attempt("locked-out", now)
        runtime.settings.two_factor_max_attempts = 5
        await service._record_attempt("abandoned", now)

        await service._record_attempt("current", now + timedelta(minutes=5))

        assert set(service._attempts) == {"current"}
        assert service._lockouts == {}


class TestEnrolment:
    def test_setup_returns_provisioning_uri(self, runtime, make_principal):
        principal = make_principal("totp@example.com")

        setup = runtime.auth.begin_two_factor_setup(principal)

        assert setup["otpauth_uri"].startswith("otpauth://totp/siteguard%3Atotp%40example.com")
        assert f"secret={setup['secret']}" in setup["otpauth_uri"]

    def test_wrong_confirmation_code_keeps_two_factor_off(self, runtime, make_principal):
        principal = make_principal()
        runtime.auth.begin_two_factor_setup(principal)

        with pytest.raises(AuthenticationError):
            runtime.auth.confirm_two_factor_setup(principal, "abcdef", now=utcnow())
        assert not runtime.store.get_principal(principal.id).has_confirmed_two_factor()

    def test_secret_is_encrypted_at_rest(self, runtime, enrolled):
        stored = runtime.store.principals[enrolled.id]

        assert stored.two_factor_secret != enrolled.two_factor_secret
        assert enrolled.has_confirmed_two_factor()
