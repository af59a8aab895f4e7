"""Pre-authentication challenge between password and one-time code.

A successful password check for a principal with confirmed two-factor puts
the session into the awaiting-code state by writing the ``login.*`` keys
below into the session's non-critical data. Those keys are always cleared
together: on success, on a wrong code, and on any failed validation.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional, Protocol, Tuple

from siteguard.config import Settings
from siteguard.logging import get_logger
from siteguard.service.audit import SecurityAuditLog
from siteguard.service.auth import verify_totp
from siteguard.service.errors import AuthenticationError, RateLimitedError
from siteguard.service.pipeline import Denial, Outcome, PipelineStage, RequestContext
from siteguard.storage.errors import StoreUnavailableError
from siteguard.storage.models import Principal, SessionRecord, ensure_aware
from siteguard.storage.redis_cache import CounterCache

logger = get_logger(__name__)

LOGIN_ID = "login.id"
LOGIN_REMEMBER = "login.remember"
CHALLENGE_NONCE = "login.challenge_nonce"
CHALLENGE_SIGNATURE = "login.challenge_signature"
PASSWORD_SIGNATURE = "login.password_signature"
PASSWORD_HASH = "login.password_hash"
ATTEMPT_TIME = "login.attempt_time"

CHALLENGE_KEYS = (
    LOGIN_ID,
    LOGIN_REMEMBER,
    CHALLENGE_NONCE,
    CHALLENGE_SIGNATURE,
    PASSWORD_SIGNATURE,
    PASSWORD_HASH,
    ATTEMPT_TIME,
)
PROOF_KEYS = (CHALLENGE_SIGNATURE, PASSWORD_SIGNATURE, PASSWORD_HASH)


class PrincipalLookup(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]: ...


@dataclass
class TwoFactorChallenge:
    principal: Principal
    remember: bool
    started_at: datetime


class TwoFactorService:
    def __init__(
        self,
        settings: Settings,
        store: PrincipalLookup,
        cache: CounterCache,
        audit: SecurityAuditLog,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cache = cache
        self.audit = audit
        self._challenge_key = settings.signing_key + b"|2fa"
        self._state_lock = threading.Lock()
        self._attempts: Dict[str, Tuple[int, datetime]] = {}
        self._lockouts: Dict[str, datetime] = {}

    def _sign(self, *parts: str) -> str:
        return hmac.new(
            self._challenge_key, "|".join(parts).encode(), hashlib.sha256
        ).hexdigest()

    def begin_challenge(
        self,
        session: SessionRecord,
        principal: Principal,
        *,
        remember: bool,
        now: datetime,
    ) -> None:
        self.clear_challenge(session)
        nonce = secrets.token_urlsafe(32)
        session.data.update(
            {
                LOGIN_ID: principal.id,
                LOGIN_REMEMBER: bool(remember),
                CHALLENGE_NONCE: nonce,
                CHALLENGE_SIGNATURE: self._sign(nonce, principal.password_hash or ""),
                ATTEMPT_TIME: ensure_aware(now).timestamp(),
            }
        )

    def clear_challenge(self, session: SessionRecord) -> None:
        for key in CHALLENGE_KEYS:
            session.data.pop(key, None)

    def has_challenge(self, session: SessionRecord) -> bool:
        return any(key in session.data for key in CHALLENGE_KEYS)

    def _proof_valid(self, data: dict, principal: Principal) -> bool:
        password_hash = principal.password_hash or ""
        signature = data.get(CHALLENGE_SIGNATURE)
        nonce = data.get(CHALLENGE_NONCE)
        if signature and nonce:
            if hmac.compare_digest(str(signature), self._sign(str(nonce), password_hash)):
                return True
        legacy_signature = data.get(PASSWORD_SIGNATURE)
        if legacy_signature and hmac.compare_digest(
            str(legacy_signature), self._sign(password_hash)
        ):
            return True
        legacy_hash = data.get(PASSWORD_HASH)
        if legacy_hash and password_hash:
            return hmac.compare_digest(str(legacy_hash).encode(), password_hash.encode())
        return False

    def validate(
        self, session: SessionRecord, now: datetime
    ) -> Tuple[Optional[TwoFactorChallenge], Optional[str]]:
        """Return the live challenge, or the reason it cannot be honoured."""
        data = session.data
        principal_id = data.get(LOGIN_ID)
        if not principal_id:
            return None, "missing_principal"
        if not any(data.get(key) for key in PROOF_KEYS):
            return None, "missing_proof"
        try:
            started = float(data.get(ATTEMPT_TIME))
        except (TypeError, ValueError):
            return None, "missing_attempt_time"
        elapsed = ensure_aware(now).timestamp() - started
        if elapsed < 0 or elapsed >= self.settings.two_factor_challenge_ttl_seconds:
            return None, "expired"
        try:
            principal = self.store.get_principal(str(principal_id))
        except StoreUnavailableError as exc:
            logger.warning("two_factor_principal_lookup_failed", error=str(exc))
            return None, "store_unavailable"
        if principal is None or not principal.has_confirmed_two_factor():
            return None, "two_factor_not_configured"
        if not self._proof_valid(data, principal):
            return None, "invalid_proof"
        return (
            TwoFactorChallenge(
                principal=principal,
                remember=bool(data.get(LOGIN_REMEMBER)),
                started_at=datetime.fromtimestamp(started, tz=timezone.utc),
            ),
            None,
        )

    # attempt lockout, keyed by client ip and pending principal
    def _subject(self, ip: Optional[str], principal_id: str) -> str:
        return hashlib.sha256(f"{ip or '-'}|{principal_id}".encode()).hexdigest()

    async def _is_locked(self, subject: str, now: datetime) -> bool:
        if self.cache:
            return await self.cache.check_attempt_lockout(subject)
        with self._state_lock:
            locked_until = self._lockouts.get(subject)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._lockouts.pop(subject, None)
            return False

    def _prune_local(self, now: datetime) -> None:
        """Forget lapsed attempt windows and lockouts; caller holds ``_state_lock``."""
        window = timedelta(seconds=self.settings.two_factor_attempt_window_seconds)
        for subject in [s for s, (_, start) in self._attempts.items() if now - start >= window]:
            del self._attempts[subject]
        for subject in [s for s, until in self._lockouts.items() if until <= now]:
            del self._lockouts[subject]

    async def _record_attempt(self, subject: str, now: datetime) -> bool:
        max_attempts = self.settings.two_factor_max_attempts
        window = self.settings.two_factor_attempt_window_seconds
        if self.cache:
            locked, _ = await self.cache.record_attempt(
                subject, max_attempts=max_attempts, window_seconds=window
            )
            return locked
        with self._state_lock:
            self._prune_local(now)
            count, window_start = self._attempts.get(subject, (0, now))
            if now - window_start >= timedelta(seconds=window):
                count, window_start = 0, now
            count += 1
            if count >= max_attempts:
                self._lockouts[subject] = now + timedelta(seconds=window)
                self._attempts.pop(subject, None)
                return True
            self._attempts[subject] = (count, window_start)
            return False

    async def _clear_attempts(self, subject: str) -> None:
        if self.cache:
            await self.cache.clear_attempts(subject)
            return
        with self._state_lock:
            self._attempts.pop(subject, None)

    async def verify_code(
        self, ctx: RequestContext, challenge: TwoFactorChallenge, code: str
    ) -> TwoFactorChallenge:
        """Check the one-time code; the challenge is consumed either way."""
        principal = challenge.principal
        subject = self._subject(ctx.ip, principal.id)
        if await self._is_locked(subject, ctx.now):
            self.clear_challenge(ctx.session)
            raise RateLimitedError(
                "too many verification attempts",
                error_code="TWO_FACTOR_LOCKED",
                detail={"retry_after": self.settings.two_factor_attempt_window_seconds},
            )
        ok = verify_totp(principal.two_factor_secret or "", code, at=ctx.now.timestamp())
        self.clear_challenge(ctx.session)
        if not ok:
            locked = await self._record_attempt(subject, ctx.now)
            self.audit.event(
                "two_factor_failed",
                principal_id=principal.id,
                session_id=ctx.session.id,
                ip=ctx.ip,
                route=ctx.path,
                timestamp=ctx.now,
                locked=locked,
            )
            raise AuthenticationError(
                "invalid verification code", error_code="INVALID_TWO_FACTOR_CODE"
            )
        await self._clear_attempts(subject)
        return challenge


class TwoFactorChallengeGate(PipelineStage):
    """Validate the pending challenge on every request to the two-factor endpoints."""

    name = "two_factor_challenge"

    def __init__(
        self,
        settings: Settings,
        service: TwoFactorService,
        paths: Optional[Iterable[str]] = None,
    ) -> None:
        self.settings = settings
        self.service = service
        self.paths = set(paths or {settings.two_factor_url})

    async def process(self, ctx: RequestContext) -> Outcome:
        if ctx.path not in self.paths:
            return Outcome.proceed()
        challenge, reason = self.service.validate(ctx.session, ctx.now)
        if challenge is not None:
            ctx.two_factor_challenge = challenge
            return Outcome.proceed()
        self.service.clear_challenge(ctx.session)
        logger.info("two_factor_challenge_rejected", reason=reason)
        return Outcome.terminal(
            Denial(
                419,
                "TWO_FACTOR_CHALLENGE_EXPIRED",
                "Your session has expired. Please log in again.",
                redirect_to=self.settings.login_url,
                flash_level="warning",
            )
        )
