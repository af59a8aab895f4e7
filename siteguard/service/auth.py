from __future__ import annotations

import base64
import hashlib
import hmac
import os
import struct
import time
from datetime import datetime
from typing import Iterable, List, Optional, Protocol
from urllib.parse import quote

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from siteguard.config import Settings
from siteguard.logging import get_logger
from siteguard.service.audit import SecurityAuditLog
from siteguard.service.concurrent_sessions import ConcurrentSessionEnforcer
from siteguard.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from siteguard.service.pipeline import RequestContext
from siteguard.service.sessions import SessionService
from siteguard.storage.models import (
    AccountStatus,
    CriticalSessionFields,
    Principal,
    Role,
)

logger = get_logger(__name__)

REMEMBER_KEY = "remember"
MIN_PASSWORD_LENGTH = 8
TOTP_INTERVAL = 30
TOTP_DIGITS = 6


class PrincipalStore(Protocol):
    def create_principal(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        roles: Optional[Iterable[Role | str]] = None,
        status: AccountStatus = AccountStatus.ACTIVE,
        name: Optional[str] = None,
        password_changed_at: Optional[datetime] = None,
    ) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def update_principal(self, principal_id: str, **changes) -> Optional[Principal]: ...

    def set_two_factor_secret(
        self,
        principal_id: str,
        secret: Optional[str],
        *,
        confirmed_at: Optional[datetime] = None,
    ) -> Optional[Principal]: ...


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code for ``timestamp``; empty string when the secret is malformed."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = struct.pack(">Q", int(timestamp // interval))
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    at: Optional[float] = None,
    interval: int = TOTP_INTERVAL,
    skew_steps: int = 1,
) -> bool:
    candidate = (code or "").strip().replace(" ", "")
    if not candidate.isdigit():
        return False
    now = time.time() if at is None else at
    for offset in range(-skew_steps, skew_steps + 1):
        generated = generate_totp(secret, now + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated.encode(), candidate.encode()):
            return True
    return False


def new_totp_secret() -> str:
    return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")


class AuthService:
    """Credential checks, login completion and credential maintenance."""

    def __init__(
        self,
        settings: Settings,
        store: PrincipalStore,
        sessions: SessionService,
        concurrent: ConcurrentSessionEnforcer,
        audit: SecurityAuditLog,
    ) -> None:
        self.settings = settings
        self.store = store
        self.sessions = sessions
        self.concurrent = concurrent
        self.audit = audit
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so response timing stays flat
        self._dummy_hash = self._pwd_hasher.hash(os.urandom(16).hex())
        self.logger = logger

    # passwords
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _check_password_policy(self, password: str) -> None:
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    def verify_password(self, principal: Principal, password: str) -> bool:
        if not principal.password_hash:
            return False
        try:
            ok = self._pwd_hasher.verify(principal.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            self.logger.warning("password_verification_failed", principal_id=principal.id)
            return False
        if ok and self._pwd_hasher.check_needs_rehash(principal.password_hash):
            self.store.update_principal(
                principal.id, password_hash=self._pwd_hasher.hash(password)
            )
        return ok

    def verify_credentials(self, email: str, password: str) -> Optional[Principal]:
        principal = self.store.get_principal_by_email(email)
        if principal is None or not principal.password_hash:
            try:
                self._pwd_hasher.verify(self._dummy_hash, password)
            except VerificationError:
                pass
            return None
        if not self.verify_password(principal, password):
            return None
        # Re-read so a rehash is reflected in the session's critical fields
        return self.store.get_principal(principal.id) or principal

    def create_principal(
        self,
        email: str,
        password: Optional[str],
        *,
        roles: Optional[Iterable[Role | str]] = None,
        status: AccountStatus = AccountStatus.ACTIVE,
        name: Optional[str] = None,
    ) -> Principal:
        password_hash = None
        if password is not None:
            self._check_password_policy(password)
            password_hash = self.hash_password(password)
        principal = self.store.create_principal(
            email, password_hash=password_hash, roles=roles, status=status, name=name
        )
        self.logger.info("principal_created", principal_id=principal.id)
        return principal

    def set_password(self, principal_id: str, password: str, *, now: datetime) -> Principal:
        self._check_password_policy(password)
        updated = self.store.update_principal(
            principal_id,
            password_hash=self.hash_password(password),
            password_changed_at=now,
        )
        if updated is None:
            raise NotFoundError("principal not found")
        return updated

    # session transitions
    def complete_login(
        self, ctx: RequestContext, principal: Principal, *, remember: bool = False
    ) -> List[str]:
        """Bind the request's session to ``principal``; returns evicted session ids."""
        session = self.sessions.regenerate(ctx.session)
        session.critical = CriticalSessionFields(
            login_id=principal.id, password_hash=principal.password_hash
        )
        session.impersonation = None
        session.integrity_signature = None
        session.last_activity_at = ctx.now
        session.data[REMEMBER_KEY] = bool(remember)
        self.sessions.register_login(session, principal.id)
        evicted = self.concurrent.enforce_limit(principal, session.id)
        self.store.update_principal(principal.id, last_login_at=ctx.now)

        ctx.session = session
        ctx.principal = principal
        self.audit.successful_login(
            principal_id=principal.id,
            session_id=session.id,
            ip=ctx.ip,
            route=ctx.path,
            timestamp=ctx.now,
            evicted_sessions=len(evicted),
        )
        return evicted

    def logout(self, ctx: RequestContext, *, reason: str = "user") -> None:
        previous = ctx.session
        principal_id = previous.owner_id
        ctx.session = self.sessions.invalidate(previous)
        ctx.principal = None
        ctx.session_destroyed = True
        self.audit.logout(
            reason=reason,
            principal_id=principal_id,
            session_id=previous.id,
            ip=ctx.ip,
            route=ctx.path,
            timestamp=ctx.now,
        )

    def change_password(self, ctx: RequestContext, current: str, new: str) -> Principal:
        principal = ctx.principal
        if principal is None:
            raise AuthenticationError("authentication required")
        if ctx.session.impersonation is not None:
            raise ForbiddenError("passwords cannot be changed while impersonating")
        if not self.verify_password(principal, current):
            raise AuthenticationError(
                "current password is incorrect", error_code="INVALID_CREDENTIALS"
            )
        if hmac.compare_digest(current.encode(), new.encode()):
            raise ValidationError(
                "new password must differ from the current one",
                detail={"field": "new_password"},
            )
        updated = self.set_password(principal.id, new, now=ctx.now)

        session = self.sessions.regenerate(ctx.session)
        session.critical = CriticalSessionFields(
            login_id=updated.id, password_hash=updated.password_hash
        )
        self.sessions.register_login(session, updated.id)
        evicted = self.sessions.store.delete_session_rows(
            updated.id, except_session_id=session.id
        )
        ctx.session = session
        ctx.principal = updated
        self.audit.event(
            "password_changed",
            principal_id=updated.id,
            session_id=session.id,
            ip=ctx.ip,
            route=ctx.path,
            timestamp=ctx.now,
            evicted_sessions=len(evicted),
        )
        return updated

    # two-factor enrolment
    def begin_two_factor_setup(self, principal: Principal) -> dict:
        if principal.has_confirmed_two_factor():
            raise ValidationError("two-factor authentication is already enabled")
        secret = new_totp_secret()
        self.store.set_two_factor_secret(principal.id, secret, confirmed_at=None)
        label = quote(f"siteguard:{principal.email}")
        uri = f"otpauth://totp/{label}?secret={secret}&issuer=siteguard"
        return {"secret": secret, "otpauth_uri": uri}

    def confirm_two_factor_setup(
        self, principal: Principal, code: str, *, now: datetime
    ) -> Principal:
        current = self.store.get_principal(principal.id)
        if current is None or not current.two_factor_secret:
            raise ValidationError("two-factor setup has not been started")
        if current.has_confirmed_two_factor():
            raise ValidationError("two-factor authentication is already enabled")
        if not verify_totp(current.two_factor_secret, code, at=now.timestamp()):
            raise AuthenticationError(
                "invalid verification code", error_code="INVALID_TWO_FACTOR_CODE"
            )
        updated = self.store.set_two_factor_secret(
            principal.id, current.two_factor_secret, confirmed_at=now
        )
        self.logger.info("two_factor_enabled", principal_id=principal.id)
        return updated
