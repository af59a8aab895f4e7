from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timedelta
from typing import Optional, Protocol

from siteguard.config import Settings
from siteguard.logging import get_logger
from siteguard.service.audit import SecurityAuditLog
from siteguard.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from siteguard.service.integrity import sign_critical_fields
from siteguard.service.pipeline import Denial, Outcome, PipelineStage, RequestContext
from siteguard.service.sessions import SessionService
from siteguard.storage.errors import StoreUnavailableError
from siteguard.storage.models import (
    AccountStatus,
    CriticalSessionFields,
    ImpersonationOverlay,
    Principal,
    Role,
    ensure_aware,
)

logger = get_logger(__name__)

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


class PrincipalLookup(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]: ...


class ImpersonationService:
    """Start and tear down admin-as-user overlays on the current session."""

    def __init__(
        self,
        settings: Settings,
        store: PrincipalLookup,
        sessions: SessionService,
        audit: SecurityAuditLog,
    ) -> None:
        self.settings = settings
        self.store = store
        self.sessions = sessions
        self.audit = audit

    def _token(
        self,
        impersonator_id: str,
        target_id: str,
        started_at: datetime,
        expires_at: datetime,
    ) -> str:
        message = "|".join(
            (
                impersonator_id,
                target_id,
                ensure_aware(started_at).isoformat(),
                ensure_aware(expires_at).isoformat(),
            )
        )
        return hmac.new(
            self.settings.signing_key, message.encode(), hashlib.sha256
        ).hexdigest()

    def verify(self, overlay: ImpersonationOverlay) -> bool:
        expected = self._token(
            overlay.impersonator_id,
            overlay.target_id,
            overlay.started_at,
            overlay.expires_at,
        )
        return hmac.compare_digest(expected, overlay.token or "")

    def begin(self, ctx: RequestContext, target_id: str) -> ImpersonationOverlay:
        actor = ctx.principal
        if actor is None:
            raise ForbiddenError("authentication required")
        if ctx.session.impersonation is not None:
            raise ConflictError(
                "an impersonation session is already active",
                error_code="IMPERSONATION_ACTIVE",
            )
        if not actor.has_role(Role.ADMIN):
            raise ForbiddenError("only administrators may impersonate")
        if actor.id == target_id:
            raise ValidationError("cannot impersonate yourself")
        if self.settings.impersonation_require_two_factor and not actor.has_confirmed_two_factor():
            raise ForbiddenError(
                "two-factor authentication is required to impersonate",
                error_code="TWO_FACTOR_REQUIRED",
            )
        target = self.store.get_principal(target_id)
        if target is None:
            raise NotFoundError("principal not found")
        protected = {r.value for r in target.roles()} & self.settings.impersonation_protected_role_set
        if protected:
            raise ForbiddenError(
                "this principal cannot be impersonated",
                detail={"roles": sorted(protected)},
            )
        if target.status != AccountStatus.ACTIVE:
            raise ForbiddenError("only active accounts can be impersonated")

        started_at = ctx.now
        expires_at = started_at + timedelta(minutes=self.settings.impersonation_ttl_minutes)
        overlay = ImpersonationOverlay(
            impersonator_id=actor.id,
            target_id=target.id,
            started_at=started_at,
            expires_at=expires_at,
            token=self._token(actor.id, target.id, started_at, expires_at),
        )
        session = self.sessions.regenerate(ctx.session)
        session.critical = CriticalSessionFields(
            login_id=target.id, password_hash=target.password_hash
        )
        session.impersonation = overlay
        self.sessions.register_login(session, actor.id)
        ctx.session = session
        ctx.principal = target
        self.audit.event(
            "impersonation_started",
            principal_id=actor.id,
            session_id=session.id,
            ip=ctx.ip,
            route=ctx.path,
            timestamp=ctx.now,
            target_id=target.id,
            expires_at=overlay.expires_at.isoformat(),
        )
        return overlay

    def terminate(self, ctx: RequestContext, *, reason: str) -> Optional[Principal]:
        """Restore the administrator identity; returns the admin, or None if gone.

        Raises StoreUnavailableError when the administrator cannot be loaded.
        """
        overlay = ctx.session.impersonation
        if overlay is None:
            return None
        admin = self.store.get_principal(overlay.impersonator_id)
        self.audit.event(
            "impersonation_ended",
            principal_id=overlay.impersonator_id,
            session_id=ctx.session.id,
            ip=ctx.ip,
            route=ctx.path,
            timestamp=ctx.now,
            target_id=overlay.target_id,
            reason=reason,
        )
        session = self.sessions.regenerate(ctx.session)
        session.impersonation = None
        if admin is None:
            session.critical = CriticalSessionFields()
            session.integrity_signature = None
            ctx.session = session
            ctx.principal = None
            return None
        session.critical = CriticalSessionFields(
            login_id=admin.id, password_hash=admin.password_hash
        )
        if self.settings.session_integrity_enabled:
            # Callers early in the pipeline finish before the integrity stage re-signs
            session.integrity_signature = sign_critical_fields(
                session.critical, self.settings.signing_key
            )
        self.sessions.register_login(session, admin.id)
        ctx.session = session
        ctx.principal = admin
        return admin


class ImpersonationGuard(PipelineStage):
    """Expire impersonation overlays and keep impersonated views out of caches."""

    name = "impersonation"

    def __init__(self, settings: Settings, service: ImpersonationService) -> None:
        self.settings = settings
        self.service = service

    async def process(self, ctx: RequestContext) -> Outcome:
        overlay = ctx.session.impersonation
        if overlay is None:
            return Outcome.proceed()

        tampered = not self.service.verify(overlay)
        expired = ensure_aware(ctx.now) >= ensure_aware(overlay.expires_at)
        if not tampered and not expired:
            ctx.response_headers.update(NO_STORE_HEADERS)
            return Outcome.proceed()

        if tampered:
            logger.warning("impersonation_token_invalid", target_id=overlay.target_id)
        denial = Denial(
            440,
            "IMPERSONATION_EXPIRED",
            "Your impersonation session has expired.",
            redirect_to=self.settings.admin_home_url,
            flash_level="warning",
            headers=dict(NO_STORE_HEADERS),
        )
        try:
            admin = self.service.terminate(
                ctx, reason="tampered" if tampered else "expired"
            )
        except StoreUnavailableError as exc:
            logger.error("impersonation_restore_failed", error=str(exc))
            admin = None
        if admin is None:
            # Without an administrator to return to, drop the login entirely
            denial.redirect_to = self.settings.login_url
            denial.invalidate_session = True
        return Outcome.terminal(denial)
