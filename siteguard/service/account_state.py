from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Optional

from siteguard.config import Settings
from siteguard.logging import get_logger
from siteguard.service.appeals import AppealLinkService
from siteguard.service.audit import SecurityAuditLog
from siteguard.service.impersonation import NO_STORE_HEADERS, ImpersonationService
from siteguard.service.pipeline import Denial, Outcome, PipelineStage, RequestContext
from siteguard.storage.errors import StoreUnavailableError
from siteguard.storage.models import AccountStatus, Principal, ensure_aware

logger = get_logger(__name__)


class AccountStateGate(PipelineStage):
    """Deny requests from principals whose account is not in good standing.

    Manual bans and anomaly-detection blocks are independent facets: a
    principal may carry either, both, or neither.
    """

    name = "account_state"

    def __init__(
        self,
        settings: Settings,
        appeals: AppealLinkService,
        audit: SecurityAuditLog,
        impersonation: Optional[ImpersonationService] = None,
    ) -> None:
        self.settings = settings
        self.appeals = appeals
        self.audit = audit
        self.impersonation = impersonation

    async def process(self, ctx: RequestContext) -> Outcome:
        principal = ctx.principal
        if principal is None:
            return Outcome.proceed()
        if ctx.session.impersonation is not None and self.impersonation is not None:
            return self._check_impersonated(ctx, principal)
        denial = self.evaluate(principal, ctx.now)
        if denial is None:
            return Outcome.proceed()
        if denial.invalidate_session:
            self.audit.event(
                "account_blocked",
                principal_id=principal.id,
                session_id=ctx.session.id,
                ip=ctx.ip,
                route=ctx.path,
                timestamp=ctx.now,
                code=denial.code,
            )
        return Outcome.terminal(denial)

    def _check_impersonated(self, ctx: RequestContext, target: Principal) -> Outcome:
        """End the overlay when its target is blocked; the admin's login survives.

        The target's ban details and appeal link belong to the target, so the
        administrator only learns that the view was closed.
        """
        blocked = self.evaluate(target, ctx.now, offer_appeal=False)
        if blocked is None:
            return Outcome.proceed()
        overlay = ctx.session.impersonation
        self.audit.event(
            "impersonation_target_blocked",
            principal_id=overlay.impersonator_id,
            session_id=ctx.session.id,
            ip=ctx.ip,
            route=ctx.path,
            timestamp=ctx.now,
            target_id=target.id,
            code=blocked.code,
        )
        denial = Denial(
            403,
            "IMPERSONATION_TARGET_BLOCKED",
            "The impersonated account is no longer active.",
            redirect_to=self.settings.admin_home_url,
            flash_level="warning",
            headers=dict(NO_STORE_HEADERS),
        )
        try:
            admin = self.impersonation.terminate(ctx, reason="target_blocked")
        except StoreUnavailableError as exc:
            logger.error("impersonation_restore_failed", error=str(exc))
            admin = None
        if admin is None:
            denial.redirect_to = self.settings.login_url
            denial.invalidate_session = True
            return Outcome.terminal(denial)
        own = self.evaluate(admin, ctx.now)
        return Outcome.terminal(own or denial)

    def evaluate(
        self, principal: Principal, now: datetime, *, offer_appeal: bool = True
    ) -> Optional[Denial]:
        """Return the denial for this principal's account state, if any.

        ``offer_appeal=False`` skips the appeal lookup; use it when the caller
        is not the principal the denial describes.
        """
        login_url = self.settings.login_url
        if principal.status == AccountStatus.PENDING:
            return Denial(
                403,
                "ACCOUNT_PENDING",
                "Your account is awaiting approval.",
                redirect_to=login_url,
                invalidate_session=True,
            )
        if principal.status == AccountStatus.SUSPENDED:
            return Denial(
                403,
                "ACCOUNT_SUSPENDED",
                "Your account has been suspended. Please contact support.",
                redirect_to=login_url,
                invalidate_session=True,
            )
        if principal.status == AccountStatus.BANNED and (
            principal.ban is None or principal.ban.is_active(now)
        ):
            return self._banned(principal, now, offer_appeal=offer_appeal)
        if principal.ml_blocked:
            return Denial(
                403,
                "ACCOUNT_ML_BLOCKED",
                "Your account has been blocked due to suspicious activity.",
                extras={
                    "block": {
                        "reason": principal.ml_blocked_reason,
                        "blocked_at": (
                            principal.ml_blocked_at.isoformat()
                            if principal.ml_blocked_at
                            else None
                        ),
                    }
                },
                redirect_to=login_url,
                invalidate_session=True,
            )
        return None

    def _banned(
        self, principal: Principal, now: datetime, *, offer_appeal: bool = True
    ) -> Denial:
        if not offer_appeal:
            return Denial(
                403,
                "ACCOUNT_BANNED",
                "Your account has been banned.",
                redirect_to=self.settings.login_url,
                invalidate_session=True,
            )
        try:
            appeal = self.appeals.offer(principal, now)
        except StoreUnavailableError as exc:
            # Eligibility cannot be established; deny without touching the session
            logger.error("ban_lookup_failed", principal_id=principal.id, error=str(exc))
            return Denial(
                503,
                "SERVICE_UNAVAILABLE",
                "Account verification is temporarily unavailable.",
            )
        extras = {"ban": principal.ban.public_view() if principal.ban else None}
        if appeal is not None:
            extras["appeal"] = appeal
        return Denial(
            403,
            "ACCOUNT_BANNED",
            "Your account has been banned.",
            extras=extras,
            redirect_to=self.settings.login_url,
            invalidate_session=True,
        )


class PasswordExpiryGate(PipelineStage):
    """Force a password change once the credential is older than the maximum age."""

    name = "password_expiry"

    def __init__(self, settings: Settings, exempt_paths: Iterable[str] = ()) -> None:
        self.settings = settings
        self.exempt_paths = {
            settings.password_change_url,
            settings.login_url,
            *exempt_paths,
        }

    def is_expired(self, principal: Principal, now: datetime) -> bool:
        max_age = self.settings.password_max_age_days
        if max_age <= 0 or not principal.password_hash:
            return False
        if principal.password_changed_at is None:
            return False
        age = ensure_aware(now) - ensure_aware(principal.password_changed_at)
        return age >= timedelta(days=max_age)

    async def process(self, ctx: RequestContext) -> Outcome:
        principal = ctx.principal
        if principal is None or ctx.session.impersonation is not None:
            return Outcome.proceed()
        if ctx.path in self.exempt_paths:
            return Outcome.proceed()
        if not self.is_expired(principal, ctx.now):
            return Outcome.proceed()
        return Outcome.terminal(
            Denial(
                403,
                "PASSWORD_EXPIRED",
                "Your password has expired. Please choose a new one.",
                redirect_to=self.settings.password_change_url,
                flash_level="warning",
            )
        )
