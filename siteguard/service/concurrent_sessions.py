from __future__ import annotations

from typing import List

from siteguard.config import Settings
from siteguard.logging import get_logger
from siteguard.service.audit import SecurityAuditLog
from siteguard.service.pipeline import Denial, Outcome, PipelineStage, RequestContext
from siteguard.service.sessions import SessionStore
from siteguard.storage.errors import StoreUnavailableError
from siteguard.storage.models import Principal

logger = get_logger(__name__)


class ConcurrentSessionEnforcer(PipelineStage):
    """Log out sessions whose canonical login row has been evicted.

    A login elsewhere (or an explicit "log out other devices") removes the
    row; the session record itself survives so this request can be told
    apart from an ordinary timeout.
    """

    name = "concurrent_sessions"

    def __init__(
        self, settings: Settings, store: SessionStore, audit: SecurityAuditLog
    ) -> None:
        self.settings = settings
        self.store = store
        self.audit = audit

    async def process(self, ctx: RequestContext) -> Outcome:
        if ctx.principal is None:
            return Outcome.proceed()
        owner_id = ctx.session.owner_id
        if owner_id is None:
            return Outcome.proceed()
        try:
            exists = self.store.session_row_exists(ctx.session.id, owner_id)
        except StoreUnavailableError as exc:
            logger.warning("session_row_lookup_failed", error=str(exc))
            return Outcome.proceed()
        if exists:
            return Outcome.proceed()
        self.audit.event(
            "session_superseded",
            principal_id=owner_id,
            session_id=ctx.session.id,
            ip=ctx.ip,
            route=ctx.path,
            timestamp=ctx.now,
        )
        return Outcome.terminal(
            Denial(
                419,
                "SESSION_SUPERSEDED",
                "You have been logged out because of a new login elsewhere.",
                redirect_to=self.settings.login_url,
                flash_level="warning",
                invalidate_session=True,
            )
        )

    def limit_for(self, principal: Principal) -> int:
        """Largest session allowance among the principal's roles."""
        overrides = self.settings.role_session_limits
        limits = [overrides[r.value] for r in principal.roles() if r.value in overrides]
        return max(limits) if limits else self.settings.max_concurrent_sessions

    def enforce_limit(self, principal: Principal, current_session_id: str) -> List[str]:
        """Evict the oldest login rows beyond the principal's allowance."""
        rows = self.store.list_session_rows(principal.id)
        allowed = self.limit_for(principal)
        others = [r for r in rows if r.session_id != current_session_id]
        keep = max(0, allowed - 1)
        excess = others[: max(0, len(others) - keep)]
        for row in excess:
            self.store.delete_session_row(row.session_id)
        evicted = [row.session_id for row in excess]
        if evicted:
            logger.info(
                "sessions_evicted",
                principal_id=principal.id,
                evicted=len(evicted),
                allowed=allowed,
            )
        return evicted
