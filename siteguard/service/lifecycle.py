from __future__ import annotations

from datetime import timedelta

from siteguard.config import Settings
from siteguard.logging import get_logger
from siteguard.service.pipeline import Denial, Outcome, PipelineStage, RequestContext
from siteguard.service.sessions import SessionService
from siteguard.storage.errors import StoreUnavailableError
from siteguard.storage.models import Principal, ensure_aware

logger = get_logger(__name__)

EXPIRES_IN_HEADER = "X-Session-Expires-In"


class SessionLifecycleManager(PipelineStage):
    """Enforce the idle timeout and keep the last-activity marker fresh."""

    name = "lifecycle"

    def __init__(self, settings: Settings, sessions: SessionService) -> None:
        self.settings = settings
        self.sessions = sessions

    def timeout_for(self, principal: Principal) -> timedelta:
        privileged = {r.value for r in principal.roles()} & self.settings.privileged_role_set
        minutes = (
            self.settings.privileged_idle_timeout_minutes
            if privileged
            else self.settings.session_idle_timeout_minutes
        )
        return timedelta(minutes=minutes)

    def _timeout_denial(self, threshold: timedelta) -> Denial:
        return Denial(
            401,
            "SESSION_TIMEOUT",
            "Your session has expired due to inactivity. Please log in again.",
            extras={"timeout_minutes": int(threshold.total_seconds() // 60)},
            redirect_to=self.settings.login_url,
            flash_level="warning",
            invalidate_session=True,
        )

    async def process(self, ctx: RequestContext) -> Outcome:
        session = ctx.session
        if ctx.principal is None:
            # A logged-in session whose principal could not be loaded keeps its
            # marker, so the next request still measures idle time from it
            if not session.critical.is_authenticated:
                session.last_activity_at = None
            return Outcome.proceed()

        threshold = self.timeout_for(ctx.principal)
        last_activity = session.last_activity_at
        if last_activity is None:
            # Logins always stamp the marker; a logged-in session without one is stale
            logger.warning("session_activity_missing", principal_id=ctx.principal.id)
            return Outcome.terminal(self._timeout_denial(threshold))

        elapsed = ensure_aware(ctx.now) - ensure_aware(last_activity)
        if elapsed >= threshold:
            return Outcome.terminal(self._timeout_denial(threshold))
        warning = timedelta(minutes=self.settings.session_warning_minutes)
        if warning and elapsed >= threshold - warning:
            remaining = threshold - elapsed
            ctx.response_headers[EXPIRES_IN_HEADER] = str(int(remaining.total_seconds()))

        try:
            self.sessions.touch(session, ctx.now)
        except StoreUnavailableError as exc:
            logger.warning("session_touch_failed", error=str(exc))
            session.last_activity_at = ctx.now
        return Outcome.proceed()
