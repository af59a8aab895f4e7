from __future__ import annotations

from typing import Optional, Protocol

from siteguard.logging import get_logger
from siteguard.service.pipeline import Outcome, PipelineStage, RequestContext
from siteguard.service.sessions import SessionService
from siteguard.storage.errors import StoreUnavailableError
from siteguard.storage.models import Principal

logger = get_logger(__name__)


class PrincipalLookup(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]: ...


class IdentityResolver(PipelineStage):
    """Resolve the session from its cookie and load the logged-in principal.

    Lookup failures degrade to an anonymous request: a missing or unreadable
    session becomes a fresh guest session, and a principal that cannot be
    loaded is treated as "no principal". The principal is always read fresh
    from the store so bans applied concurrently take effect immediately.
    """

    name = "identity"

    def __init__(self, store: PrincipalLookup, sessions: SessionService) -> None:
        self.store = store
        self.sessions = sessions

    async def process(self, ctx: RequestContext) -> Outcome:
        record = None
        if ctx.session_cookie:
            try:
                record = self.sessions.load(ctx.session_cookie)
            except StoreUnavailableError as exc:
                logger.warning("session_lookup_failed", error=str(exc))
        if record is not None:
            ctx.session = record

        login_id = ctx.session.critical.login_id
        if not login_id:
            return Outcome.proceed()
        try:
            ctx.principal = self.store.get_principal(login_id)
        except StoreUnavailableError as exc:
            logger.warning("principal_lookup_failed", error=str(exc))
            ctx.principal = None
        return Outcome.proceed()
