from __future__ import annotations

import hmac
from typing import Iterable, Optional

from siteguard.service.audit import SecurityAuditLog
from siteguard.service.pipeline import Denial, Outcome, PipelineStage, RequestContext

CSRF_HEADER = "X-CSRF-Token"
CSRF_COOKIE = "XSRF-TOKEN"


class CsrfTokenVerifier(PipelineStage):
    """Require the session's anti-forgery token on state-changing requests."""

    name = "csrf"

    def __init__(
        self, audit: SecurityAuditLog, exempt_paths: Iterable[str] = ()
    ) -> None:
        self.audit = audit
        self.exempt_paths = set(exempt_paths)

    async def process(self, ctx: RequestContext) -> Outcome:
        if ctx.is_safe_method or ctx.principal is None or ctx.path in self.exempt_paths:
            return Outcome.proceed()
        presented: Optional[str] = ctx.csrf_header
        if presented and hmac.compare_digest(
            presented.encode(), ctx.session.csrf_token.encode()
        ):
            return Outcome.proceed()
        self.audit.violation(
            "csrf_token_mismatch",
            principal_id=ctx.principal.id,
            session_id=ctx.session.id,
            ip=ctx.ip,
            route=ctx.path,
            timestamp=ctx.now,
            token_present=bool(presented),
        )
        return Outcome.terminal(
            Denial(
                419,
                "CSRF_TOKEN_MISMATCH",
                "The page has expired. Please refresh and try again.",
            )
        )
