"""Explicit, ordered security pipeline executed once per request.

Each stage implements :class:`PipelineStage` and returns an :class:`Outcome`.
A terminal outcome carries a :class:`Denial` describing the response the
caller receives; the remaining stages and the route handler do not run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from siteguard.logging import get_logger
from siteguard.service.audit import SecurityAuditLog
from siteguard.service.sessions import SessionService
from siteguard.storage.models import Principal, SessionRecord, utcnow

logger = get_logger(__name__)


@dataclass
class Denial:
    status_code: int
    code: str
    message: str
    extras: Dict[str, Any] = field(default_factory=dict)
    redirect_to: Optional[str] = None
    flash_level: str = "error"
    headers: Dict[str, str] = field(default_factory=dict)
    invalidate_session: bool = False


@dataclass
class Outcome:
    denial: Optional[Denial] = None

    @property
    def is_terminal(self) -> bool:
        return self.denial is not None

    @classmethod
    def proceed(cls) -> "Outcome":
        return cls()

    @classmethod
    def terminal(cls, denial: Denial) -> "Outcome":
        return cls(denial=denial)


@dataclass
class RequestContext:
    path: str
    method: str
    session: SessionRecord
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    expects_json: bool = False
    session_cookie: Optional[str] = None
    csrf_header: Optional[str] = None
    principal: Optional[Principal] = None
    now: datetime = field(default_factory=utcnow)
    response_headers: Dict[str, str] = field(default_factory=dict)
    completed: List[str] = field(default_factory=list)
    session_destroyed: bool = False
    two_factor_challenge: Optional[Any] = None

    @property
    def is_authenticated(self) -> bool:
        return self.principal is not None

    @property
    def is_safe_method(self) -> bool:
        return self.method.upper() in {"GET", "HEAD", "OPTIONS"}


class PipelineStage:
    """Capability interface shared by every security stage."""

    name = "stage"

    async def process(self, ctx: RequestContext) -> Outcome:
        raise NotImplementedError

    async def after_response(self, ctx: RequestContext) -> None:
        return None


class SecurityPipeline:
    def __init__(
        self,
        stages: Sequence[PipelineStage],
        sessions: SessionService,
        audit: SecurityAuditLog,
    ) -> None:
        self.stages = list(stages)
        self.sessions = sessions
        self.audit = audit

    @property
    def order(self) -> List[str]:
        return [stage.name for stage in self.stages]

    async def run(self, ctx: RequestContext) -> Optional[Denial]:
        """Run stages in order; return the first denial, or None to continue."""
        for stage in self.stages:
            outcome = await stage.process(ctx)
            ctx.completed.append(stage.name)
            if outcome.is_terminal:
                logger.info(
                    "pipeline_denied",
                    stage=stage.name,
                    code=outcome.denial.code,
                    status=outcome.denial.status_code,
                    path=ctx.path,
                )
                return outcome.denial
        return None

    def resolve(self, ctx: RequestContext, denial: Denial) -> None:
        """Apply a denial's session side effects before the response is built."""
        if denial.invalidate_session:
            self.invalidate(ctx, reason=denial.code)
        if denial.redirect_to and not ctx.expects_json:
            self.sessions.flash(ctx.session, denial.flash_level, denial.message)

    def invalidate(self, ctx: RequestContext, *, reason: str) -> None:
        previous = ctx.session
        principal_id = ctx.principal.id if ctx.principal else previous.critical.login_id
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

    async def finalize(self, ctx: RequestContext) -> None:
        """Run post-response hooks of the stages that ran, innermost first."""
        by_name = {stage.name: stage for stage in self.stages}
        for name in reversed(ctx.completed):
            await by_name[name].after_response(ctx)
