from __future__ import annotations

import hashlib
import hmac
import json

from siteguard.config import Settings
from siteguard.service.audit import SecurityAuditLog
from siteguard.service.pipeline import Denial, Outcome, PipelineStage, RequestContext
from siteguard.storage.models import CriticalSessionFields


def sign_critical_fields(fields: CriticalSessionFields, key: bytes) -> str:
    """HMAC-SHA256 over the key-sorted JSON encoding of the critical fields."""
    encoded = json.dumps(
        fields.signing_payload(), sort_keys=True, separators=(",", ":")
    ).encode()
    return hmac.new(key, encoded, hashlib.sha256).hexdigest()


class SessionIntegrityValidator(PipelineStage):
    """Detect out-of-band changes to the identity-bearing part of a session.

    Only the critical fields are signed, so route handlers may change the
    non-critical ``data`` bag freely. The signature is (re)computed after the
    response is produced and checked before the next request reaches a route.
    """

    name = "integrity"

    def __init__(self, settings: Settings, audit: SecurityAuditLog) -> None:
        self.settings = settings
        self.audit = audit

    def sign(self, fields: CriticalSessionFields) -> str:
        return sign_critical_fields(fields, self.settings.signing_key)

    async def process(self, ctx: RequestContext) -> Outcome:
        if not self.settings.session_integrity_enabled:
            return Outcome.proceed()
        session = ctx.session
        if not session.critical.is_authenticated or not session.integrity_signature:
            return Outcome.proceed()
        expected = self.sign(session.critical)
        if hmac.compare_digest(expected, session.integrity_signature):
            return Outcome.proceed()
        self.audit.violation(
            "session_integrity",
            principal_id=session.critical.login_id,
            session_id=session.id,
            ip=ctx.ip,
            route=ctx.path,
            timestamp=ctx.now,
            user_agent=ctx.user_agent,
        )
        return Outcome.terminal(
            Denial(
                419,
                "SESSION_INTEGRITY_VIOLATION",
                "Your session could not be verified. Please log in again.",
                redirect_to=self.settings.login_url,
                invalidate_session=True,
            )
        )

    async def after_response(self, ctx: RequestContext) -> None:
        if not self.settings.session_integrity_enabled:
            return
        session = ctx.session
        if session.critical.is_authenticated:
            session.integrity_signature = self.sign(session.critical)
        else:
            session.integrity_signature = None
