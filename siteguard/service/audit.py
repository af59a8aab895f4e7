from __future__ import annotations

import hashlib
import hmac
from datetime import datetime
from typing import Any, Optional

from siteguard.logging import get_logger
from siteguard.storage.models import utcnow

logger = get_logger(__name__)


def hash_identity(value: str, key: bytes) -> str:
    """Keyed SHA-256 of an identity value so raw emails never reach logs or counters."""
    normalized = value.strip().lower().encode()
    return hmac.new(key, normalized, hashlib.sha256).hexdigest()


def hash_session_id(session_id: Optional[str]) -> Optional[str]:
    if not session_id:
        return None
    return hashlib.sha256(session_id.encode()).hexdigest()[:16]


class SecurityAuditLog:
    """Append-only sink for security-relevant events.

    Events are emitted through structlog under the ``security.*`` namespace.
    Recording an event never raises: a broken sink must not turn a security
    decision into a server error.
    """

    def __init__(self, key: bytes, *, log=None) -> None:
        self._key = key
        self._log = log or logger

    def event(
        self,
        kind: str,
        *,
        principal_id: Optional[str] = None,
        session_id: Optional[str] = None,
        ip: Optional[str] = None,
        route: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        **context: Any,
    ) -> None:
        try:
            self._log.warning(
                f"security.{kind}",
                principal_id=principal_id,
                session_id_hash=hash_session_id(session_id),
                ip=ip,
                route=route,
                timestamp=(timestamp or utcnow()).isoformat(),
                **context,
            )
        except Exception as exc:  # noqa: BLE001
            try:
                logger.error("security_audit_failed", kind=kind, error=str(exc))
            except Exception:  # noqa: BLE001
                pass

    def violation(self, kind: str, **fields: Any) -> None:
        self.event("violation", violation=kind, **fields)

    def failed_login(self, email: str, *, reason: str, **fields: Any) -> None:
        self.event(
            "failed_login",
            email_hash=hash_identity(email, self._key),
            reason=reason,
            **fields,
        )

    def successful_login(self, **fields: Any) -> None:
        self.event("successful_login", **fields)

    def logout(self, *, reason: str = "user", **fields: Any) -> None:
        self.event("logout", reason=reason, **fields)

    def suspicious(self, description: str, **fields: Any) -> None:
        self.event("suspicious_activity", description=description, **fields)

    def admin_action(self, action: str, *, status_code: int, **fields: Any) -> None:
        self.event("admin_action", action=action, status_code=status_code, **fields)
