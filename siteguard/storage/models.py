from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive timestamps from older records as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Role(str, Enum):
    ADMIN = "admin"
    EDITOR = "editor"
    MODERATOR = "moderator"
    USER = "user"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    SUSPENDED = "suspended"
    BANNED = "banned"


@dataclass
class BanRecord:
    reason: str
    banned_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    permanent: bool = False
    irrevocable: bool = False

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if self.permanent or self.expires_at is None:
            return True
        return ensure_aware(now or utcnow()) < ensure_aware(self.expires_at)

    def public_view(self) -> Dict[str, Any]:
        """Ban metadata safe to show to the banned principal."""
        return {
            "reason": self.reason,
            "banned_at": self.banned_at.isoformat(),
            "expires_at": (
                "permanent"
                if self.permanent or self.expires_at is None
                else self.expires_at.isoformat()
            ),
            "permanent": self.permanent or self.expires_at is None,
        }


@dataclass
class Principal:
    id: str
    email: str
    password_hash: Optional[str] = None
    assigned_roles: Set[Role] = field(default_factory=lambda: {Role.USER})
    status: AccountStatus = AccountStatus.ACTIVE
    ban: Optional[BanRecord] = None
    # Anomaly-detection block, independent of manual bans
    ml_blocked: bool = False
    ml_blocked_reason: Optional[str] = None
    ml_blocked_at: Optional[datetime] = None
    two_factor_secret: Optional[str] = None
    two_factor_confirmed_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    name: Optional[str] = None

    def roles(self) -> Set[Role]:
        return set(self.assigned_roles)

    def has_role(self, *roles: Role | str) -> bool:
        wanted = {Role(r) for r in roles}
        return bool(self.roles() & wanted)

    def has_confirmed_two_factor(self) -> bool:
        return bool(self.two_factor_secret and self.two_factor_confirmed_at)


@dataclass(frozen=True)
class CriticalSessionFields:
    """The signature-protected part of a session: who the session belongs to.

    Only the authentication flow may replace these values.
    """

    login_id: Optional[str] = None
    password_hash: Optional[str] = None

    def signing_payload(self) -> Dict[str, Optional[str]]:
        return {"login_id": self.login_id, "password_hash": self.password_hash}

    @property
    def is_authenticated(self) -> bool:
        return self.login_id is not None


@dataclass
class ImpersonationOverlay:
    impersonator_id: str
    target_id: str
    started_at: datetime
    expires_at: datetime
    token: str

    def remaining(self, now: datetime) -> timedelta:
        return ensure_aware(self.expires_at) - ensure_aware(now)


@dataclass
class SessionRecord:
    id: str
    created_at: datetime
    critical: CriticalSessionFields = field(default_factory=CriticalSessionFields)
    # Non-critical bag: flash messages, UI state, in-flight 2FA challenge
    data: Dict[str, Any] = field(default_factory=dict)
    integrity_signature: Optional[str] = None
    csrf_token: str = field(default_factory=lambda: secrets.token_urlsafe(32))
    last_activity_at: Optional[datetime] = None
    impersonation: Optional[ImpersonationOverlay] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls, *, ip_addr: str | None = None, user_agent: str | None = None
    ) -> "SessionRecord":
        return cls(
            id=secrets.token_urlsafe(32),
            created_at=utcnow(),
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    @property
    def owner_id(self) -> Optional[str]:
        """Principal that owns the canonical session row.

        During impersonation the row belongs to the administrator, not to the
        impersonated principal.
        """
        if self.impersonation is not None:
            return self.impersonation.impersonator_id
        return self.critical.login_id


@dataclass
class SessionRow:
    """Canonical per-login row; its absence means the session was superseded."""

    session_id: str
    principal_id: str
    created_at: datetime = field(default_factory=utcnow)
    ip_addr: Optional[str] = None
    user_agent_hash: Optional[str] = None


@dataclass
class Appeal:
    id: str
    principal_id: str
    message: str
    status: str = "open"
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, principal_id: str, message: str) -> "Appeal":
        return cls(id=str(uuid.uuid4()), principal_id=principal_id, message=message)
