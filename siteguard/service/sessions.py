from __future__ import annotations

import hashlib
import secrets
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Tuple

from siteguard.logging import get_logger
from siteguard.storage.errors import StoreUnavailableError
from siteguard.storage.models import SessionRecord, SessionRow, ensure_aware, utcnow

logger = get_logger(__name__)

FLASH_KEY = "_flash"


class SessionStore(Protocol):
    def read_session(self, session_id: str) -> Optional[SessionRecord]: ...

    def write_session(self, record: SessionRecord) -> None: ...

    def delete_session(self, session_id: str) -> None: ...

    def touch_session(self, session_id: str, at: datetime) -> Optional[datetime]: ...

    def register_session_row(self, row: SessionRow) -> None: ...

    def session_row_exists(self, session_id: str, principal_id: str) -> bool: ...

    def list_session_rows(self, principal_id: str) -> List[SessionRow]: ...

    def delete_session_row(self, session_id: str) -> None: ...

    def delete_session_rows(
        self, principal_id: str, except_session_id: Optional[str] = None
    ) -> List[str]: ...

    def delete_idle_sessions(self, cutoff: datetime) -> int: ...


class SessionService:
    """Load, persist, rotate and destroy server-side session records."""

    def __init__(
        self,
        store: SessionStore,
        *,
        max_idle: Optional[timedelta] = None,
        sweep_interval: Optional[timedelta] = None,
    ) -> None:
        self.store = store
        self.max_idle = max_idle
        self.sweep_interval = sweep_interval
        self._last_sweep = utcnow()

    def load(self, session_id: Optional[str]) -> Optional[SessionRecord]:
        if not session_id:
            return None
        return self.store.read_session(session_id)

    def start_guest(
        self, ip_addr: Optional[str] = None, user_agent: Optional[str] = None
    ) -> SessionRecord:
        return SessionRecord.new(ip_addr=ip_addr, user_agent=user_agent)

    def save(self, record: SessionRecord) -> None:
        try:
            self.store.write_session(record)
        except StoreUnavailableError:
            raise
        except (OSError, RuntimeError) as exc:
            raise StoreUnavailableError("write_session", exc) from exc

    def regenerate(self, record: SessionRecord) -> SessionRecord:
        """Move the session to a fresh id and CSRF token, keeping its contents."""
        rotated = replace(
            record,
            id=secrets.token_urlsafe(32),
            csrf_token=secrets.token_urlsafe(32),
            data=dict(record.data),
        )
        self._discard(record.id)
        return rotated

    def invalidate(self, record: SessionRecord) -> SessionRecord:
        """Destroy the record and its login row; return a fresh guest session."""
        self._discard(record.id)
        return self.start_guest(record.ip_addr, record.user_agent)

    def _discard(self, session_id: str) -> None:
        try:
            self.store.delete_session(session_id)
        except StoreUnavailableError as exc:
            # The caller already moved to a new id, so the old one is unreachable
            logger.error("session_delete_failed", error=str(exc))

    def register_login(self, record: SessionRecord, principal_id: str) -> SessionRow:
        """Create the canonical login row that backs ``record``."""
        row = SessionRow(
            session_id=record.id,
            principal_id=principal_id,
            ip_addr=record.ip_addr,
            user_agent_hash=(
                hashlib.sha256(record.user_agent.encode()).hexdigest()
                if record.user_agent
                else None
            ),
        )
        self.store.register_session_row(row)
        return row

    def logins_for(
        self, principal_id: str
    ) -> List[Tuple[SessionRow, Optional[datetime]]]:
        """The principal's login rows, oldest first, with each record's last activity."""
        logins = []
        for row in self.store.list_session_rows(principal_id):
            record = self.store.read_session(row.session_id)
            logins.append((row, record.last_activity_at if record else None))
        return logins

    # Revocation drops only the login row. The record stays behind so the
    # revoked device is told it was logged out from elsewhere.
    def revoke(self, principal_id: str, session_id: str) -> bool:
        """End one of ``principal_id``'s logins; False if it is not theirs."""
        if not self.store.session_row_exists(session_id, principal_id):
            return False
        self.store.delete_session_row(session_id)
        return True

    def revoke_others(self, principal_id: str, keep_session_id: str) -> List[str]:
        return self.store.delete_session_rows(
            principal_id, except_session_id=keep_session_id
        )

    def touch(self, record: SessionRecord, at: datetime) -> None:
        stored = self.store.touch_session(record.id, at)
        record.last_activity_at = stored or at

    def flash(self, record: SessionRecord, level: str, message: str) -> None:
        record.data[FLASH_KEY] = {"level": level, "message": message}

    def pull_flash(self, record: SessionRecord) -> Optional[Dict[str, Any]]:
        return record.data.pop(FLASH_KEY, None)

    def is_disposable(self, record: SessionRecord, cookie: Optional[str]) -> bool:
        """True for a guest session created by this request that holds nothing.

        Such records are neither stored nor sent as cookies.
        """
        return (
            record.id != cookie
            and not record.critical.is_authenticated
            and record.impersonation is None
            and not record.data
        )

    def sweep(self, now: datetime) -> int:
        """Delete records idle for longer than any login may stay idle."""
        if self.max_idle is None:
            return 0
        removed = self.store.delete_idle_sessions(ensure_aware(now) - self.max_idle)
        if removed:
            logger.info("idle_sessions_swept", removed=removed)
        return removed

    def maybe_sweep(self, now: datetime) -> int:
        """Run :meth:`sweep` once the sweep interval has elapsed since the last run."""
        if not self.sweep_interval or self.max_idle is None:
            return 0
        if ensure_aware(now) - ensure_aware(self._last_sweep) < self.sweep_interval:
            return 0
        self._last_sweep = now
        try:
            return self.sweep(now)
        except (StoreUnavailableError, OSError, RuntimeError) as exc:
            logger.warning("session_sweep_failed", error=str(exc))
            return 0
