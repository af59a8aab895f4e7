from __future__ import annotations

import copy
import json
import os
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from siteguard.logging import get_logger
from siteguard.storage.common import (
    UPDATABLE_PRINCIPAL_FIELDS,
    SecretCipher,
    deserialize_appeal,
    deserialize_principal,
    deserialize_session,
    deserialize_session_row,
    serialize_appeal,
    serialize_principal,
    serialize_session,
    serialize_session_row,
)
from siteguard.storage.errors import ConstraintViolation
from siteguard.storage.models import (
    AccountStatus,
    Appeal,
    BanRecord,
    Principal,
    Role,
    SessionRecord,
    SessionRow,
    ensure_aware,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for principals, sessions, and appeals.

    Every read returns a copy so request-scoped code never shares mutable
    state with other requests. When ``fs_root`` is given the state is also
    written to ``fs_root/state/memory_store.json`` after each mutation.
    """

    def __init__(
        self, fs_root: Optional[str] = None, *, encryption_key: Optional[str] = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        self.session_rows: Dict[str, SessionRow] = {}
        self.appeals: Dict[str, Appeal] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        key_material = (
            encryption_key
            or os.getenv("TWO_FACTOR_ENCRYPTION_KEY")
            or os.getenv("APP_KEY")
        )
        self._cipher = SecretCipher(key_material or "")
        if self.fs_root is not None:
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # principals
    def _public_principal(self, stored: Principal) -> Principal:
        clone = copy.deepcopy(stored)
        clone.two_factor_secret = self._cipher.decrypt(stored.two_factor_secret)
        return clone

    def create_principal(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        roles: Optional[Iterable[Role | str]] = None,
        status: AccountStatus = AccountStatus.ACTIVE,
        name: Optional[str] = None,
        password_changed_at: Optional[datetime] = None,
    ) -> Principal:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(p.email == normalized for p in self.principals.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                password_hash=password_hash,
                assigned_roles={Role(r) for r in (roles or [Role.USER])},
                status=AccountStatus(status),
                password_changed_at=password_changed_at
                or (utcnow() if password_hash else None),
            )
            self.principals[principal.id] = principal
            self._persist_state()
            return self._public_principal(principal)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            stored = self.principals.get(principal_id)
            return self._public_principal(stored) if stored else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        normalized = email.strip().lower()
        with self._data_lock:
            stored = next(
                (p for p in self.principals.values() if p.email == normalized), None
            )
            return self._public_principal(stored) if stored else None

    def list_principals(self, limit: int = 100) -> List[Principal]:
        with self._data_lock:
            ordered = sorted(self.principals.values(), key=lambda p: p.created_at)
            return [self._public_principal(p) for p in ordered[:limit]]

    def update_principal(self, principal_id: str, **changes) -> Optional[Principal]:
        unknown = set(changes) - UPDATABLE_PRINCIPAL_FIELDS
        if unknown:
            raise ValueError(f"unsupported principal fields: {sorted(unknown)}")
        with self._data_lock:
            stored = self.principals.get(principal_id)
            if not stored:
                return None
            if "assigned_roles" in changes:
                changes["assigned_roles"] = {Role(r) for r in changes["assigned_roles"]}
            if "status" in changes:
                changes["status"] = AccountStatus(changes["status"])
            updated = replace(stored, **changes)
            self.principals[principal_id] = updated
            self._persist_state()
            return self._public_principal(updated)

    def set_ban(self, principal_id: str, ban: Optional[BanRecord]) -> Optional[Principal]:
        with self._data_lock:
            stored = self.principals.get(principal_id)
            if not stored:
                return None
            stored.ban = copy.deepcopy(ban)
            if ban is not None:
                stored.status = AccountStatus.BANNED
            elif stored.status == AccountStatus.BANNED:
                stored.status = AccountStatus.ACTIVE
            self._persist_state()
            return self._public_principal(stored)

    def set_ml_block(
        self, principal_id: str, reason: Optional[str]
    ) -> Optional[Principal]:
        with self._data_lock:
            stored = self.principals.get(principal_id)
            if not stored:
                return None
            stored.ml_blocked = reason is not None
            stored.ml_blocked_reason = reason
            stored.ml_blocked_at = utcnow() if reason is not None else None
            self._persist_state()
            return self._public_principal(stored)

    def set_two_factor_secret(
        self,
        principal_id: str,
        secret: Optional[str],
        *,
        confirmed_at: Optional[datetime] = None,
    ) -> Optional[Principal]:
        with self._data_lock:
            stored = self.principals.get(principal_id)
            if not stored:
                raise ConstraintViolation(
                    "principal not found for two-factor", {"principal_id": principal_id}
                )
            stored.two_factor_secret = self._cipher.encrypt(secret)
            stored.two_factor_confirmed_at = confirmed_at if secret else None
            self._persist_state()
            return self._public_principal(stored)

    # appeals
    def has_open_appeal(self, principal_id: str) -> bool:
        with self._data_lock:
            return any(
                a.principal_id == principal_id and a.status == "open"
                for a in self.appeals.values()
            )

    def create_appeal(self, principal_id: str, message: str) -> Appeal:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal not found for appeal", {"principal_id": principal_id}
                )
            appeal = Appeal.new(principal_id, message)
            self.appeals[appeal.id] = appeal
            self._persist_state()
            return copy.deepcopy(appeal)

    # session records
    def read_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            record = self.sessions.get(session_id)
            return copy.deepcopy(record) if record else None

    def write_session(self, record: SessionRecord) -> None:
        with self._data_lock:
            stored = copy.deepcopy(record)
            existing = self.sessions.get(record.id)
            # A slower concurrent request must not roll activity back
            if (
                existing is not None
                and existing.last_activity_at is not None
                and stored.last_activity_at is not None
                and ensure_aware(existing.last_activity_at)
                > ensure_aware(stored.last_activity_at)
            ):
                stored.last_activity_at = existing.last_activity_at
            self.sessions[record.id] = stored
            self._persist_state()

    def delete_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)
            self.session_rows.pop(session_id, None)
            self._persist_state()

    def delete_idle_sessions(self, cutoff: datetime) -> int:
        """Drop records last active (or, if never active, created) before ``cutoff``."""
        cutoff = ensure_aware(cutoff)
        with self._data_lock:
            stale = [
                sid
                for sid, record in self.sessions.items()
                if ensure_aware(record.last_activity_at or record.created_at) < cutoff
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
                self.session_rows.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def touch_session(self, session_id: str, at: datetime) -> Optional[datetime]:
        """Advance last activity without ever moving it backwards."""
        with self._data_lock:
            record = self.sessions.get(session_id)
            if not record:
                return None
            current = record.last_activity_at
            if current is None or ensure_aware(at) > ensure_aware(current):
                record.last_activity_at = at
                self._persist_state()
            return record.last_activity_at

    # canonical login rows
    def register_session_row(self, row: SessionRow) -> None:
        with self._data_lock:
            if row.principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal does not exist", {"principal_id": row.principal_id}
                )
            self.session_rows[row.session_id] = copy.deepcopy(row)
            self._persist_state()

    def session_row_exists(self, session_id: str, principal_id: str) -> bool:
        with self._data_lock:
            row = self.session_rows.get(session_id)
            return bool(row and row.principal_id == principal_id)

    def list_session_rows(self, principal_id: str) -> List[SessionRow]:
        with self._data_lock:
            rows = [
                copy.deepcopy(r)
                for r in self.session_rows.values()
                if r.principal_id == principal_id
            ]
            return sorted(rows, key=lambda r: r.created_at)

    def delete_session_row(self, session_id: str) -> None:
        with self._data_lock:
            if self.session_rows.pop(session_id, None) is not None:
                self._persist_state()

    def delete_session_rows(
        self, principal_id: str, except_session_id: Optional[str] = None
    ) -> List[str]:
        with self._data_lock:
            stale = [
                sid
                for sid, row in self.session_rows.items()
                if row.principal_id == principal_id and sid != except_session_id
            ]
            for sid in stale:
                self.session_rows.pop(sid, None)
            if stale:
                self._persist_state()
            return stale

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "principals": [serialize_principal(p) for p in self.principals.values()],
            "sessions": [serialize_session(s) for s in self.sessions.values()],
            "session_rows": [
                serialize_session_row(r) for r in self.session_rows.values()
            ],
            "appeals": [serialize_appeal(a) for a in self.appeals.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: deserialize_principal(p) for p in data.get("principals", [])
        }
        self.sessions = {
            s["id"]: deserialize_session(s) for s in data.get("sessions", [])
        }
        self.session_rows = {
            r["session_id"]: deserialize_session_row(r)
            for r in data.get("session_rows", [])
        }
        self.appeals = {a["id"]: deserialize_appeal(a) for a in data.get("appeals", [])}
        self.logger.info(
            "memory_store_loaded",
            principals=len(self.principals),
            sessions=len(self.sessions),
        )
        return True
