"""Serialization and encryption helpers shared by the memory and postgres stores."""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from siteguard.logging import get_logger
from siteguard.storage.models import (
    AccountStatus,
    Appeal,
    BanRecord,
    CriticalSessionFields,
    ImpersonationOverlay,
    Principal,
    Role,
    SessionRecord,
    SessionRow,
    ensure_aware,
    utcnow,
)

logger = get_logger(__name__)

UPDATABLE_PRINCIPAL_FIELDS = frozenset(
    {
        "name",
        "email",
        "password_hash",
        "password_changed_at",
        "last_login_at",
        "status",
        "assigned_roles",
    }
)


def serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return ensure_aware(datetime.fromisoformat(raw))


class SecretCipher:
    """Fernet wrapper used to keep two-factor secrets encrypted at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("two-factor encryption key material is required")
        derived = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
        self._fernet = Fernet(derived)

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            # A secret that cannot be decrypted is unusable; treat 2FA as unconfigured
            logger.warning("two_factor_secret_decrypt_failed")
            return None


def serialize_ban(ban: Optional[BanRecord]) -> Optional[Dict[str, Any]]:
    if ban is None:
        return None
    return {
        "reason": ban.reason,
        "banned_at": serialize_datetime(ban.banned_at),
        "expires_at": serialize_datetime(ban.expires_at),
        "permanent": ban.permanent,
        "irrevocable": ban.irrevocable,
    }


def deserialize_ban(data: Optional[Dict[str, Any]]) -> Optional[BanRecord]:
    if not data:
        return None
    return BanRecord(
        reason=data.get("reason", ""),
        banned_at=deserialize_datetime(data.get("banned_at")) or utcnow(),
        expires_at=deserialize_datetime(data.get("expires_at")),
        permanent=bool(data.get("permanent", False)),
        irrevocable=bool(data.get("irrevocable", False)),
    )


def serialize_principal(principal: Principal) -> Dict[str, Any]:
    """Serialize a principal; the two-factor secret is expected to be encrypted already."""
    return {
        "id": principal.id,
        "email": principal.email,
        "name": principal.name,
        "password_hash": principal.password_hash,
        "roles": sorted(role.value for role in principal.roles()),
        "status": principal.status.value,
        "ban": serialize_ban(principal.ban),
        "ml_blocked": principal.ml_blocked,
        "ml_blocked_reason": principal.ml_blocked_reason,
        "ml_blocked_at": serialize_datetime(principal.ml_blocked_at),
        "two_factor_secret": principal.two_factor_secret,
        "two_factor_confirmed_at": serialize_datetime(principal.two_factor_confirmed_at),
        "last_login_at": serialize_datetime(principal.last_login_at),
        "password_changed_at": serialize_datetime(principal.password_changed_at),
        "created_at": serialize_datetime(principal.created_at),
    }


def deserialize_principal(data: Dict[str, Any]) -> Principal:
    return Principal(
        id=str(data["id"]),
        email=data["email"],
        name=data.get("name"),
        password_hash=data.get("password_hash"),
        assigned_roles={Role(r) for r in data.get("roles") or [Role.USER.value]},
        status=AccountStatus(data.get("status", AccountStatus.ACTIVE.value)),
        ban=deserialize_ban(data.get("ban")),
        ml_blocked=bool(data.get("ml_blocked", False)),
        ml_blocked_reason=data.get("ml_blocked_reason"),
        ml_blocked_at=deserialize_datetime(data.get("ml_blocked_at")),
        two_factor_secret=data.get("two_factor_secret"),
        two_factor_confirmed_at=deserialize_datetime(data.get("two_factor_confirmed_at")),
        last_login_at=deserialize_datetime(data.get("last_login_at")),
        password_changed_at=deserialize_datetime(data.get("password_changed_at")),
        created_at=deserialize_datetime(data.get("created_at")) or utcnow(),
    )


def serialize_session(record: SessionRecord) -> Dict[str, Any]:
    overlay = record.impersonation
    return {
        "id": record.id,
        "created_at": serialize_datetime(record.created_at),
        "critical": record.critical.signing_payload(),
        "data": record.data,
        "integrity_signature": record.integrity_signature,
        "csrf_token": record.csrf_token,
        "last_activity_at": serialize_datetime(record.last_activity_at),
        "impersonation": (
            {
                "impersonator_id": overlay.impersonator_id,
                "target_id": overlay.target_id,
                "started_at": serialize_datetime(overlay.started_at),
                "expires_at": serialize_datetime(overlay.expires_at),
                "token": overlay.token,
            }
            if overlay
            else None
        ),
        "ip_addr": record.ip_addr,
        "user_agent": record.user_agent,
    }


def deserialize_session(data: Dict[str, Any]) -> SessionRecord:
    critical = data.get("critical") or {}
    overlay_data = data.get("impersonation")
    overlay = None
    if overlay_data:
        overlay = ImpersonationOverlay(
            impersonator_id=overlay_data["impersonator_id"],
            target_id=overlay_data["target_id"],
            started_at=deserialize_datetime(overlay_data["started_at"]),
            expires_at=deserialize_datetime(overlay_data["expires_at"]),
            token=overlay_data.get("token", ""),
        )
    return SessionRecord(
        id=data["id"],
        created_at=deserialize_datetime(data["created_at"]),
        critical=CriticalSessionFields(
            login_id=critical.get("login_id"),
            password_hash=critical.get("password_hash"),
        ),
        data=dict(data.get("data") or {}),
        integrity_signature=data.get("integrity_signature"),
        csrf_token=data["csrf_token"],
        last_activity_at=deserialize_datetime(data.get("last_activity_at")),
        impersonation=overlay,
        ip_addr=data.get("ip_addr"),
        user_agent=data.get("user_agent"),
    )


def serialize_session_row(row: SessionRow) -> Dict[str, Any]:
    return {
        "session_id": row.session_id,
        "principal_id": row.principal_id,
        "created_at": serialize_datetime(row.created_at),
        "ip_addr": row.ip_addr,
        "user_agent_hash": row.user_agent_hash,
    }


def deserialize_session_row(data: Dict[str, Any]) -> SessionRow:
    return SessionRow(
        session_id=data["session_id"],
        principal_id=data["principal_id"],
        created_at=deserialize_datetime(data["created_at"]),
        ip_addr=data.get("ip_addr"),
        user_agent_hash=data.get("user_agent_hash"),
    )


def serialize_appeal(appeal: Appeal) -> Dict[str, Any]:
    return {
        "id": appeal.id,
        "principal_id": appeal.principal_id,
        "message": appeal.message,
        "status": appeal.status,
        "created_at": serialize_datetime(appeal.created_at),
    }


def deserialize_appeal(data: Dict[str, Any]) -> Appeal:
    return Appeal(
        id=data["id"],
        principal_id=data["principal_id"],
        message=data.get("message", ""),
        status=data.get("status", "open"),
        created_at=deserialize_datetime(data["created_at"]),
    )
