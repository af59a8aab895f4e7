from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from siteguard.storage.models import Principal

MAX_PASSWORD_LENGTH = 128
MAX_APPEAL_LENGTH = 5000


class ErrorBody(BaseModel):
    """Error body shared by pipeline denials and service errors."""

    success: bool = False
    error: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    success: bool = True
    data: Optional[Any] = None


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    remember: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=10)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class AppealRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=MAX_APPEAL_LENGTH)


class PrincipalOut(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    roles: List[str]
    status: str
    two_factor_enabled: bool
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalOut":
        return cls(
            id=principal.id,
            email=principal.email,
            name=principal.name,
            roles=sorted(role.value for role in principal.roles()),
            status=principal.status.value,
            two_factor_enabled=principal.has_confirmed_two_factor(),
            last_login_at=principal.last_login_at,
        )


class LoginResult(BaseModel):
    two_factor_required: bool = False
    redirect_to: str
    principal: Optional[PrincipalOut] = None


class ImpersonationOut(BaseModel):
    impersonator_id: str
    target_id: str
    started_at: datetime
    expires_at: datetime


class AccountOut(BaseModel):
    principal: PrincipalOut
    impersonation: Optional[ImpersonationOut] = None


class TwoFactorSetupOut(BaseModel):
    secret: str
    otpauth_uri: str


class AppealOut(BaseModel):
    id: str
    status: str
    created_at: datetime


class FlashOut(BaseModel):
    flash: Optional[Dict[str, str]] = None
    login_url: str


class SessionOut(BaseModel):
    """One login of the caller; ``id`` is a stable handle, not the session id."""

    id: str
    created_at: datetime
    last_activity_at: Optional[datetime] = None
    ip_addr: Optional[str] = None
    current: bool = False
