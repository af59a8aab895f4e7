from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from siteguard.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip().lower() for item in value.split(",") if item.strip()]


class Settings(BaseModel):
    """Runtime settings for the session security pipeline."""

    database_url: str = env_field(
        "postgresql://localhost:5432/siteguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/siteguard", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    persist_memory_store: bool = env_field(
        False,
        "PERSIST_MEMORY_STORE",
        description="Write the in-memory store to SHARED_FS_ROOT/state between restarts",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-memory fallbacks for tests",
    )
    app_key: str = env_field(None, "APP_KEY", validate_default=True)
    two_factor_encryption_key: str | None = env_field(
        None,
        "TWO_FACTOR_ENCRYPTION_KEY",
        description="Key material for encrypting two-factor secrets at rest (defaults to APP_KEY)",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    # Session cookie
    session_cookie_name: str = env_field("session_id", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")

    # Idle timeout
    session_idle_timeout_minutes: int = env_field(
        120, "SESSION_IDLE_TIMEOUT_MINUTES", ge=1
    )
    privileged_idle_timeout_minutes: int = env_field(
        20, "PRIVILEGED_IDLE_TIMEOUT_MINUTES", ge=1
    )
    privileged_roles: str = env_field("admin,editor", "PRIVILEGED_ROLES")
    session_warning_minutes: int = env_field(5, "SESSION_WARNING_MINUTES", ge=0)
    # 0 disables the periodic removal of idle session records
    session_sweep_interval_minutes: int = env_field(
        5, "SESSION_SWEEP_INTERVAL_MINUTES", ge=0
    )

    # Integrity and concurrent sessions
    session_integrity_enabled: bool = env_field(True, "SESSION_VALIDATE_INTEGRITY")
    max_concurrent_sessions: int = env_field(1, "MAX_CONCURRENT_SESSIONS", ge=1)
    max_sessions_by_role: str = env_field(
        "",
        "MAX_SESSIONS_BY_ROLE",
        description="Per-role overrides such as 'editor:2,moderator:2'",
    )

    # Impersonation
    impersonation_ttl_minutes: int = env_field(30, "IMPERSONATION_TTL_MINUTES", ge=1)
    impersonation_require_two_factor: bool = env_field(
        True, "IMPERSONATION_REQUIRE_TWO_FACTOR"
    )
    impersonation_protected_roles: str = env_field(
        "admin", "IMPERSONATION_PROTECTED_ROLES"
    )

    # Two-factor challenge
    two_factor_challenge_ttl_seconds: int = env_field(
        300, "TWO_FACTOR_CHALLENGE_TTL_SECONDS", ge=1
    )
    two_factor_max_attempts: int = env_field(5, "TWO_FACTOR_MAX_ATTEMPTS", ge=1)
    two_factor_attempt_window_seconds: int = env_field(
        60, "TWO_FACTOR_ATTEMPT_WINDOW_SECONDS", ge=1
    )

    # Login failure counters
    rate_limit_ip_max_attempts: int = env_field(10, "RATE_LIMIT_IP_MAX_ATTEMPTS", ge=1)
    rate_limit_ip_window_minutes: int = env_field(
        15, "RATE_LIMIT_IP_WINDOW_MINUTES", ge=1
    )
    rate_limit_email_max_attempts: int = env_field(
        5, "RATE_LIMIT_EMAIL_MAX_ATTEMPTS", ge=1
    )
    rate_limit_email_window_minutes: int = env_field(
        30, "RATE_LIMIT_EMAIL_WINDOW_MINUTES", ge=1
    )
    rate_limit_max_lockout_minutes: int = env_field(
        60 * 24, "RATE_LIMIT_MAX_LOCKOUT_MINUTES", ge=1
    )

    # Password rotation and appeals
    password_max_age_days: int = env_field(
        90,
        "PASSWORD_MAX_AGE_DAYS",
        ge=0,
        description="Force a password change after this many days (0 disables)",
    )
    appeal_link_ttl_minutes: int = env_field(60 * 24, "APPEAL_LINK_TTL_MINUTES", ge=1)

    # Redirect targets for browser-style responses
    login_url: str = env_field("/login", "LOGIN_URL")
    home_url: str = env_field("/account", "HOME_URL")
    admin_home_url: str = env_field("/admin", "ADMIN_HOME_URL")
    password_change_url: str = env_field("/account/password", "PASSWORD_CHANGE_URL")
    two_factor_url: str = env_field("/auth/two-factor", "TWO_FACTOR_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("max_sessions_by_role")
    @classmethod
    def _validate_role_limits(cls, value: str) -> str:
        for entry in _split_csv(value):
            role, sep, limit = entry.partition(":")
            if not sep or not role or not limit.isdigit() or int(limit) < 1:
                raise ValueError(f"invalid role session limit '{entry}'")
        return value

    @field_validator("app_key", mode="before")
    @classmethod
    def _ensure_app_key(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated key so signed sessions survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/siteguard"))
        key_path = fs_root / ".app_key"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("app_key_dir_setup", error=str(exc), path=str(fs_root))

        if key_path.exists() and not key_path.is_symlink():
            try:
                persisted = key_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("app_key_read_failed", error=str(exc), path=str(key_path))

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".app_key_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(key_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("app_key_persist_failed", error=str(exc), path=str(key_path))
            raise RuntimeError(
                "Unable to persist APP_KEY; set APP_KEY or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def privileged_role_set(self) -> set[str]:
        return set(_split_csv(self.privileged_roles))

    @property
    def impersonation_protected_role_set(self) -> set[str]:
        return set(_split_csv(self.impersonation_protected_roles))

    @property
    def role_session_limits(self) -> dict[str, int]:
        limits: dict[str, int] = {}
        for entry in _split_csv(self.max_sessions_by_role):
            role, _, limit = entry.partition(":")
            limits[role] = int(limit)
        return limits

    @property
    def signing_key(self) -> bytes:
        return self.app_key.encode()


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
