from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional

from siteguard.config import get_settings, reset_settings_cache
from siteguard.logging import get_logger
from siteguard.service.account_state import AccountStateGate, PasswordExpiryGate
from siteguard.service.appeals import AppealLinkService
from siteguard.service.audit import SecurityAuditLog
from siteguard.service.auth import AuthService
from siteguard.service.concurrent_sessions import ConcurrentSessionEnforcer
from siteguard.service.csrf import CsrfTokenVerifier
from siteguard.service.identity import IdentityResolver
from siteguard.service.impersonation import ImpersonationGuard, ImpersonationService
from siteguard.service.integrity import SessionIntegrityValidator
from siteguard.service.lifecycle import SessionLifecycleManager
from siteguard.service.pipeline import SecurityPipeline
from siteguard.service.rate_limit import RateLimitedAuthGuard
from siteguard.service.sessions import SessionService
from siteguard.service.two_factor import TwoFactorChallengeGate, TwoFactorService
from siteguard.storage.memory import MemoryStore
from siteguard.storage.postgres import PostgresStore
from siteguard.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

LOGOUT_PATH = "/auth/logout"


class Runtime:
    """Process-wide wiring of stores, services and the security pipeline."""

    def __init__(self) -> None:
        self.settings = get_settings()
        encryption_key = self.settings.two_factor_encryption_key or self.settings.app_key
        if self.settings.use_memory_store:
            self.store = MemoryStore(
                self.settings.shared_fs_root if self.settings.persist_memory_store else None,
                encryption_key=encryption_key,
            )
        else:
            self.store = PostgresStore(
                self.settings.database_url, encryption_key=encryption_key
            )

        self.cache: Optional[RedisCache | SyncRedisCache] = None
        redis_error: Optional[Exception] = None
        if self.settings.redis_url:
            try:
                if self.settings.test_mode:
                    self.cache = SyncRedisCache(self.settings.redis_url)
                else:
                    self.cache = RedisCache(self.settings.redis_url)
                self.cache.verify_connection()
            except Exception as exc:
                redis_error = exc
                self.cache = None

        fallback_allowed = self.settings.test_mode or self.settings.allow_redis_fallback_dev
        if not self.cache:
            if not fallback_allowed:
                raise RuntimeError(
                    "Redis is required for login failure counters; set ALLOW_REDIS_FALLBACK_DEV "
                    "or TEST_MODE to run with in-process counters"
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=self.settings.redis_url,
                error=str(redis_error) if redis_error else None,
                message="Using in-process counters; lockouts are not shared across workers",
            )

        self.audit = SecurityAuditLog(self.settings.signing_key)
        self.sessions = SessionService(
            self.store,
            max_idle=timedelta(
                minutes=max(
                    self.settings.session_idle_timeout_minutes,
                    self.settings.privileged_idle_timeout_minutes,
                )
            ),
            sweep_interval=timedelta(minutes=self.settings.session_sweep_interval_minutes),
        )
        self.appeals = AppealLinkService(self.settings, self.store, self.cache)
        self.integrity = SessionIntegrityValidator(self.settings, self.audit)
        self.concurrent = ConcurrentSessionEnforcer(self.settings, self.store, self.audit)
        self.lifecycle = SessionLifecycleManager(self.settings, self.sessions)
        self.impersonation = ImpersonationService(
            self.settings, self.store, self.sessions, self.audit
        )
        self.account_state = AccountStateGate(
            self.settings, self.appeals, self.audit, self.impersonation
        )
        self.password_expiry = PasswordExpiryGate(self.settings, exempt_paths={LOGOUT_PATH})
        self.two_factor = TwoFactorService(self.settings, self.store, self.cache, self.audit)
        self.auth = AuthService(
            self.settings, self.store, self.sessions, self.concurrent, self.audit
        )
        self.login_guard = RateLimitedAuthGuard(self.settings, self.cache, self.audit)
        self.pipeline = SecurityPipeline(
            [
                IdentityResolver(self.store, self.sessions),
                self.account_state,
                self.integrity,
                self.concurrent,
                self.lifecycle,
                ImpersonationGuard(self.settings, self.impersonation),
                self.password_expiry,
                CsrfTokenVerifier(self.audit),
                TwoFactorChallengeGate(self.settings, self.two_factor),
            ],
            self.sessions,
            self.audit,
        )

        logger.info(
            "runtime_initialized",
            store=type(self.store).__name__,
            redis_enabled=self.cache is not None,
            pipeline=self.pipeline.order,
            integrity_enabled=self.settings.session_integrity_enabled,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache.client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
