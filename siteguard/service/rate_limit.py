from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from siteguard.config import Settings
from siteguard.service.audit import SecurityAuditLog, hash_identity
from siteguard.service.pipeline import Denial
from siteguard.storage.models import utcnow
from siteguard.storage.redis_cache import CounterCache

STRIKE_TTL_SECONDS = 60 * 60 * 24


@dataclass
class CounterPolicy:
    key: str
    threshold: int
    window_seconds: int
    scope: str

    @property
    def strikes_key(self) -> str:
        return f"{self.key}:strikes"


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0
    scopes: Tuple[str, ...] = ()


class RateLimitedAuthGuard:
    """Failure counters for the login endpoint, keyed by client IP and identity.

    The identity key uses a keyed hash of the lowercased email so the raw
    address never reaches the counter store. Counters use a fixed window that
    starts at the first failure. Reaching a threshold stretches that counter's
    window exponentially with each repeated lockout within 24 hours.
    """

    def __init__(
        self, settings: Settings, cache: CounterCache, audit: SecurityAuditLog
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.audit = audit
        self._local_lock = asyncio.Lock()
        self._local_counters: Dict[str, Tuple[int, datetime]] = {}
        self._local_strikes: Dict[str, Tuple[int, datetime]] = {}

    def ip_key(self, ip: str) -> str:
        return f"auth_attempts_ip:{ip}"

    def email_key(self, email: str) -> str:
        return f"auth_attempts_email:{hash_identity(email, self.settings.signing_key)}"

    def _policies(self, ip: Optional[str], email: Optional[str]) -> List[CounterPolicy]:
        policies = []
        if ip:
            policies.append(
                CounterPolicy(
                    self.ip_key(ip),
                    self.settings.rate_limit_ip_max_attempts,
                    self.settings.rate_limit_ip_window_minutes * 60,
                    "ip",
                )
            )
        if email:
            policies.append(
                CounterPolicy(
                    self.email_key(email),
                    self.settings.rate_limit_email_max_attempts,
                    self.settings.rate_limit_email_window_minutes * 60,
                    "email",
                )
            )
        return policies

    # counter primitives, Redis first with an in-process fallback
    async def _read(self, key: str, now: datetime) -> Tuple[int, int]:
        if self.cache:
            return await self.cache.get_counter(key)
        async with self._local_lock:
            entry = self._local_counters.get(key)
            if entry is None:
                return 0, 0
            count, expires_at = entry
            if expires_at <= now:
                self._local_counters.pop(key, None)
                return 0, 0
            return count, math.ceil((expires_at - now).total_seconds())

    def _prune_local(self, now: datetime) -> None:
        """Forget lapsed counters and strikes; caller holds ``_local_lock``."""
        for table in (self._local_counters, self._local_strikes):
            lapsed = [key for key, (_, expires_at) in table.items() if expires_at <= now]
            for key in lapsed:
                del table[key]

    async def _increment(self, policy: CounterPolicy, now: datetime) -> Tuple[int, int]:
        max_lockout = self.settings.rate_limit_max_lockout_minutes * 60
        if self.cache:
            return await self.cache.record_failure(
                policy.key,
                policy.strikes_key,
                window_seconds=policy.window_seconds,
                threshold=policy.threshold,
                max_lockout_seconds=max_lockout,
                strike_ttl_seconds=STRIKE_TTL_SECONDS,
            )
        async with self._local_lock:
            self._prune_local(now)
            count, expires_at = self._local_counters.get(policy.key, (0, now))
            if expires_at <= now:
                count = 0
                expires_at = now + timedelta(seconds=policy.window_seconds)
            count += 1
            if count == policy.threshold:
                strikes, strikes_expire = self._local_strikes.get(policy.strikes_key, (0, now))
                strikes = strikes + 1 if strikes_expire > now else 1
                self._local_strikes[policy.strikes_key] = (
                    strikes,
                    now + timedelta(seconds=STRIKE_TTL_SECONDS),
                )
                lockout = min(policy.window_seconds * 2 ** (strikes - 1), max_lockout)
                expires_at = now + timedelta(seconds=lockout)
            self._local_counters[policy.key] = (count, expires_at)
            return count, math.ceil((expires_at - now).total_seconds())

    async def _delete(self, keys: List[str]) -> None:
        if self.cache:
            await self.cache.clear_counters(*keys)
            return
        async with self._local_lock:
            for key in keys:
                self._local_counters.pop(key, None)

    # guard operations
    async def check(
        self, ip: Optional[str], email: Optional[str], *, now: Optional[datetime] = None
    ) -> RateLimitDecision:
        """Decide whether a login attempt may proceed to credential verification."""
        now = now or utcnow()
        blocked: List[str] = []
        retry_after = 0
        for policy in self._policies(ip, email):
            count, ttl = await self._read(policy.key, now)
            if count >= policy.threshold:
                blocked.append(policy.scope)
                retry_after = max(retry_after, ttl)
        if blocked:
            return RateLimitDecision(False, retry_after, tuple(blocked))
        return RateLimitDecision(True)

    async def record_failure(
        self, ip: Optional[str], email: Optional[str], *, now: Optional[datetime] = None
    ) -> RateLimitDecision:
        """Count a failed attempt; the decision reports whether a threshold was hit."""
        now = now or utcnow()
        blocked: List[str] = []
        retry_after = 0
        for policy in self._policies(ip, email):
            count, ttl = await self._increment(policy, now)
            if count >= policy.threshold:
                blocked.append(policy.scope)
                retry_after = max(retry_after, ttl)
        if blocked:
            self.audit.suspicious(
                "login_lockout",
                ip=ip,
                timestamp=now,
                scopes=blocked,
                retry_after=retry_after,
                email_hash=hash_identity(email, self.settings.signing_key) if email else None,
            )
            return RateLimitDecision(False, retry_after, tuple(blocked))
        return RateLimitDecision(True)

    async def clear(self, ip: Optional[str], email: Optional[str]) -> None:
        await self._delete([policy.key for policy in self._policies(ip, email)])

    def denial(self, decision: RateLimitDecision) -> Denial:
        retry_after = max(1, decision.retry_after)
        return Denial(
            429,
            "AUTH_RATE_LIMITED",
            "Too many login attempts. Please try again later.",
            extras={
                "retry_after": retry_after,
                "retry_after_minutes": math.ceil(retry_after / 60),
            },
            headers={"Retry-After": str(retry_after)},
        )
