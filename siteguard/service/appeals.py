from __future__ import annotations

import hashlib
import hmac
import secrets
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol
from urllib.parse import urlencode

from siteguard.config import Settings
from siteguard.logging import get_logger
from siteguard.service.errors import ConflictError, ForbiddenError, NotFoundError
from siteguard.storage.models import Appeal, Principal, ensure_aware
from siteguard.storage.redis_cache import CounterCache

logger = get_logger(__name__)


class AppealStore(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def has_open_appeal(self, principal_id: str) -> bool: ...

    def create_appeal(self, principal_id: str, message: str) -> Appeal: ...


class AppealLinkService:
    """Issue and redeem time-limited, single-use signed links to the appeal form."""

    def __init__(self, settings: Settings, store: AppealStore, cache: CounterCache) -> None:
        self.settings = settings
        self.store = store
        self.cache = cache
        self._used_lock = threading.Lock()
        self._used_nonces: Dict[str, int] = {}

    def _sign(self, principal_id: str, expires: int, nonce: str) -> str:
        message = f"{principal_id}|{expires}|{nonce}".encode()
        return hmac.new(self.settings.signing_key, message, hashlib.sha256).hexdigest()

    def offer(self, principal: Principal, now: datetime) -> Optional[dict]:
        """Return an appeal link when the banned principal may appeal.

        Raises StoreUnavailableError when the open-appeal lookup fails.
        """
        if principal.ban is not None and principal.ban.irrevocable:
            return None
        if self.store.has_open_appeal(principal.id):
            return None
        return self.issue_link(principal.id, now)

    def issue_link(self, principal_id: str, now: datetime) -> dict:
        expires = int(ensure_aware(now).timestamp()) + self.settings.appeal_link_ttl_minutes * 60
        nonce = secrets.token_urlsafe(16)
        query = urlencode(
            {
                "expires": expires,
                "nonce": nonce,
                "signature": self._sign(principal_id, expires, nonce),
            }
        )
        base = self.settings.app_base_url.rstrip("/")
        return {
            "url": f"{base}/appeals/{principal_id}?{query}",
            "expires_at": datetime.fromtimestamp(expires, tz=timezone.utc).isoformat(),
        }

    def verify_link(
        self, principal_id: str, expires: int, nonce: str, signature: str, now: datetime
    ) -> None:
        expected = self._sign(principal_id, expires, nonce)
        if not hmac.compare_digest(expected, signature or ""):
            raise ForbiddenError("appeal link is invalid", error_code="APPEAL_LINK_INVALID")
        if int(ensure_aware(now).timestamp()) >= expires:
            raise ForbiddenError("appeal link has expired", error_code="APPEAL_LINK_EXPIRED")

    async def _consume_nonce(self, nonce: str, expires: int, now: datetime) -> bool:
        ttl = max(1, expires - int(ensure_aware(now).timestamp()))
        if self.cache:
            return await self.cache.consume_nonce(f"appeal:nonce:{nonce}", ttl)
        current = int(ensure_aware(now).timestamp())
        with self._used_lock:
            # Drop nonces whose links have expired anyway
            for stale in [n for n, exp in self._used_nonces.items() if exp <= current]:
                self._used_nonces.pop(stale, None)
            if nonce in self._used_nonces:
                return False
            self._used_nonces[nonce] = expires
            return True

    async def redeem(
        self,
        principal_id: str,
        *,
        expires: int,
        nonce: str,
        signature: str,
        message: str,
        now: datetime,
    ) -> Appeal:
        self.verify_link(principal_id, expires, nonce, signature, now)
        principal = self.store.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("principal not found")
        if principal.ban is not None and principal.ban.irrevocable:
            raise ForbiddenError("this ban cannot be appealed", error_code="APPEAL_NOT_ALLOWED")
        if self.store.has_open_appeal(principal_id):
            raise ConflictError("an appeal is already open", error_code="APPEAL_ALREADY_OPEN")
        if not await self._consume_nonce(nonce, expires, now):
            raise ConflictError("appeal link was already used", error_code="APPEAL_LINK_USED")
        appeal = self.store.create_appeal(principal_id, message)
        logger.info("appeal_created", principal_id=principal_id, appeal_id=appeal.id)
        return appeal
