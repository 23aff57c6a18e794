from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Protocol, Set

from redis.exceptions import RedisError

from bynd.logging import get_logger
from bynd.service.errors import StorageUnavailable
from bynd.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class RevocationRegistry(Protocol):
    async def track(self, jti: str, ttl_seconds: int) -> None: ...

    async def revoke(self, jti: str) -> None: ...

    async def is_revoked(self, jti: str) -> bool: ...

    async def purge_expired(self) -> int: ...


class AccessTokenRegistry:
    """Process-local registry of tracked and explicitly revoked access-token jtis.

    ``is_revoked`` answers only "was this jti explicitly invalidated". Natural
    expiry is enforced by token verification, so an untracked or expired jti
    is not reported as revoked. The lock makes every operation safe to call
    from the event loop and from worker threads at the same time.
    """

    def __init__(self, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._active: Dict[str, float] = {}
        self._revoked: Set[str] = set()

    async def track(self, jti: str, ttl_seconds: int) -> None:
        with self._lock:
            self._active[jti] = self._clock() + max(0, ttl_seconds)

    async def revoke(self, jti: str) -> None:
        with self._lock:
            self._revoked.add(jti)
            self._active.pop(jti, None)

    async def is_revoked(self, jti: str) -> bool:
        with self._lock:
            return jti in self._revoked

    async def is_tracked(self, jti: str) -> bool:
        with self._lock:
            expiry = self._active.get(jti)
            return expiry is not None and expiry >= self._clock()

    async def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [jti for jti, expiry in self._active.items() if expiry < now]
            for jti in expired:
                del self._active[jti]
        if expired:
            logger.debug("access_registry_purged", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)


class RedisAccessTokenRegistry:
    """Registry shared across processes. Redis key TTLs do the garbage collection."""

    def __init__(self, cache: RedisCache, *, default_ttl_seconds: int = 15 * 60) -> None:
        self.cache = cache
        self.default_ttl_seconds = default_ttl_seconds

    async def track(self, jti: str, ttl_seconds: int) -> None:
        try:
            await self.cache.track_access_token(jti, ttl_seconds)
        except RedisError as exc:
            raise self._unavailable("track", exc) from exc

    async def revoke(self, jti: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            if ttl_seconds is None:
                remaining = await self.cache.access_token_ttl(jti)
                ttl_seconds = remaining if remaining > 0 else self.default_ttl_seconds
            await self.cache.denylist_access_token(jti, ttl_seconds)
        except RedisError as exc:
            raise self._unavailable("revoke", exc) from exc

    async def is_revoked(self, jti: str) -> bool:
        try:
            return await self.cache.is_access_token_denylisted(jti)
        except RedisError as exc:
            raise self._unavailable("is_revoked", exc) from exc

    async def purge_expired(self) -> int:
        return 0

    @staticmethod
    def _unavailable(operation: str, exc: Exception) -> StorageUnavailable:
        logger.error("access_registry_unavailable", operation=operation, error=str(exc))
        return StorageUnavailable(
            "revocation registry unavailable", detail={"operation": operation}
        )
