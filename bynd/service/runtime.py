from __future__ import annotations

import asyncio
import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlsplit, urlunsplit

from redis.exceptions import RedisError

from bynd.config import Settings, get_settings, reset_settings_cache
from bynd.logging import get_logger
from bynd.service.access_tokens import AccessTokenIssuer
from bynd.service.auth import SessionService
from bynd.service.credentials import CredentialService
from bynd.service.errors import StorageUnavailable
from bynd.service.refresh_tokens import RefreshTokenService
from bynd.service.revocation import AccessTokenRegistry, RedisAccessTokenRegistry
from bynd.storage.memory import MemoryStore
from bynd.storage.postgres import PostgresStore
from bynd.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _redact_dsn(url: Optional[str]) -> Optional[str]:
    """Return ``url`` with any password swapped for ``***``."""
    if not url:
        return url
    try:
        parts = urlsplit(url)
        if parts.password is None:
            return url
        host = parts.hostname or ""
        if parts.port:
            host += f":{parts.port}"
    except ValueError:
        return "<unparseable url>"
    return urlunsplit(parts._replace(netloc=f"{parts.username or ''}:***@{host}"))


class LocalBuckets:
    """Token buckets kept in this process, for deployments without Redis."""

    def __init__(self) -> None:
        self.buckets: Dict[str, Tuple[float, datetime]] = {}
        self.lock = asyncio.Lock()

    async def take(
        self, key: str, limit: int, window_seconds: int, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Consume ``cost`` tokens; returns (allowed, remaining, retry_after)."""
        per_second = limit / window_seconds
        now = datetime.now(timezone.utc)
        async with self.lock:
            level, stamp = self.buckets.get(key, (float(limit), now))
            level = min(float(limit), level + max(0.0, (now - stamp).total_seconds()) * per_second)
            if level < cost:
                self.buckets[key] = (level, now)
                return False, int(level), math.ceil((cost - level) / per_second)
            level -= cost
            self.buckets[key] = (level, now)
            return True, int(level), 0

    def prune(self, idle: timedelta) -> int:
        """Forget buckets untouched for ``idle``; a fresh bucket starts full anyway."""
        cutoff = datetime.now(timezone.utc) - idle
        stale = [key for key, (_, stamp) in self.buckets.items() if stamp < cutoff]
        for key in stale:
            del self.buckets[key]
        return len(stale)


class Runtime:
    """Process-wide wiring of stores, registries and services."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.store = self._open_store()
        self.cache = self._open_cache()

        self.issuer = AccessTokenIssuer(
            self.settings.jwt_secret, ttl_minutes=self.settings.access_token_ttl_minutes
        )
        if self.cache is not None:
            self.registry = RedisAccessTokenRegistry(
                self.cache, default_ttl_seconds=self.issuer.ttl_seconds
            )
        else:
            self.registry = AccessTokenRegistry()
        timeout = self.settings.store_timeout_seconds
        self.credentials = CredentialService(self.store, timeout_seconds=timeout)
        self.refresh_tokens = RefreshTokenService(
            self.store,
            self.settings.jwt_secret,
            ttl_days=self.settings.refresh_token_ttl_days,
            timeout_seconds=timeout,
        )
        self.auth = SessionService(self.credentials, self.issuer, self.registry, self.refresh_tokens)
        self.local_buckets = LocalBuckets()

        logger.info(
            "runtime_initialized",
            store="memory" if isinstance(self.store, MemoryStore) else "postgres",
            redis_enabled=self.cache is not None,
            access_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_ttl_days=self.settings.refresh_token_ttl_days,
        )

    def _open_store(self) -> MemoryStore | PostgresStore:
        if self.settings.use_memory_store:
            return MemoryStore()
        try:
            return PostgresStore(
                self.settings.database_url,
                timeout_seconds=self.settings.store_timeout_seconds,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                database_url=_redact_dsn(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def _open_cache(self) -> RedisCache | None:
        failure: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url, socket_timeout=self.settings.store_timeout_seconds
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                failure = exc

        # Postgres implies several workers, which must share revocations and limits
        fallback_allowed = (
            self.settings.use_memory_store
            or self.settings.test_mode
            or self.settings.allow_redis_fallback_dev
        )
        if not fallback_allowed:
            raise RuntimeError(
                "Redis is required for the shared revocation registry and rate limits; "
                "start Redis or set ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from failure
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_redact_dsn(self.settings.redis_url),
            error=str(failure) if failure else "redis_url_missing",
        )
        return None

    async def purge_expired(self) -> Tuple[int, int]:
        """Sweep expired registry entries and refresh records."""
        registry_purged = await self.registry.purge_expired()
        refresh_purged = await self.refresh_tokens.purge_expired()
        return registry_purged, refresh_purged

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild settings and the runtime from the current environment."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        previous, runtime = runtime, None
        if previous is not None and previous.cache is not None:
            try:
                asyncio.run(previous.cache.close())
            except RuntimeError as exc:
                # called from inside a running loop; the client is left to the GC
                logger.warning("runtime_reset_cache_close_skipped", error=str(exc))
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Consume from the token bucket for ``key``.

    Redis holds the bucket when configured, otherwise ``runtime.local_buckets``.
    A non-positive ``limit`` disables the check; a non-positive window is
    logged and treated as 60 seconds. With ``return_remaining`` the result is
    ``(allowed, remaining, retry_after_seconds)``. A Redis failure raises
    ``StorageUnavailable``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache is not None:
        try:
            return await runtime.cache.check_rate_limit(
                key, limit, window_seconds, return_remaining=return_remaining, cost=cost
            )
        except RedisError as exc:
            logger.error("rate_limit_backend_unavailable", key=key, error=str(exc))
            raise StorageUnavailable(
                "rate limiter unavailable", detail={"operation": "check_rate_limit"}
            ) from exc
    outcome = await runtime.local_buckets.take(key, limit, window_seconds, max(1, cost))
    return outcome if return_remaining else outcome[0]
