from __future__ import annotations

import asyncio
import contextlib
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from bynd.api.error_handling import _error_response, register_exception_handlers
from bynd.api.routes import RateLimitInfo, client_ip, router
from bynd.api.schemas import HealthResponse
from bynd.config import Settings
from bynd.logging import get_logger, set_correlation_id
from bynd.service.errors import StorageUnavailable
from bynd.service.runtime import Runtime, check_rate_limit, get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

_started_at = time.monotonic()
_purge_task: asyncio.Task | None = None


async def _purge_once(runtime: Runtime) -> None:
    registry_purged, refresh_purged = await runtime.purge_expired()
    buckets_purged = runtime.local_buckets.prune(
        timedelta(seconds=runtime.settings.auth_rate_limit_window_seconds)
    )
    logger.info(
        "expired_state_purged",
        registry=registry_purged,
        refresh_records=refresh_purged,
        rate_buckets=buckets_purged,
    )


async def _run_purge_loop(runtime: Runtime, interval_seconds: int) -> None:
    """Periodically drop expired registry entries, refresh records and idle buckets."""
    interval = max(interval_seconds, 1)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await _purge_once(runtime)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # next sweep retries
                logger.warning("purge_failed", error_type=type(exc).__name__, error=str(exc))
    except asyncio.CancelledError:
        logger.info("purge_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the purge loop on startup; stop it and release connections on shutdown."""
    global _purge_task
    runtime = get_runtime()
    _purge_task = asyncio.create_task(
        _run_purge_loop(runtime, runtime.settings.purge_interval_seconds)
    )
    logger.info("purge_task_started", interval_seconds=runtime.settings.purge_interval_seconds)

    yield

    if _purge_task:
        _purge_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _purge_task
        _purge_task = None
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Bynd Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost:8081",
        "http://localhost:19006",
        "http://127.0.0.1:8081",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    max_age=3600,
)


@app.middleware("http")
async def enforce_global_rate_limit(request: Request, call_next):
    """Per-client token bucket across every route."""
    runtime = get_runtime()
    limit = runtime.settings.global_rate_limit_per_minute
    try:
        allowed, remaining, reset_seconds = await check_rate_limit(
            runtime, f"global:{client_ip(request)}", limit, 60, return_remaining=True
        )
    except StorageUnavailable as exc:
        # middleware errors bypass the app exception handlers
        return _error_response(503, exc.message, exc.detail, code=exc.error_code)
    if not allowed:
        logger.warning("global_rate_limit_exceeded", path=request.url.path)
        headers = RateLimitInfo(limit, remaining, reset_seconds).headers()
        headers["Retry-After"] = str(max(1, reset_seconds))
        return _error_response(429, "rate limit exceeded", code="rate_limited", headers=headers)
    return await call_next(request)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with ``X-Request-ID`` (client supplied or fresh) for logs and the response."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    path = request.url.path
    # responses carrying tokens must never be cached
    if path.startswith("/v1/") or path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault("Pragma", "no-cache")
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _check_component(component: str, check) -> bool:
    """Run a blocking reachability check off the loop with a deadline."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=component)
        return False
    except Exception as exc:
        logger.error("health_check_failed", component=component, error=str(exc))
        return False
    return True


@app.get("/healthz", response_model=HealthResponse)
async def health(response: Response) -> HealthResponse:
    runtime = get_runtime()
    store_ok = await _check_component("store", runtime.store.verify_connection)
    checks: Dict[str, Dict[str, Any]] = {
        "store": {
            "status": "healthy" if store_ok else "unhealthy",
            "type": "memory" if runtime.settings.use_memory_store else "postgres",
        }
    }
    healthy = store_ok
    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        redis_ok = await _check_component("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        healthy = healthy and redis_ok

    if not healthy:
        response.status_code = 503
    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        checks=checks,
        version=__version__,
        build=__build__,
        uptime_seconds=round(time.monotonic() - _started_at, 3),
        timestamp=datetime.now(timezone.utc),
    )


def create_app() -> FastAPI:
    return app
