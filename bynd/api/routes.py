from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from bynd.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    RegisterRequest,
    TokenRefreshRequest,
    UserResponse,
)
from bynd.logging import get_logger
from bynd.service.auth import AuthContext, TokenPair
from bynd.service.runtime import Runtime, check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        response.headers.update(self.headers())


def client_ip(request: Request) -> str:
    """Address of the direct peer; proxies are expected to rewrite it upstream."""
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one token from ``key`` or raise 429 with X-RateLimit headers."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit, window_seconds=window_seconds)
        headers = info.headers()
        headers["Retry-After"] = str(max(1, reset_seconds))
        raise _http_error("rate_limited", "rate limit exceeded", status_code=429, headers=headers)

    return info


async def _enforce_auth_rate_limit(
    runtime: Runtime, request: Request, response: Optional[Response] = None
) -> RateLimitInfo:
    return await _enforce_rate_limit(
        runtime,
        f"auth:{client_ip(request)}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_limit_window_seconds,
        response=response,
    )


def _auth_response(pair: TokenPair) -> AuthResponse:
    return AuthResponse(
        user_id=pair.user_id,
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_at=pair.expires_at,
        access_token_expires_at=pair.access_token_expires_at,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the bearer token to the calling user or raise 401."""
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and start its first session.

    Raises:
        409: If the email is already registered
        429: If the auth rate limit is exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, request, response)
    pair = await runtime.auth.register(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(pair))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange email and password for a token pair.

    Unknown emails and wrong passwords produce the same 401.
    """
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, request, response)
    pair = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, request, response)
    pair = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_auth_response(pair))


@router.post("/auth/logout", status_code=204, response_class=Response, tags=["auth"])
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """Revoke the presented refresh token and, when valid, the bearer access token.

    Always 204: a missing or already invalid refresh token is not an error.
    """
    runtime = get_runtime()
    result = Response(status_code=204)
    await _enforce_auth_rate_limit(runtime, request, result)
    await runtime.auth.logout(
        refresh_token=body.refresh_token if body else None,
        access_jti=runtime.auth.access_jti_from_header(authorization),
    )
    return result


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    """Profile of the authenticated user."""
    runtime = get_runtime()
    user = await runtime.credentials.find_by_id(principal.user_id)
    if not user:
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(
        status="ok",
        data=UserResponse(id=user.id, email=user.email, created_at=user.created_at),
    )
