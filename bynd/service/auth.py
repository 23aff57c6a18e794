from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from bynd.logging import fingerprint, get_logger
from bynd.service.access_tokens import AccessTokenIssuer, IssuedAccessToken
from bynd.service.credentials import CredentialService
from bynd.service.errors import (
    LOGOUT,
    AuthenticationError,
    EmailConflict,
    InvalidCredentials,
    InvalidToken,
    TokenExpired,
)
from bynd.service.refresh_tokens import IssuedRefreshToken, RefreshTokenService
from bynd.service.revocation import RevocationRegistry
from bynd.storage.models import User

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenPair:
    user_id: str
    access_token: str
    refresh_token: str
    # expiry of the refresh token, which bounds how long the session can live
    expires_at: datetime
    access_token_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    jti: str
    expires_at: datetime


class SessionService:
    """Register, login, refresh and logout composed from the token primitives."""

    def __init__(
        self,
        credentials: CredentialService,
        issuer: AccessTokenIssuer,
        registry: RevocationRegistry,
        refresh_tokens: RefreshTokenService,
    ) -> None:
        self.credentials = credentials
        self.issuer = issuer
        self.registry = registry
        self.refresh_tokens = refresh_tokens

    async def _mint_access(self, user_id: str) -> IssuedAccessToken:
        access = self.issuer.issue(user_id)
        await self.registry.track(access.jti, self.issuer.ttl_seconds)
        return access

    def _pair(
        self, user_id: str, refresh: IssuedRefreshToken, access: IssuedAccessToken
    ) -> TokenPair:
        return TokenPair(
            user_id=user_id,
            access_token=access.token,
            refresh_token=refresh.token,
            expires_at=refresh.expires_at,
            access_token_expires_at=access.expires_at,
        )

    async def _start_session(self, user: User) -> TokenPair:
        refresh = await self.refresh_tokens.issue(user.id)
        return self._pair(user.id, refresh, await self._mint_access(user.id))

    async def register(self, email: str, password: str) -> TokenPair:
        if await self.credentials.find_by_email(email):
            raise EmailConflict()
        # a concurrent registration still loses on the store's unique constraint
        user = await self.credentials.create_user(email, password)
        logger.info("user_registered", user_id=user.id)
        return await self._start_session(user)

    async def login(self, email: str, password: str) -> TokenPair:
        user = await self.credentials.authenticate(email, password)
        if user is None:
            logger.warning("login_failed", principal_fp=fingerprint(email.strip().lower()))
            raise InvalidCredentials()
        logger.info("login_succeeded", user_id=user.id)
        return await self._start_session(user)

    async def refresh(self, refresh_token: str) -> TokenPair:
        # access jti is tracked before the presented token is marked replaced
        rotated = await self.refresh_tokens.rotate(
            refresh_token, before_commit=lambda record: self._mint_access(record.user_id)
        )
        if rotated is None:
            raise AuthenticationError("invalid refresh token")
        return self._pair(rotated.user_id, rotated.issued, rotated.prepared)

    async def logout(
        self, refresh_token: Optional[str] = None, access_jti: Optional[str] = None
    ) -> None:
        """Revoke the presented refresh token and, if known, the access jti.

        A missing or already invalid refresh token is not an error.
        """
        if refresh_token:
            await self.refresh_tokens.revoke_token(refresh_token, LOGOUT)
        if access_jti:
            await self.registry.revoke(access_jti)
        logger.info(
            "logout_completed",
            refresh_presented=bool(refresh_token),
            access_revoked=bool(access_jti),
        )

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, credentials = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not credentials.strip():
            return None
        return credentials.strip()

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve an ``Authorization: Bearer`` header to the calling user.

        Malformed, expired and revoked tokens all raise the same
        :class:`AuthenticationError`. A registry outage propagates as
        ``StorageUnavailable``.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        try:
            claims = self.issuer.verify(token)
        except TokenExpired:
            logger.info("access_token_rejected", reason="expired")
            raise AuthenticationError("invalid token")
        except InvalidToken:
            logger.info("access_token_rejected", reason="invalid")
            raise AuthenticationError("invalid token")
        if await self.registry.is_revoked(claims.jti):
            logger.info("access_token_rejected", reason="revoked", jti=claims.jti)
            raise AuthenticationError("invalid token")
        return AuthContext(user_id=claims.sub, jti=claims.jti, expires_at=claims.expires_at)

    def access_jti_from_header(self, authorization: Optional[str]) -> Optional[str]:
        """Best-effort jti of a still-valid bearer token, for logout."""
        token = self._extract_bearer(authorization)
        if not token:
            return None
        try:
            return self.issuer.verify(token).jti
        except InvalidToken:
            return None
