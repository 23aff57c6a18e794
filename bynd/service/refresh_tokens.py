from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Tuple, TypeVar

from bynd.logging import get_logger
from bynd.service.access_tokens import new_jti
from bynd.service.credentials import call_store
from bynd.service.errors import LOGOUT, ROTATION_ABORTED, TOKEN_REUSE_DETECTED, StorageUnavailable
from bynd.storage.models import RefreshTokenRecord, utcnow

logger = get_logger(__name__)

T = TypeVar("T")

# 40 random bytes, hex encoded: 320 bits of entropy in an 80 character token
REFRESH_TOKEN_BYTES = 40

# runs after the successor is stored, before the predecessor is marked replaced
BeforeCommit = Callable[[RefreshTokenRecord], Awaitable[Any]]


class RotationConflict(Exception):
    """The predecessor was replaced by someone else first."""

    def __init__(self, predecessor: RefreshTokenRecord) -> None:
        super().__init__(f"refresh token {predecessor.jti} already replaced")
        self.predecessor = predecessor


class RefreshTokenStore(Protocol):
    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]: ...

    def mark_refresh_token_replaced(self, jti: str, new_jti: str) -> bool: ...

    def revoke_refresh_token(self, jti: str, reason: str) -> bool: ...

    def revoke_refresh_family(self, family_id: str, reason: str) -> int: ...

    def list_refresh_family(self, family_id: str) -> List[RefreshTokenRecord]: ...

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...


@dataclass(frozen=True)
class IssuedRefreshToken:
    """A freshly stored record plus its plaintext, which is never retrievable again."""

    token: str
    record: RefreshTokenRecord

    @property
    def expires_at(self) -> datetime:
        return self.record.expires_at


@dataclass(frozen=True)
class RotationResult:
    user_id: str
    issued: IssuedRefreshToken
    prepared: Any = None


class RefreshTokenService:
    """Opaque refresh tokens with rotation, family lineage and reuse detection.

    Records are looked up by a keyed HMAC-SHA256 fingerprint of the plaintext,
    which is deterministic and therefore indexable. The key is derived from
    the signing secret, so a leaked table of fingerprints cannot be checked
    against guessed tokens offline.

    Every store call is bounded by ``timeout_seconds``; timeouts and backend
    outages raise :class:`~bynd.service.errors.StorageUnavailable` and are never
    reported as an invalid token.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        secret: str,
        *,
        ttl_days: int = 7,
        timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = timedelta(days=ttl_days)
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._fingerprint_key = hmac.new(
            secret.encode(), b"bynd.refresh-token.fingerprint", hashlib.sha256
        ).digest()

    async def _call(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        return await call_store(func, *args, timeout=self.timeout_seconds, operation=operation)

    def hash_token(self, token: str) -> str:
        return hmac.new(self._fingerprint_key, token.encode(), hashlib.sha256).hexdigest()

    async def issue(
        self,
        user_id: str,
        family_id: Optional[str] = None,
        predecessor: Optional[RefreshTokenRecord] = None,
    ) -> IssuedRefreshToken:
        """Store a new refresh token and return its plaintext once.

        Without ``family_id`` a new family is started. With a ``predecessor`` the
        new record is stored first and the predecessor is then marked replaced
        by it. Raises :class:`RotationConflict` when the predecessor had already
        been replaced; its family is revoked by then.
        """
        issued, _ = await self._issue(user_id, family_id, predecessor)
        return issued

    async def _issue(
        self,
        user_id: str,
        family_id: Optional[str],
        predecessor: Optional[RefreshTokenRecord],
        before_commit: Optional[BeforeCommit] = None,
    ) -> Tuple[IssuedRefreshToken, Any]:
        token = secrets.token_hex(REFRESH_TOKEN_BYTES)
        now = self._clock()
        record = RefreshTokenRecord(
            jti=new_jti(),
            token_hash=self.hash_token(token),
            user_id=user_id,
            family_id=(predecessor.family_id if predecessor else None) or family_id or new_jti(),
            prev_jti=predecessor.jti if predecessor else None,
            created_at=now,
            expires_at=now + self.ttl,
        )
        await self._call("insert_refresh_token", self.store.insert_refresh_token, record)

        prepared = None
        if before_commit is not None:
            try:
                prepared = await before_commit(record)
            except Exception:
                # predecessor stays active so the caller can retry with it
                await self._abandon(record)
                raise

        if predecessor is not None:
            won = await self._call(
                "mark_refresh_token_replaced",
                self.store.mark_refresh_token_replaced,
                predecessor.jti,
                record.jti,
            )
            if not won:
                await self._reuse_detected(predecessor)
                raise RotationConflict(predecessor)
        return IssuedRefreshToken(token=token, record=record), prepared

    async def _abandon(self, record: RefreshTokenRecord) -> None:
        """Revoke a successor whose plaintext will never reach the client."""
        try:
            await self._call(
                "revoke_refresh_token", self.store.revoke_refresh_token, record.jti, ROTATION_ABORTED
            )
        except StorageUnavailable as exc:
            # unreachable anyway: nobody holds its plaintext
            logger.warning("refresh_successor_abandon_failed", jti=record.jti, error=str(exc))

    async def find_by_plaintext(self, token: str) -> Optional[RefreshTokenRecord]:
        if not token:
            return None
        candidate = self.hash_token(token)
        record = await self._call(
            "get_refresh_token_by_hash", self.store.get_refresh_token_by_hash, candidate
        )
        if record is None or not hmac.compare_digest(record.token_hash, candidate):
            return None
        return record

    async def validate(self, token: str) -> Optional[RefreshTokenRecord]:
        record = await self.find_by_plaintext(token)
        if record is None or record.revoked or record.is_expired(self._clock()):
            return None
        return record

    async def rotate(
        self, token: str, before_commit: Optional[BeforeCommit] = None
    ) -> Optional[RotationResult]:
        """Exchange ``token`` for a successor in the same family.

        Returns None when the token is invalid. Presenting a token that was
        already rotated revokes its whole family. Of two concurrent rotations
        of one token, the one losing the compare-and-set on ``replaced_by_jti``
        is handled as that same replay.

        ``before_commit`` runs once the successor is stored and before the
        presented token is marked replaced; its return value is carried in
        :attr:`RotationResult.prepared`. If it raises, the presented token
        stays valid and the error propagates.
        """
        existing = await self.validate(token)
        if existing is None:
            return None
        if existing.replaced_by_jti is not None:
            await self._reuse_detected(existing)
            return None

        try:
            issued, prepared = await self._issue(
                existing.user_id, existing.family_id, existing, before_commit
            )
        except RotationConflict:
            return None
        logger.info(
            "refresh_token_rotated",
            user_id=existing.user_id,
            family_id=existing.family_id,
            prev_jti=existing.jti,
            jti=issued.record.jti,
        )
        return RotationResult(user_id=existing.user_id, issued=issued, prepared=prepared)

    async def _reuse_detected(self, record: RefreshTokenRecord) -> None:
        revoked = await self.revoke_family(record.family_id, TOKEN_REUSE_DETECTED)
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=record.user_id,
            family_id=record.family_id,
            jti=record.jti,
            revoked=revoked,
        )

    async def revoke_family(self, family_id: str, reason: str) -> int:
        count = await self._call(
            "revoke_refresh_family", self.store.revoke_refresh_family, family_id, reason
        )
        logger.info("refresh_family_revoked", family_id=family_id, reason=reason, count=count)
        return count

    async def revoke_token(self, token: str, reason: str = LOGOUT) -> bool:
        """Revoke only the record behind ``token``. Unknown tokens are a no-op."""
        record = await self.find_by_plaintext(token)
        if record is None:
            return False
        revoked = await self._call(
            "revoke_refresh_token", self.store.revoke_refresh_token, record.jti, reason
        )
        logger.info(
            "refresh_token_revoked",
            user_id=record.user_id,
            family_id=record.family_id,
            jti=record.jti,
            reason=reason,
        )
        return revoked

    async def list_family(self, family_id: str) -> List[RefreshTokenRecord]:
        return await self._call(
            "list_refresh_family", self.store.list_refresh_family, family_id
        )

    async def purge_expired(self) -> int:
        return await self._call(
            "purge_expired_refresh_tokens",
            self.store.purge_expired_refresh_tokens,
            self._clock(),
        )
