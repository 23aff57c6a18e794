from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Protocol, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from bynd.logging import fingerprint, get_logger
from bynd.service.errors import EmailConflict, StorageUnavailable
from bynd.storage.errors import ConstraintViolation, StoreUnavailable
from bynd.storage.models import User

logger = get_logger(__name__)

T = TypeVar("T")

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    def create_user(
        self, email: str, password_hash: str, *, password_algo: str = ...
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


async def call_store(
    func: Callable[..., T], *args: Any, timeout: float, operation: str
) -> T:
    """Run a blocking store call off the event loop, bounded by ``timeout``.

    Timeouts and backend outages surface as :class:`StorageUnavailable` so that
    callers never read an infrastructure failure as an invalid credential.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout)
    except asyncio.TimeoutError as exc:
        logger.error("store_call_timeout", operation=operation, timeout=timeout)
        raise StorageUnavailable("storage timed out", detail={"operation": operation}) from exc
    except StoreUnavailable as exc:
        logger.error(
            "store_call_unavailable",
            operation=operation,
            backend=exc.backend,
            error=exc.message,
        )
        raise StorageUnavailable("storage unavailable", detail={"operation": operation}) from exc


class CredentialService:
    """Password credentials over a user store, hashed with argon2id."""

    def __init__(self, store: CredentialStore, *, timeout_seconds: float = 5.0) -> None:
        self.store = store
        self.timeout_seconds = timeout_seconds
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # verified against on unknown emails so both login paths cost one argon2 check
        self._dummy_hash = self._pwd_hasher.hash("bynd-unknown-user-placeholder")

    async def _call(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        return await call_store(func, *args, timeout=self.timeout_seconds, operation=operation)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    async def create_user(self, email: str, password: str) -> User:
        password_hash = await asyncio.to_thread(self.hash_password, password)
        try:
            user = await self._call(
                "create_user", self.store.create_user, email.strip().lower(), password_hash
            )
        except ConstraintViolation as exc:
            raise EmailConflict(detail=exc.detail) from exc
        logger.info("user_created", user_id=user.id)
        return user

    async def find_by_email(self, email: str) -> Optional[User]:
        return await self._call(
            "get_user_by_email", self.store.get_user_by_email, email.strip().lower()
        )

    async def find_by_id(self, user_id: str) -> Optional[User]:
        return await self._call("get_user", self.store.get_user, user_id)

    async def verify_password(self, user: Optional[User], password: str) -> bool:
        """Check ``password`` for ``user``; ``None`` burns the same hashing cost."""
        if user is None:
            await asyncio.to_thread(self._verify_hash, self._dummy_hash, password)
            return False
        record = await self._call(
            "get_password_record", self.store.get_password_record, user.id
        )
        if not record:
            logger.warning("password_record_missing", user_id=user.id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            return False
        return await asyncio.to_thread(self._verify_hash, stored_hash, password)

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    async def authenticate(self, email: str, password: str) -> Optional[User]:
        user = await self.find_by_email(email)
        ok = await self.verify_password(user, password)
        if not ok:
            logger.warning("password_verification_failed", principal_fp=fingerprint(email.lower()))
            return None
        return user
