from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from bynd.logging import get_logger
from bynd.storage.errors import ConstraintViolation
from bynd.storage.models import RefreshTokenRecord, User, UserAuthCredential, utcnow


class MemoryStore:
    """In-process credential and refresh-token store for single-process and test use.

    Every read and write happens under one re-entrant lock, so the
    compare-and-set in :meth:`mark_refresh_token_replaced` is atomic across
    threads of this process. It gives no guarantee across processes.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.users_by_email: Dict[str, str] = {}
        self.credentials: Dict[str, UserAuthCredential] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.refresh_by_hash: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self, email: str, password_hash: str, *, password_algo: str = "argon2id"
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if normalized in self.users_by_email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=normalized)
            self.users[user.id] = user
            self.users_by_email[normalized] = user.id
            self.credentials[user.id] = UserAuthCredential(
                user_id=user.id, password_hash=password_hash, password_algo=password_algo
            )
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self.users_by_email.get(email.strip().lower())
            return self.users.get(user_id) if user_id else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if not cred:
                return None
            return cred.password_hash, cred.password_algo

    # refresh tokens
    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.jti in self.refresh_tokens:
                raise ConstraintViolation("refresh jti already exists", {"field": "jti"})
            if record.token_hash in self.refresh_by_hash:
                raise ConstraintViolation(
                    "refresh token hash already exists", {"field": "token_hash"}
                )
            stored = replace(record)
            self.refresh_tokens[stored.jti] = stored
            self.refresh_by_hash[stored.token_hash] = stored.jti
            return replace(stored)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            jti = self.refresh_by_hash.get(token_hash)
            record = self.refresh_tokens.get(jti) if jti else None
            # callers get a snapshot, never the live record
            return replace(record) if record else None

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(jti)
            return replace(record) if record else None

    def mark_refresh_token_replaced(self, jti: str, new_jti: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(jti)
            if not record or record.replaced_by_jti is not None:
                return False
            record.replaced_by_jti = new_jti
            return True

    def revoke_refresh_token(self, jti: str, reason: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(jti)
            if not record:
                return False
            record.revoked = True
            record.reason = reason
            return True

    def revoke_refresh_family(self, family_id: str, reason: str) -> int:
        with self._data_lock:
            count = 0
            for record in self.refresh_tokens.values():
                if record.family_id == family_id:
                    record.revoked = True
                    record.reason = reason
                    count += 1
            return count

    def list_refresh_family(self, family_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            members = [
                replace(r) for r in self.refresh_tokens.values() if r.family_id == family_id
            ]
        return sorted(members, key=lambda r: r.created_at)

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            expired = [r for r in self.refresh_tokens.values() if r.expires_at < cutoff]
            for record in expired:
                self.refresh_tokens.pop(record.jti, None)
                self.refresh_by_hash.pop(record.token_hash, None)
        if expired:
            self.logger.info("memory_refresh_tokens_purged", count=len(expired))
        return len(expired)

    def verify_connection(self) -> None:
        return None
