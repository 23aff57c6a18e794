from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshTokenRecord:
    """Stored half of a refresh token. The plaintext secret is never kept."""

    jti: str
    token_hash: str
    user_id: str
    family_id: str
    created_at: datetime
    expires_at: datetime
    prev_jti: Optional[str] = None
    replaced_by_jti: Optional[str] = None
    revoked: bool = False
    reason: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at
