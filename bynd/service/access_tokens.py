from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from bynd.logging import get_logger
from bynd.service.errors import InvalidToken, TokenExpired

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}


@dataclass(frozen=True)
class AccessTokenClaims:
    sub: str
    jti: str
    iat: int
    exp: int

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)

    def remaining_seconds(self, now: Optional[float] = None) -> int:
        return max(0, int(self.exp - (now if now is not None else time.time())))


@dataclass(frozen=True)
class IssuedAccessToken:
    token: str
    jti: str
    expires_at: datetime


def new_jti() -> str:
    """Random 80-bit hex identifier, used for access jtis and refresh ids alike."""
    return secrets.token_hex(10)


class AccessTokenIssuer:
    """Mints and verifies HS256 access tokens carrying ``sub``, ``jti`` and ``exp``.

    Stateless: the caller hands the jti to the revocation registry.
    """

    def __init__(self, secret: str, *, ttl_minutes: int = 15) -> None:
        self._key = secret.encode()
        self.ttl_seconds = ttl_minutes * 60

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header_enc = self._encode_segment(
            json.dumps(_HEADER, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(self, user_id: str, *, now: Optional[float] = None) -> IssuedAccessToken:
        issued_at = int(now if now is not None else time.time())
        exp = issued_at + self.ttl_seconds
        jti = new_jti()
        token = self._encode_jwt({"sub": user_id, "jti": jti, "iat": issued_at, "exp": exp})
        return IssuedAccessToken(
            token=token, jti=jti, expires_at=datetime.fromtimestamp(exp, tz=timezone.utc)
        )

    def verify(self, token: str, *, now: Optional[float] = None) -> AccessTokenClaims:
        """Check signature and expiry. Revocation is the caller's concern.

        Raises:
            InvalidToken: malformed token, wrong algorithm, bad signature or claims
            TokenExpired: signature is good but ``exp`` has passed
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidToken()

        # only HS256 is accepted, whatever the header claims
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidToken()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidToken()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidToken()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidToken()
        if not isinstance(payload, dict):
            raise InvalidToken()

        sub, jti, exp = payload.get("sub"), payload.get("jti"), payload.get("exp")
        if not isinstance(sub, str) or not sub or not isinstance(jti, str) or not jti:
            raise InvalidToken()
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise InvalidToken()
        current = now if now is not None else time.time()
        if current > exp:
            raise TokenExpired()
        iat = payload.get("iat")
        return AccessTokenClaims(
            sub=sub,
            jti=jti,
            iat=int(iat) if isinstance(iat, (int, float)) else 0,
            exp=int(exp),
        )
