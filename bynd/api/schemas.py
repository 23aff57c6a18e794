from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "service_unavailable",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _known_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    """Wrapper shared by every JSON response: ``status`` is ``ok`` or ``error``."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# zero-width characters, then the LRE..RLO and LRI..PDI bidi controls
_INVISIBLE = re.compile("[\u200b-\u200d\ufeff\u202a-\u202e\u2066-\u2069]")
_LOCAL_PART = re.compile(r"[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}")
_DOMAIN_LABEL = re.compile(r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?")


def normalize_email(value: str) -> str:
    """Lower-case, NFKC-normalise and syntax-check an address.

    Invisible characters are removed first, so an address with a zero-width
    space in it names the same account as the clean one.
    """
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    email = unicodedata.normalize("NFKC", _INVISIBLE.sub("", value.strip().lower()))
    if not 3 <= len(email) <= 254:
        raise ValueError("email address length out of range")
    local, _, domain = email.partition("@")
    labels = domain.split(".")
    if (
        not _LOCAL_PART.fullmatch(local)
        or len(labels) < 2
        or not all(_DOMAIN_LABEL.fullmatch(label) for label in labels)
    ):
        raise ValueError("invalid email address")
    return email


_PASSWORD_RULES = (
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"[0-9]"), "a digit"),
)


def check_password_strength(value: str) -> str:
    if not 8 <= len(value) <= 100:
        raise ValueError("password must be 8 to 100 characters")
    for pattern, label in _PASSWORD_RULES:
        if not pattern.search(value):
            raise ValueError(f"password must contain {label}")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("password")
    @classmethod
    def _strong_password(cls, value: str) -> str:
        return check_password_strength(value)


class LoginRequest(BaseModel):
    """Login applies no strength policy, only the length cap."""

    email: str
    password: str = Field(..., max_length=100)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return normalize_email(value)


class TokenRefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(
        ...,
        min_length=10,
        max_length=512,
        validation_alias=AliasChoices("refresh_token", "refreshToken"),
    )


class LogoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: Optional[str] = Field(
        default=None,
        min_length=10,
        max_length=512,
        validation_alias=AliasChoices("refresh_token", "refreshToken"),
    )


class AuthResponse(BaseModel):
    user_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    access_token_expires_at: datetime


class UserResponse(BaseModel):
    id: str
    email: str
    created_at: datetime


class HealthResponse(BaseModel):
    status: str
    checks: dict
    version: str
    build: str
    uptime_seconds: float
    timestamp: datetime
