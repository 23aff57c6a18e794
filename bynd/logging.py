from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

EventDict = Dict[str, Any]

_request_id: ContextVar[Optional[str]] = ContextVar("bynd_request_id", default=None)

# Event keys whose string values are masked; matched as substrings
_SENSITIVE_KEY_PARTS = ("password", "secret", "token", "authorization", "email")

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request id to the current context, minting one when absent."""
    value = correlation_id or uuid.uuid4().hex
    _request_id.set(value)
    return value


def _stamp_request_id(_logger: Any, _method: str, event: EventDict) -> EventDict:
    request_id = _request_id.get()
    if request_id is not None:
        event.setdefault("correlation_id", request_id)
    return event


def _mask_sensitive(_logger: Any, _method: str, event: EventDict) -> EventDict:
    """Replace secrets and addresses with a short ``ab***yz`` stub."""
    for key, value in list(event.items()):
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(part in key.lower() for part in _SENSITIVE_KEY_PARTS):
            event[key] = f"{value[:2]}***{value[-2:]}"
    return event


def fingerprint(value: str) -> str:
    """Short stable digest for correlating log lines about a secret or email."""
    return hashlib.sha256(value.encode()).hexdigest()[:12]


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def configure_logging(level: str = "INFO", *, console: bool = False) -> None:
    """Install the structlog pipeline.

    Every event gets a level, an ISO timestamp and the request id, then has
    credential fields masked. ``console`` switches the JSON renderer for the
    coloured development renderer.
    """
    chain: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _stamp_request_id,
        _mask_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if console:
        chain.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        chain.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    threshold = logging.getLevelName(level.upper())
    if not isinstance(threshold, int):
        threshold = logging.INFO
    structlog.configure(
        processors=chain,
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    console=_env_flag("LOG_DEV_MODE", False) or not _env_flag("LOG_JSON", True),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
